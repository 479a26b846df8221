"""Emergency stop system for immediate halt of all in-flight and future commands."""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from core.cancellation import CancellationToken


EmergencyHandler = Callable[[str, str], None]


@dataclass(frozen=True)
class EmergencyEvent:
    """Record of an emergency stop trigger."""
    timestamp: datetime
    triggered_by: str
    reason: str
    generation: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "triggered_by": self.triggered_by,
            "reason": self.reason,
            "generation": self.generation,
        }


class EmergencyStop:
    """
    Process-wide cancellation signal with generations.

    Triggering cancels the current token. Resetting starts a new generation
    with a fresh token; tokens captured before the reset stay cancelled.
    Safe to trigger from any thread, including keyboard-hook callbacks.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._token = CancellationToken()
        self._generation = 0
        self._trigger_count = 0
        self._triggered_by: Optional[str] = None
        self._reason: Optional[str] = None
        self._handlers: List[EmergencyHandler] = []
        self._history: List[EmergencyEvent] = []
        self._disposed = False

        logger.info("Emergency stop system initialized")

    @property
    def token(self) -> CancellationToken:
        """Token of the current generation."""
        with self._lock:
            return self._token

    @property
    def is_triggered(self) -> bool:
        return self.token.is_cancelled

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def trigger_count(self) -> int:
        with self._lock:
            return self._trigger_count

    def register_handler(self, handler: EmergencyHandler) -> None:
        """
        Register a handler called as ``handler(triggered_by, reason)`` on trigger.

        Handlers run synchronously on the triggering thread and must not block.
        """
        with self._lock:
            self._handlers.append(handler)
        logger.debug(f"Registered emergency handler: {getattr(handler, '__name__', handler)}")

    def unregister_handler(self, handler: EmergencyHandler) -> bool:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)
                return True
        return False

    def trigger(self, triggered_by: str = "unknown", reason: str = "Emergency stop triggered") -> bool:
        """
        Cancel the current generation and notify handlers.

        Returns:
            True if this call triggered the stop, False if it was already
            triggered or the system is disposed. Handlers run on every call
            that is not disposed, including repeats.
        """
        with self._lock:
            if self._disposed:
                return False

            handlers = list(self._handlers)
            first = not self._token.is_cancelled
            if first:
                self._trigger_count += 1
                self._triggered_by = triggered_by
                self._reason = reason
                self._history.append(EmergencyEvent(
                    timestamp=datetime.now(timezone.utc),
                    triggered_by=triggered_by,
                    reason=reason,
                    generation=self._generation
                ))
            token = self._token

        if first:
            token.cancel()
            logger.critical(f"EMERGENCY STOP TRIGGERED by {triggered_by}: {reason}")
        else:
            logger.warning(f"Emergency stop already active; repeat trigger by {triggered_by}: {reason}")

        for handler in handlers:
            try:
                handler(triggered_by, reason)
            except Exception as e:
                logger.error(f"Emergency handler error: {e}")

        return first

    def reset(self, reset_by: str = "unknown") -> bool:
        """
        Start a new generation with a fresh token.

        Returns:
            True if a triggered stop was reset, False if nothing to reset or disposed
        """
        with self._lock:
            if self._disposed or not self._token.is_cancelled:
                return False

            self._token = CancellationToken()
            self._generation += 1
            self._triggered_by = None
            self._reason = None
            generation = self._generation

        logger.critical(f"EMERGENCY STOP RESET by {reset_by} (generation {generation})")
        return True

    def dispose(self) -> None:
        """Make further trigger/reset calls no-ops and drop handlers."""
        with self._lock:
            self._disposed = True
            self._handlers.clear()
        logger.info("Emergency stop system disposed")

    def get_history(self, limit: int = 10) -> List[EmergencyEvent]:
        """Get the most recent trigger events, oldest first."""
        with self._lock:
            history = list(self._history)
        return history[-limit:] if limit > 0 else []

    def get_status(self) -> Dict[str, Any]:
        """Get current emergency stop status."""
        with self._lock:
            return {
                "triggered": self._token.is_cancelled,
                "generation": self._generation,
                "trigger_count": self._trigger_count,
                "triggered_by": self._triggered_by,
                "reason": self._reason,
                "handlers": len(self._handlers),
                "disposed": self._disposed,
            }
