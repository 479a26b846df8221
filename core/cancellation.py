"""Thread-safe cooperative cancellation tokens."""

import threading
from typing import Callable, List, Optional

from loguru import logger

from core.exceptions import OperationCancelledError


class CancellationToken:
    """
    One-shot cancellation signal.

    Can be cancelled from any thread (including input-hook callbacks).
    Once cancelled it stays cancelled forever.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation was requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Repeat calls are no-ops."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = self._callbacks
            self._callbacks = []

        # Callbacks run outside the lock on the cancelling thread
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback error: {e}")

    def raise_if_cancelled(self, message: Optional[str] = None) -> None:
        """Raise OperationCancelledError if cancelled."""
        if self._event.is_set():
            raise OperationCancelledError(message) if message else OperationCancelledError()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout. Returns True if cancelled."""
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback invoked once on cancellation.

        Runs immediately if the token is already cancelled.

        Returns:
            Function that unregisters the callback
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister

        callback()
        return lambda: None

    @classmethod
    def linked(cls, *tokens: Optional["CancellationToken"]) -> "CancellationToken":
        """Create a token cancelled when any of the given tokens is cancelled."""
        linked = cls()
        for token in tokens:
            if token is not None:
                token.add_callback(linked.cancel)
        return linked

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"
