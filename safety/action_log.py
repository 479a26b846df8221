"""Ring buffer of recently dispatched commands for quick introspection."""

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from loguru import logger


@dataclass(frozen=True)
class ActionRecord:
    """One dispatched top-level command."""
    timestamp: datetime
    tool: str
    parameters: Optional[str]
    duration_ms: int
    success: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "tool": self.tool,
            "parameters": self.parameters,
            "durationMs": self.duration_ms,
            "success": self.success,
        }


class ActionLog:
    """Thread-safe bounded history of dispatched commands, evicting oldest first."""

    def __init__(self, max_actions: int = 200):
        if max_actions <= 0:
            raise ValueError(f"max_actions must be positive (got {max_actions})")
        self.max_actions = max_actions
        self._actions: Deque[ActionRecord] = deque(maxlen=max_actions)
        self._lock = threading.Lock()

        logger.info(f"Action log initialized (max {max_actions} records)")

    def record(
        self,
        tool: str,
        parameters: Optional[str],
        duration_ms: float,
        success: bool
    ) -> None:
        """Append a record; the oldest record is dropped when full."""
        entry = ActionRecord(
            timestamp=datetime.now(timezone.utc),
            tool=tool,
            parameters=parameters,
            duration_ms=int(duration_ms),
            success=success
        )
        with self._lock:
            self._actions.append(entry)

    def get_recent(self, count: int = 50) -> List[ActionRecord]:
        """Get up to ``count`` most recent records, newest first."""
        if count <= 0:
            return []
        with self._lock:
            snapshot = list(self._actions)
        snapshot.reverse()
        return snapshot[:count]

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._actions)

    def clear(self) -> int:
        """Empty the buffer. Returns the number of records removed."""
        with self._lock:
            removed = len(self._actions)
            self._actions.clear()
        logger.info(f"Action log cleared ({removed} records)")
        return removed
