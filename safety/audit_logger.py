"""Audit logging system for complete action tracking and accountability."""

import json
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

from loguru import logger


T = TypeVar("T")


@dataclass(frozen=True)
class AuditEntry:
    """Single audit log entry recording one harness action."""
    timestamp: datetime
    category: str
    action: str
    detail: Optional[str] = None
    duration_ms: Optional[float] = None
    success: bool = True
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditLogger:
    """
    Thread-safe in-memory audit log with a fixed maximum entry count.

    When the limit is exceeded, oldest entries are discarded one at a time.
    Appending never fails the caller's operation.
    """

    def __init__(self, max_entries: int = 10_000):
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive (got {max_entries})")

        self.session_id = str(uuid.uuid4())
        self.max_entries = max_entries
        self._entries: Deque[AuditEntry] = deque()
        self._lock = threading.Lock()
        self._total_appended = 0

        logger.info(f"Audit logger initialized. Session: {self.session_id} (max {max_entries} entries)")

    def append(self, entry: AuditEntry) -> None:
        """Append an entry, evicting the oldest ones if over capacity."""
        try:
            with self._lock:
                self._entries.append(entry)
                self._total_appended += 1
                while len(self._entries) > self.max_entries:
                    self._entries.popleft()
        except Exception as e:
            logger.error(f"Failed to append audit entry: {e}")

    def get_entries(self, category: Optional[str] = None) -> List[AuditEntry]:
        """
        Get retained entries, oldest first.

        Args:
            category: Optional exact category filter (case-insensitive)
        """
        with self._lock:
            entries = list(self._entries)

        if category is None:
            return entries

        wanted = category.casefold()
        return [e for e in entries if e.category.casefold() == wanted]

    @property
    def count(self) -> int:
        """Number of retained entries."""
        with self._lock:
            return len(self._entries)

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of the current session."""
        entries = self.get_entries()
        failed = sum(1 for e in entries if not e.success)

        categories: Dict[str, int] = {}
        for entry in entries:
            categories[entry.category] = categories.get(entry.category, 0) + 1

        with self._lock:
            total = self._total_appended

        return {
            "session_id": self.session_id,
            "retained": len(entries),
            "total_appended": total,
            "evicted": total - len(entries),
            "succeeded": len(entries) - failed,
            "failed": failed,
            "categories": categories,
        }

    def export_session(self, output_path: Path) -> Path:
        """Export retained entries to a JSON file."""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "session_id": self.session_id,
            "export_time": datetime.now(timezone.utc).isoformat(),
            "summary": self.get_summary(),
            "entries": [e.to_dict() for e in self.get_entries()]
        }

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)

        logger.info(f"Audit session exported to {output_path}")
        return output_path


async def audit_call(
    audit: AuditLogger,
    category: str,
    action: str,
    detail: Optional[str],
    call: Callable[[], Awaitable[T]],
    result_error: Optional[Callable[[T], Optional[str]]] = None
) -> T:
    """
    Time an awaitable call and append exactly one audit entry for it.

    Failures are recorded with their message and re-raised unchanged.

    Args:
        audit: Audit log to append to
        category: Entry category (e.g. "Shell", "file")
        action: Entry action name
        detail: Human-readable detail such as the command text
        call: Zero-argument coroutine factory performing the work
        result_error: Maps a returned result to an error text when the
            result itself represents a failure (e.g. non-zero exit code)
    """
    started = time.perf_counter()
    try:
        result = await call()
    except BaseException as e:
        audit.append(AuditEntry(
            timestamp=datetime.now(timezone.utc),
            category=category,
            action=action,
            detail=detail,
            duration_ms=(time.perf_counter() - started) * 1000,
            success=False,
            error=str(e) or type(e).__name__
        ))
        raise

    error = None
    if result_error is not None:
        try:
            error = result_error(result)
        except Exception as e:
            logger.error(f"Audit result inspection failed: {e}")

    audit.append(AuditEntry(
        timestamp=datetime.now(timezone.utc),
        category=category,
        action=action,
        detail=detail,
        duration_ms=(time.perf_counter() - started) * 1000,
        success=error is None,
        error=error
    ))
    return result


def _shell_result_error(result: Any) -> Optional[str]:
    """Error text for an unsuccessful shell result, None on success."""
    if getattr(result, "success", True):
        return None
    return getattr(result, "stderr", None) or f"Exit code {getattr(result, 'exit_code', '?')}"


class AuditingShell:
    """Decorator that logs all shell command executions to an AuditLogger."""

    def __init__(self, inner: Any, audit: AuditLogger):
        if inner is None or audit is None:
            raise ValueError("AuditingShell requires an inner shell and an audit log")
        self._inner = inner
        self._audit = audit

    async def run(self, command: str, **kwargs: Any) -> Any:
        """Run a command string and audit it."""
        return await audit_call(
            self._audit, "Shell", "run", command,
            lambda: self._inner.run(command, **kwargs),
            result_error=_shell_result_error
        )

    async def run_program(self, program: str, arguments: str = "", **kwargs: Any) -> Any:
        """Run a program with arguments and audit it."""
        return await audit_call(
            self._audit, "Shell", "run_program", f"{program} {arguments}".strip(),
            lambda: self._inner.run_program(program, arguments, **kwargs),
            result_error=_shell_result_error
        )
