"""Background monitors that record events to JSONL files."""

import asyncio
import itertools
import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import psutil
from loguru import logger

from core import response
from core.cancellation import CancellationToken
from core.exceptions import HarnessError, OperationCancelledError, ValidationError
from dispatch.descriptor import CommandDescriptor, param
from safety.emergency_stop import EmergencyStop


MonitorFunc = Callable[[Path, CancellationToken], Awaitable[None]]

MONITOR_KINDS = ("process", "directory")


@dataclass(frozen=True)
class MonitorInfo:
    id: str
    kind: str
    output_path: Path
    started_at: datetime
    running: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "output_path": str(self.output_path),
            "started_at": self.started_at.isoformat(),
            "running": self.running,
        }


@dataclass
class _MonitorEntry:
    id: str
    kind: str
    output_path: Path
    token: CancellationToken
    task: "asyncio.Task[None]"
    started_at: datetime


def _parse_timestamp(value: str) -> datetime:
    # fromisoformat only accepts a trailing Z from Python 3.11
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MonitorManager:
    """
    Runs monitors as asyncio tasks, each with its own cancellation token.

    Monitor tokens are linked to the emergency stop, and the manager stops
    every monitor when the emergency stop fires.
    """

    def __init__(self, output_dir: Path, emergency_stop: Optional[EmergencyStop] = None):
        self.output_dir = Path(output_dir)
        self.emergency_stop = emergency_stop
        self._lock = threading.Lock()
        self._monitors: Dict[str, _MonitorEntry] = {}
        self._paths: Dict[str, Path] = {}
        self._ids = itertools.count(1)

        if emergency_stop is not None:
            emergency_stop.register_handler(self._on_emergency_stop)

        logger.info(f"Monitor manager initialized (output: {self.output_dir})")

    def _on_emergency_stop(self, triggered_by: str, reason: str) -> None:
        stopped = self.stop_all()
        if stopped:
            logger.warning(f"Emergency stop: {stopped} monitor(s) stopped")

    def start(self, kind: str, output_path: Optional[Path], monitor_fn: MonitorFunc) -> str:
        """
        Start a monitor task on the running event loop.

        Args:
            kind: Monitor kind, used as the id prefix
            output_path: JSONL file to append events to (default: ``{output_dir}/{id}.jsonl``)
            monitor_fn: ``async monitor_fn(output_path, token)``

        Returns:
            Monitor id ``{kind}-{n}``
        """
        loop = asyncio.get_running_loop()

        with self._lock:
            monitor_id = f"{kind}-{next(self._ids)}"

        path = Path(output_path) if output_path else self.output_dir / f"{monitor_id}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)

        stop_token = self.emergency_stop.token if self.emergency_stop is not None else None
        token = CancellationToken.linked(stop_token)

        task = loop.create_task(self._run(monitor_id, path, monitor_fn, token), name=f"monitor:{monitor_id}")
        entry = _MonitorEntry(monitor_id, kind, path, token, task, datetime.now(timezone.utc))

        with self._lock:
            self._monitors[monitor_id] = entry
            self._paths[monitor_id] = path

        logger.info(f"Monitor started: {monitor_id} -> {path}")
        return monitor_id

    async def _run(self, monitor_id: str, path: Path, monitor_fn: MonitorFunc, token: CancellationToken) -> None:
        try:
            await monitor_fn(path, token)
        except (asyncio.CancelledError, OperationCancelledError):
            logger.debug(f"Monitor {monitor_id} cancelled")
        except Exception as e:
            logger.error(f"Monitor {monitor_id} failed: {e}")
            try:
                self.write_event(path, {"type": "error", "message": str(e)})
            except OSError as write_error:
                logger.error(f"Failed to write error event for {monitor_id}: {write_error}")

    def stop(self, monitor_id: str) -> bool:
        """Cancel a monitor. Safe to call from any thread. False for unknown ids."""
        with self._lock:
            entry = self._monitors.pop(monitor_id, None)
        if entry is None:
            return False

        entry.token.cancel()
        if not entry.task.done():
            try:
                entry.task.get_loop().call_soon_threadsafe(entry.task.cancel)
            except RuntimeError as e:
                # Loop already closed; the task can no longer run
                logger.debug(f"Monitor {monitor_id} loop unavailable: {e}")

        logger.info(f"Monitor stopped: {monitor_id}")
        return True

    def stop_all(self) -> int:
        with self._lock:
            ids = list(self._monitors)
        return sum(1 for monitor_id in ids if self.stop(monitor_id))

    def list_active(self) -> List[MonitorInfo]:
        with self._lock:
            entries = list(self._monitors.values())
        return [
            MonitorInfo(e.id, e.kind, e.output_path, e.started_at, not e.task.done())
            for e in entries
        ]

    def output_path_for(self, monitor_id: str) -> Optional[Path]:
        """Output file of a running or previously stopped monitor."""
        with self._lock:
            return self._paths.get(monitor_id)

    @staticmethod
    def write_event(output_path: Path, event: Dict[str, Any]) -> None:
        """Append one event as a JSON line, stamping ``timestamp`` if missing."""
        record = dict(event)
        record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        line = json.dumps(record, default=str, ensure_ascii=False)
        with open(output_path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    @staticmethod
    def read_events(output_path: Path, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Read events, skipping malformed lines and events older than ``since``."""
        path = Path(output_path)
        if not path.is_file():
            return []

        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        events = []
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(event, dict):
                    continue

                if since is not None and isinstance(event.get("timestamp"), str):
                    try:
                        if _parse_timestamp(event["timestamp"]) < since:
                            continue
                    except ValueError:
                        pass
                events.append(event)

        return events


# ── Built-in monitors ──

def process_monitor(interval_seconds: float = 2.0) -> MonitorFunc:
    """Record process start/exit events by polling psutil."""

    def snapshot() -> Dict[int, str]:
        procs = {}
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                procs[proc.info["pid"]] = proc.info["name"] or ""
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        return procs

    async def monitor(output_path: Path, token: CancellationToken) -> None:
        known = snapshot()
        MonitorManager.write_event(output_path, {
            "type": "monitor_started",
            "monitor_kind": "process",
            "initial_process_count": len(known),
        })

        while not token.is_cancelled:
            await asyncio.sleep(interval_seconds)
            token.raise_if_cancelled()

            current = snapshot()
            for pid in current.keys() - known.keys():
                MonitorManager.write_event(output_path, {"type": "process_started", "pid": pid, "name": current[pid]})
            for pid in known.keys() - current.keys():
                MonitorManager.write_event(output_path, {"type": "process_exited", "pid": pid, "name": known[pid]})
            known = current

    return monitor


def directory_monitor(directory: Path, interval_seconds: float = 1.0) -> MonitorFunc:
    """Record file created/deleted/modified events by polling a directory tree."""
    root = Path(directory).resolve()

    def snapshot() -> Dict[str, Tuple[float, int]]:
        files = {}
        for dirpath, _, filenames in os.walk(root):
            for name in filenames:
                full = os.path.join(dirpath, name)
                try:
                    st = os.stat(full)
                except OSError:
                    continue
                files[full] = (st.st_mtime, st.st_size)
        return files

    async def monitor(output_path: Path, token: CancellationToken) -> None:
        if not root.is_dir():
            raise FileNotFoundError(f"Directory not found: '{root}'")

        # Never watch our own output file
        own = str(Path(output_path).resolve())
        known = {k: v for k, v in snapshot().items() if k != own}
        MonitorManager.write_event(output_path, {
            "type": "monitor_started",
            "monitor_kind": "directory",
            "watch_dir": str(root),
            "initial_file_count": len(known),
        })

        while not token.is_cancelled:
            await asyncio.sleep(interval_seconds)
            token.raise_if_cancelled()

            current = {k: v for k, v in snapshot().items() if k != own}
            for path in sorted(current.keys() - known.keys()):
                MonitorManager.write_event(output_path, {"type": "file_created", "path": path})
            for path in sorted(known.keys() - current.keys()):
                MonitorManager.write_event(output_path, {"type": "file_deleted", "path": path})
            for path in sorted(current.keys() & known.keys()):
                if current[path] != known[path]:
                    MonitorManager.write_event(output_path, {"type": "file_modified", "path": path})
            known = current

    return monitor


def monitor_commands(monitors: MonitorManager) -> List[CommandDescriptor]:
    """Command table for the monitor category."""

    def start(kind: str, target: Optional[str] = None, interval_ms: int = 2000,
              ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        if interval_ms < 100:
            raise ValidationError("interval_ms must be at least 100", "interval_ms")
        interval = interval_ms / 1000

        if kind == "process":
            monitor_fn = process_monitor(interval)
        else:
            directory = Path(target or ".").expanduser()
            if not directory.is_dir():
                raise ValidationError(f"Directory not found: '{directory}'", "target")
            monitor_fn = directory_monitor(directory, interval)

        monitor_id = monitors.start(kind, None, monitor_fn)
        return {"monitor_id": monitor_id, "kind": kind, "output_path": str(monitors.output_path_for(monitor_id))}

    def stop(monitor_id: str, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        if not monitors.stop(monitor_id):
            raise HarnessError(f"Monitor '{monitor_id}' not found.", code="not_found")
        return response.as_message(f"Monitor '{monitor_id}' stopped.")

    def list_monitors(ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        return response.as_items([m.to_dict() for m in monitors.list_active()])

    def read(monitor_id: Optional[str] = None, path: Optional[str] = None, since: Optional[str] = None,
             limit: int = 100, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        if monitor_id:
            output_path = monitors.output_path_for(monitor_id)
            if output_path is None:
                raise HarnessError(f"Monitor '{monitor_id}' not found.", code="not_found")
        elif path:
            output_path = Path(path).expanduser()
        else:
            raise ValidationError("monitor_id or path is required", "monitor_id")

        since_dt = None
        if since:
            try:
                since_dt = _parse_timestamp(since)
            except ValueError:
                raise ValidationError(f"since is not an ISO-8601 timestamp: '{since}'", "since")

        events = MonitorManager.read_events(output_path, since_dt)
        limited = events[-limit:] if limit > 0 else events
        return {"total_events": len(events), "returned_events": len(limited), "events": limited}

    return [
        CommandDescriptor(
            "monitor.start", "Start a background monitor writing events to a JSONL file.", start,
            mutating=True,
            parameters=(
                param("kind", "string", "Monitor kind.", required=True, choices=MONITOR_KINDS),
                param("target", "string", "Directory to watch for 'directory' (default: current)."),
                param("interval_ms", "integer", "Polling interval in milliseconds.", default=2000),
            ),
        ),
        CommandDescriptor(
            "monitor.stop", "Stop a running monitor.", stop, mutating=True,
            parameters=(param("monitor_id", "string", "Id returned by monitor.start.", required=True),),
        ),
        CommandDescriptor("monitor.list", "Active monitors.", list_monitors),
        CommandDescriptor(
            "monitor.read", "Read events from a monitor's output file.", read,
            parameters=(
                param("monitor_id", "string", "Monitor id (running or stopped)."),
                param("path", "string", "JSONL file path, instead of monitor_id."),
                param("since", "string", "Only events at or after this ISO-8601 timestamp."),
                param("limit", "integer", "Maximum events, taken from the end (0 = all).", default=100),
            ),
        ),
    ]
