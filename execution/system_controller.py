"""System controller for system information, file operations and process management."""

import asyncio
import os
import platform
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
from loguru import logger

from core import response
from core.cancellation import CancellationToken
from core.exceptions import HarnessError, ValidationError
from dispatch.descriptor import CommandDescriptor, param


class SystemController:
    """Controller for system-level operations."""

    def __init__(self, max_read_chars: int = 1_000_000):
        self.max_read_chars = max_read_chars
        self.os_type = platform.system().lower()

        logger.info(f"System controller initialized ({platform.system()})")

    @staticmethod
    def _path(path: str) -> Path:
        if not path or not path.strip():
            raise ValidationError("path cannot be empty.", "path")
        return Path(path).expanduser()

    # ── Files ──

    async def read_file(self, path: str, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """
        Read a text file.

        Content beyond ``max_read_chars`` is cut off and flagged as truncated.
        """
        file_path = self._path(path)
        if not file_path.exists():
            raise HarnessError(f"File not found: {file_path}", code="not_found")
        if not file_path.is_file():
            raise ValidationError(f"Path is not a file: {file_path}", "path")

        content = file_path.read_text(encoding="utf-8", errors="replace")
        truncated = len(content) > self.max_read_chars
        if truncated:
            content = content[:self.max_read_chars]

        logger.info(f"Read file: {file_path} ({len(content)} chars)")
        data = response.as_content(content)
        data.update({"path": str(file_path), "size": file_path.stat().st_size, "truncated": truncated})
        return data

    async def write_file(
        self,
        path: str,
        content: str,
        append: bool = False,
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        file_path = self._path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        mode = "a" if append else "w"
        with open(file_path, mode, encoding="utf-8") as f:
            f.write(content)

        written = len(content.encode("utf-8"))
        logger.info(f"{'Appended to' if append else 'Wrote'} file: {file_path} ({written} bytes)")
        return {
            "path": str(file_path),
            "bytes_written": written,
            "operation": "append" if append else "write",
        }

    async def delete_file(
        self,
        path: str,
        recursive: bool = False,
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """Delete a file, an empty directory, or (with ``recursive``) a directory tree."""
        file_path = self._path(path)
        if not file_path.exists() and not file_path.is_symlink():
            raise HarnessError(f"Path not found: {file_path}", code="not_found")

        if file_path.is_dir() and not file_path.is_symlink():
            kind = "directory"
            if recursive:
                shutil.rmtree(file_path)
            else:
                try:
                    file_path.rmdir()
                except OSError:
                    raise ValidationError(
                        f"Directory is not empty: {file_path} (pass recursive=true)", "recursive"
                    )
        else:
            kind = "file"
            file_path.unlink()

        logger.info(f"Deleted {kind}: {file_path}")
        return {"path": str(file_path), "type": kind}

    async def list_directory(
        self,
        path: str = ".",
        pattern: Optional[str] = None,
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        dir_path = self._path(path)
        if not dir_path.exists():
            raise HarnessError(f"Directory not found: {dir_path}", code="not_found")
        if not dir_path.is_dir():
            raise ValidationError(f"Path is not a directory: {dir_path}", "path")

        entries = []
        for item in sorted(dir_path.glob(pattern) if pattern else dir_path.iterdir()):
            try:
                stat = item.stat()
            except OSError:
                continue
            entries.append({
                "name": item.name,
                "path": str(item),
                "size": stat.st_size,
                "modified": datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
                "is_dir": item.is_dir(),
            })

        logger.info(f"Listed directory: {dir_path} ({len(entries)} items)")
        return response.as_items(entries)

    # ── Processes ──

    async def get_processes(self, name: Optional[str] = None, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """List running processes, optionally filtered by a case-insensitive name substring."""
        wanted = name.casefold() if name else None
        processes = []
        for proc in psutil.process_iter(["pid", "name", "username", "memory_percent", "status", "create_time"]):
            try:
                info = dict(proc.info)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if wanted and wanted not in (info.get("name") or "").casefold():
                continue
            processes.append(info)

        processes.sort(key=lambda p: p["pid"])
        return response.as_items(processes)

    async def kill_process(
        self,
        pid: int,
        force: bool = False,
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """Terminate a process, escalating to kill if it has not exited after 3 seconds."""
        if pid == os.getpid():
            raise ValidationError("Refusing to stop the harness process itself.", "pid")

        try:
            process = psutil.Process(pid)
            name = process.name()
            if force:
                process.kill()
            else:
                process.terminate()

            loop = asyncio.get_running_loop()
            _, alive = await loop.run_in_executor(None, lambda: psutil.wait_procs([process], timeout=3))
            if alive:
                process.kill()
                force = True
        except psutil.NoSuchProcess:
            raise HarnessError(f"Process {pid} not found", code="not_found")
        except psutil.AccessDenied:
            raise HarnessError(f"Access denied stopping process {pid}")

        logger.info(f"Stopped process {pid} ({name})")
        return {"pid": pid, "name": name, "force": force}

    async def get_system_info(self, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(os.path.abspath(os.sep))
        return {
            "platform": platform.platform(),
            "system": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
            "hostname": platform.node(),
            "python": platform.python_version(),
            "cpu_count": psutil.cpu_count(),
            "memory": {"total": memory.total, "available": memory.available, "percent": memory.percent},
            "disk": {"total": disk.total, "used": disk.used, "free": disk.free, "percent": disk.percent},
            "boot_time": datetime.fromtimestamp(psutil.boot_time(), timezone.utc).isoformat(),
        }


def system_commands(system: SystemController) -> List[CommandDescriptor]:
    """Command table for the system, process and file categories."""
    path = param("path", "string", "File path.", required=True)

    return [
        CommandDescriptor("system.info", "Platform, CPU, memory and disk information.", system.get_system_info),
        CommandDescriptor(
            "process.list", "Running processes.", system.get_processes,
            parameters=(param("name", "string", "Case-insensitive name substring filter."),),
        ),
        CommandDescriptor(
            "process.stop", "Terminate a process by pid.", system.kill_process,
            mutating=True, audited=True,
            parameters=(
                param("pid", "integer", "Process id.", required=True),
                param("force", "boolean", "Kill immediately instead of terminating.", default=False),
            ),
        ),
        CommandDescriptor("file.read", "Read a text file.", system.read_file, parameters=(path,)),
        CommandDescriptor(
            "file.write", "Write or append text to a file, creating parent directories.", system.write_file,
            mutating=True, audited=True,
            parameters=(
                path,
                param("content", "string", "Text to write.", required=True),
                param("append", "boolean", "Append instead of overwrite.", default=False),
            ),
        ),
        CommandDescriptor(
            "file.list", "List a directory.", system.list_directory,
            parameters=(
                param("path", "string", "Directory path.", default="."),
                param("pattern", "string", "Glob pattern filter (e.g. *.txt)."),
            ),
        ),
        CommandDescriptor(
            "file.delete", "Delete a file or directory.", system.delete_file,
            mutating=True, audited=True,
            parameters=(
                path,
                param("recursive", "boolean", "Delete non-empty directories.", default=False),
            ),
        ),
    ]
