"""Shell command execution through asyncio subprocesses."""

import asyncio
import os
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from core.cancellation import CancellationToken
from core.exceptions import HarnessError, OperationCancelledError, ValidationError
from dispatch.descriptor import CommandDescriptor, param


@dataclass(frozen=True)
class ShellResult:
    """Structured result of a shell command execution."""
    exit_code: int
    stdout: str
    stderr: str
    elapsed_ms: int
    truncated: bool = False
    original_length: int = 0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "success": self.success,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.truncated:
            data["truncated"] = True
            data["original_length"] = self.original_length
        if self.timed_out:
            data["timed_out"] = True
        return data


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


class ShellController:
    """Runs shell commands and programs with timeout, cancellation and output limits."""

    def __init__(self, default_timeout_seconds: float = 60, max_output_chars: int = 100_000):
        self.default_timeout_seconds = default_timeout_seconds
        self.max_output_chars = max_output_chars

        logger.info(f"Shell controller initialized (timeout {default_timeout_seconds}s, "
                    f"max output {max_output_chars} chars)")

    def _resolve_options(self, working_directory: Optional[str], timeout_ms: Optional[int]):
        cwd = None
        if working_directory:
            cwd = Path(working_directory).expanduser()
            if not cwd.is_dir():
                raise ValidationError(f"Working directory not found: {working_directory}", "working_directory")

        if timeout_ms is None:
            timeout = self.default_timeout_seconds or None
        elif timeout_ms < 0:
            raise ValidationError(f"timeout_ms cannot be negative (got {timeout_ms})", "timeout_ms")
        else:
            # 0 disables the timeout
            timeout = timeout_ms / 1000 if timeout_ms else None

        return cwd, timeout

    async def run(
        self,
        command: str,
        working_directory: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        ct: Optional[CancellationToken] = None
    ) -> ShellResult:
        """
        Run a command string through the system shell.

        Args:
            command: Shell command line
            working_directory: Directory to run in (current if None)
            timeout_ms: Kill after this many milliseconds (None = default, 0 = never)
            ct: Cancellation token; cancelling kills the process
        """
        if not command or not command.strip():
            raise ValidationError("command cannot be empty.", "command")
        cwd, timeout = self._resolve_options(working_directory, timeout_ms)

        logger.info(f"Executing command: {command[:100]}")
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd
        )
        return await self._communicate(process, timeout, ct)

    async def run_program(
        self,
        program: str,
        arguments: str = "",
        working_directory: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        ct: Optional[CancellationToken] = None
    ) -> ShellResult:
        """Run a program directly (no shell) with a whitespace/quote-split argument string."""
        if not program or not program.strip():
            raise ValidationError("program cannot be empty.", "program")
        cwd, timeout = self._resolve_options(working_directory, timeout_ms)

        try:
            args = shlex.split(arguments or "", posix=os.name != "nt")
        except ValueError as e:
            raise ValidationError(f"Cannot parse arguments: {e}", "arguments")
        logger.info(f"Executing program: {program} {arguments or ''}".rstrip())
        try:
            process = await asyncio.create_subprocess_exec(
                program, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd
            )
        except FileNotFoundError:
            raise HarnessError(f"Program not found: {program}")
        except PermissionError:
            raise HarnessError(f"Program is not executable: {program}")
        return await self._communicate(process, timeout, ct)

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        timeout: Optional[float],
        ct: Optional[CancellationToken]
    ) -> ShellResult:
        ct = ct or CancellationToken()
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        unregister = ct.add_callback(lambda: loop.call_soon_threadsafe(_kill, process))
        timed_out = False

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            _kill(process)
            await process.wait()
            stdout, stderr = b"", b""
            timed_out = True
        except asyncio.CancelledError:
            _kill(process)
            raise
        finally:
            unregister()

        if ct.is_cancelled:
            raise OperationCancelledError()

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        stdout_str = stdout.decode("utf-8", errors="replace") if stdout else ""
        stderr_str = stderr.decode("utf-8", errors="replace") if stderr else ""

        original_length = len(stdout_str)
        truncated = self.max_output_chars > 0 and original_length > self.max_output_chars
        if truncated:
            stdout_str = stdout_str[:self.max_output_chars]

        if timed_out:
            message = f"Command timed out after {timeout:g} seconds"
            logger.error(message)
            stderr_str = f"{stderr_str}\n{message}".lstrip()
            exit_code = -1
        else:
            exit_code = process.returncode
            if exit_code == 0:
                logger.info(f"Command completed successfully ({elapsed_ms} ms)")
            else:
                logger.warning(f"Command failed with code {exit_code}")

        return ShellResult(
            exit_code=exit_code,
            stdout=stdout_str,
            stderr=stderr_str,
            elapsed_ms=elapsed_ms,
            truncated=truncated,
            original_length=original_length if truncated else 0,
            timed_out=timed_out
        )


def shell_commands(shell: Any) -> List[CommandDescriptor]:
    """
    Command table for the shell category.

    ``shell`` is the fully decorated shell (policy enforcement and auditing
    around a ShellController); the dispatcher additionally pre-checks policy.
    """
    async def run(command: str, working_directory: Optional[str] = None,
                  timeout_ms: Optional[int] = None, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        result = await shell.run(command, working_directory=working_directory, timeout_ms=timeout_ms, ct=ct)
        return result.to_dict()

    async def run_program(program: str, arguments: str = "", working_directory: Optional[str] = None,
                          timeout_ms: Optional[int] = None, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        result = await shell.run_program(program, arguments or "", working_directory=working_directory,
                                         timeout_ms=timeout_ms, ct=ct)
        return result.to_dict()

    working_directory = param("working_directory", "string", "Directory to run in. Current directory if omitted.")
    timeout_ms = param("timeout_ms", "integer", "Timeout in milliseconds (0 = no timeout).")

    return [
        CommandDescriptor(
            "shell.run", "Execute a shell command and return stdout, stderr and exit code.", run,
            mutating=True, shell=True,
            parameters=(
                param("command", "string", "Shell command line.", required=True),
                working_directory,
                timeout_ms,
            ),
        ),
        CommandDescriptor(
            "shell.run_program", "Execute a program directly with an argument string.", run_program,
            mutating=True, shell=True,
            parameters=(
                param("program", "string", "Program name or path.", required=True),
                param("arguments", "string", "Argument string, split like a command line.", default=""),
                working_directory,
                timeout_ms,
            ),
        ),
    ]
