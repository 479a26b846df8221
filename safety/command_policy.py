"""Shell command policy: blocked programs and blocked regex patterns."""

import os
import re
import threading
from typing import Any, List, Optional, Pattern, Set

from loguru import logger

from core.exceptions import CommandPolicyError


class CommandPolicy:
    """
    Defines which shell commands are blocked.

    Commands are checked against blocked programs and patterns before
    execution. An empty policy allows everything.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._blocked_programs: Set[str] = set()
        self._blocked_patterns: List[Pattern[str]] = []

    def block_program(self, program: str) -> "CommandPolicy":
        """Block a program by bare name (case-insensitive)."""
        name = self.normalize_program(program)
        if not name:
            raise ValueError("Blocked program name cannot be empty")
        with self._lock:
            self._blocked_programs.add(name.casefold())
        logger.debug(f"Blocked program: {name}")
        return self

    def block_pattern(self, pattern: str) -> "CommandPolicy":
        """
        Block commands matching a regex (case-insensitive).

        Raises:
            re.error: If the pattern does not compile
        """
        compiled = re.compile(pattern, re.IGNORECASE)
        with self._lock:
            self._blocked_patterns.append(compiled)
        logger.debug(f"Blocked pattern: {pattern}")
        return self

    @property
    def blocked_programs(self) -> List[str]:
        with self._lock:
            return sorted(self._blocked_programs)

    @property
    def blocked_patterns(self) -> List[str]:
        with self._lock:
            return [p.pattern for p in self._blocked_patterns]

    @staticmethod
    def normalize_program(program: str) -> str:
        """Reduce a program path to its bare name: no directory, quotes or extension."""
        name = program.strip().strip("\"'")
        name = re.split(r"[\\/]", name)[-1]
        return os.path.splitext(name)[0]

    def check_violation(self, program: str, arguments: str = "") -> Optional[str]:
        """
        Check a program invocation against this policy.

        Returns:
            None if allowed, otherwise a human-readable violation message
        """
        program_name = self.normalize_program(program)
        full_command = f"{program} {arguments}"

        with self._lock:
            if program_name.casefold() in self._blocked_programs:
                return f"Program '{program_name}' is blocked by command policy."

            for pattern in self._blocked_patterns:
                if pattern.search(full_command):
                    return f"Command matches blocked pattern: {pattern.pattern}"

        return None

    def check_command(self, command: str) -> Optional[str]:
        """
        Check a single-string command.

        The first token is checked as the program, then the whole string is
        checked as the argument of a synthesized ``cmd.exe /C`` invocation,
        so blocked constructs cannot hide behind argument splitting.
        """
        stripped = command.strip()
        parts = stripped.split(None, 1)
        first_token = parts[0] if parts else ""
        rest = parts[1] if len(parts) > 1 else ""

        return (self.check_violation(first_token, rest)
                or self.check_violation("cmd.exe", f"/C {stripped}"))

    @classmethod
    def create_default(cls) -> "CommandPolicy":
        """
        Policy blocking common destructive operations.

        Blocks: format, mkfs, diskpart, fdisk, shutdown, reboot, rm -rf,
        del /s, rd /s /q, registry deletion, fork bombs and raw device writes.
        """
        return (
            cls()
            # Destructive disk/partition commands
            .block_program("format")
            .block_program("mkfs")
            .block_program("diskpart")
            .block_program("fdisk")
            # System shutdown/reboot
            .block_program("shutdown")
            .block_program("reboot")
            # Dangerous patterns
            .block_pattern(r"rm\s+(-\w*f\w*\s+)*-\w*r|rm\s+(-\w*r\w*\s+)*-\w*f")  # rm -rf variants
            .block_pattern(r"rm\s+-rf\s+/\s*$")            # rm -rf /
            .block_pattern(r"del\s+/s")                    # recursive delete
            .block_pattern(r"rd\s+/s\s+/q")                # recursive remove dir
            .block_pattern(r"reg\s+delete")                # registry deletion
            .block_pattern(r":\(\)\s*\{.*\|.*\}\s*;\s*:")  # fork bomb
            .block_pattern(r">\s*/dev/sd[a-z]")            # write to raw disk
            .block_pattern(r"dd\s+.*of=/dev/")             # dd to device
            .block_pattern(r"mkfs\.")                      # filesystem format
        )


class PolicyEnforcingShell:
    """Decorator that enforces a CommandPolicy before delegating to an inner shell."""

    def __init__(self, inner: Any, policy: CommandPolicy):
        if inner is None or policy is None:
            raise ValueError("PolicyEnforcingShell requires an inner shell and a policy")
        self._inner = inner
        self._policy = policy

    async def run(self, command: str, **kwargs: Any) -> Any:
        violation = self._policy.check_command(command)
        if violation is not None:
            logger.warning(f"Blocked shell command: {command[:100]} ({violation})")
            raise CommandPolicyError(violation, blocked_command=command)
        return await self._inner.run(command, **kwargs)

    async def run_program(self, program: str, arguments: str = "", **kwargs: Any) -> Any:
        violation = self._policy.check_violation(program, arguments)
        if violation is not None:
            blocked = f"{program} {arguments}".strip()
            logger.warning(f"Blocked shell program: {blocked[:100]} ({violation})")
            raise CommandPolicyError(violation, blocked_command=blocked)
        return await self._inner.run_program(program, arguments, **kwargs)
