#!/usr/bin/env python3
"""
HostHarness - Main Entry Point

Builds the control plane and capability providers from settings and serves a
line-oriented local console: each stdin line is ``help [topic]`` or a JSON
object ``{"verb": "do"|"get"|"dispatch", "command": ..., "params": {...}}``,
and each reply is one JSON envelope line on stdout.
"""

import asyncio
import json
import signal
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Set, TextIO

from loguru import logger

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from config.settings import Settings, settings
from core import response
from dispatch import CommandRegistry, Dispatcher, SafetyCommands, safety_commands
from execution import (
    DesktopController,
    MonitorManager,
    ShellController,
    SystemController,
    desktop_commands,
    monitor_commands,
    shell_commands,
    system_commands,
)
from safety import (
    ActionLog,
    AuditingShell,
    AuditLogger,
    CommandPolicy,
    ConfirmationManager,
    EmergencyStop,
    EmergencyStopHotkey,
    PolicyEnforcingShell,
    SafeZone,
)
from security import RateLimiter


def setup_logging(config: Settings = settings):
    """Log to stderr (stdout carries envelopes) and a rotating file."""
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        level=config.log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )

    log_file = config.log_dir / "harness.log"
    logger.add(
        log_file,
        rotation="10 MB",
        retention="30 days",
        level=config.log_level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
    )

    logger.info(f"Logging configured. Log file: {log_file}")


@dataclass
class Harness:
    """Every constructed component, wired together."""
    dispatcher: Dispatcher
    registry: CommandRegistry
    emergency_stop: EmergencyStop
    policy: CommandPolicy
    rate_limiter: RateLimiter
    action_log: ActionLog
    audit: AuditLogger
    confirmations: ConfirmationManager
    safe_zone: SafeZone
    monitors: MonitorManager
    shell: Any

    def close(self) -> None:
        self.monitors.stop_all()
        self.emergency_stop.dispose()


def build_policy(config: Settings) -> CommandPolicy:
    policy = CommandPolicy.create_default() if config.use_default_policy else CommandPolicy()
    for program in config.blocked_programs:
        policy.block_program(program)
    for pattern in config.blocked_patterns:
        policy.block_pattern(pattern)
    return policy


def build_harness(config: Settings = settings, desktop_backend: Optional[Any] = None) -> Harness:
    """
    Construct the control plane and providers explicitly and inject them.

    Args:
        config: Settings to build from
        desktop_backend: pyautogui-compatible object (default: pyautogui, loaded lazily)
    """
    emergency_stop = EmergencyStop()
    audit = AuditLogger(config.audit_max_entries)
    action_log = ActionLog(config.action_log_max_entries)
    policy = build_policy(config)
    rate_limiter = RateLimiter(config.rate_limit_per_second)
    confirmations = ConfirmationManager(config.confirmation_dir)
    safe_zone = SafeZone()
    monitors = MonitorManager(config.monitor_output_dir, emergency_stop)

    # Policy outermost: blocked commands are never run or audited
    shell = PolicyEnforcingShell(
        AuditingShell(
            ShellController(config.shell_timeout_seconds, config.shell_max_output_chars),
            audit
        ),
        policy
    )

    safety = SafetyCommands(emergency_stop, action_log, audit, safe_zone, rate_limiter, confirmations, monitors)
    registry = CommandRegistry([
        *shell_commands(shell),
        *system_commands(SystemController()),
        *desktop_commands(DesktopController(safe_zone, desktop_backend)),
        *monitor_commands(monitors),
        *safety_commands(safety),
    ])

    dispatcher = Dispatcher(registry, emergency_stop, policy, rate_limiter, action_log, audit)

    return Harness(
        dispatcher=dispatcher,
        registry=registry,
        emergency_stop=emergency_stop,
        policy=policy,
        rate_limiter=rate_limiter,
        action_log=action_log,
        audit=audit,
        confirmations=confirmations,
        safe_zone=safe_zone,
        monitors=monitors,
        shell=shell,
    )


async def handle_line(dispatcher: Dispatcher, line: str) -> Optional[str]:
    """Turn one console line into one envelope. Blank lines produce nothing."""
    line = line.strip()
    if not line:
        return None

    if line == "help" or line.startswith("help "):
        return dispatcher.help(line[len("help"):].strip() or None)

    try:
        request = json.loads(line)
    except json.JSONDecodeError as e:
        return response.error("invalid_request", f"Expected 'help [topic]' or a JSON object: {e.msg}")

    if not isinstance(request, dict):
        return response.error("invalid_request", "Request must be a JSON object.")

    verb = request.get("verb", "dispatch")
    command = request.get("command")
    params = request.get("params")

    if command is not None and not isinstance(command, str):
        return response.error("invalid_request", "'command' must be a string.")
    if verb == "help":
        return dispatcher.help(command)
    if command is None:
        return response.error("invalid_request", "'command' must be a string.")
    if params is not None and not isinstance(params, (dict, str)):
        return response.error("invalid_parameter", "'params' must be a JSON object.")

    if verb == "do":
        return await dispatcher.do(command, params)
    if verb == "get":
        return await dispatcher.get(command, params)
    if verb == "dispatch":
        return await dispatcher.dispatch(command, params)
    return response.error("invalid_request", f"Unknown verb: '{verb}'. Use help, do, get or dispatch.")


async def serve_console(dispatcher: Dispatcher, reader: Optional[TextIO] = None,
                        writer: Optional[TextIO] = None) -> None:
    """
    Read requests until EOF, each handled as its own task.

    A long-running command does not hold up the next line, so an emergency
    stop sent over the console reaches the dispatcher while it runs. Replies
    are written whole, in completion order.
    """
    reader = reader or sys.stdin
    writer = writer or sys.stdout
    loop = asyncio.get_running_loop()
    write_lock = asyncio.Lock()
    pending: Set[asyncio.Task] = set()

    async def serve(line: str) -> None:
        try:
            reply = await handle_line(dispatcher, line)
        except Exception as e:
            logger.error(f"Console request failed: {type(e).__name__}: {e}")
            reply = response.error("internal_error", f"{type(e).__name__}: {e}")
        if reply is not None:
            async with write_lock:
                writer.write(reply + "\n")
                writer.flush()

    while True:
        line = await loop.run_in_executor(None, reader.readline)
        if not line:
            break

        task = asyncio.ensure_future(serve(line))
        pending.add(task)
        task.add_done_callback(pending.discard)
        # Let the request start before reading the next line
        await asyncio.sleep(0)

    if pending:
        logger.info(f"Console closed; waiting for {len(pending)} request(s)")
        await asyncio.gather(*pending)


def handle_signal(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


async def main():
    """Main entry point."""
    setup_logging()

    logger.info("=" * 60)
    logger.info(f"Starting {settings.agent_name}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info("=" * 60)

    signal.signal(signal.SIGTERM, handle_signal)

    harness = build_harness()
    hotkey = None
    if settings.enable_emergency_hotkey:
        hotkey = EmergencyStopHotkey(harness.emergency_stop, settings.emergency_hotkey)
        hotkey.start()

    try:
        await serve_console(harness.dispatcher)
    finally:
        logger.info("Shutting down gracefully...")
        if hotkey is not None:
            hotkey.stop()
        harness.close()
        if harness.audit.count:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            try:
                harness.audit.export_session(settings.log_dir / f"audit_{stamp}.json")
            except OSError as e:
                logger.error(f"Failed to export audit session: {e}")
        logger.info("Shutdown complete")


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
    except Exception as e:
        logger.error(f"Unhandled exception: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
