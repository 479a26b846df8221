"""Execution layer: capability providers and their command tables."""
from .shell_controller import ShellController, ShellResult, shell_commands
from .system_controller import SystemController, system_commands
from .desktop_controller import DesktopController, desktop_commands
from .monitor_controller import MonitorManager, monitor_commands

__all__ = [
    "ShellController",
    "ShellResult",
    "shell_commands",
    "SystemController",
    "system_commands",
    "DesktopController",
    "desktop_commands",
    "MonitorManager",
    "monitor_commands",
]
