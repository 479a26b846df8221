"""Command descriptors, registry and dispatch pipeline."""
from .descriptor import CommandDescriptor, ParamDescriptor, param
from .registry import CommandRegistry
from .dispatcher import Dispatcher
from .safety_commands import SafetyCommands, safety_commands

__all__ = [
    "CommandDescriptor",
    "ParamDescriptor",
    "param",
    "CommandRegistry",
    "Dispatcher",
    "SafetyCommands",
    "safety_commands",
]
