"""Declarative command and parameter descriptors."""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

from core.exceptions import RegistryError


_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$")

PARAM_TYPES = ("string", "integer", "number", "boolean", "string[]", "object")


@dataclass(frozen=True)
class ParamDescriptor:
    """A single named parameter of a command."""
    name: str
    type_name: str
    description: str
    required: bool = False
    default: Any = None
    choices: Optional[Tuple[Any, ...]] = None

    def __post_init__(self):
        if self.type_name not in PARAM_TYPES:
            raise RegistryError(f"Parameter '{self.name}' has unknown type '{self.type_name}'")
        if self.required and self.default is not None:
            raise RegistryError(f"Required parameter '{self.name}' cannot have a default")


@dataclass(frozen=True)
class CommandDescriptor:
    """
    A dispatchable command such as ``mouse.click``.

    ``handler`` is called with the bound parameters as keywords plus ``ct``
    (the cancellation token captured at dispatch); it may be sync or async.
    """
    name: str
    description: str
    handler: Callable[..., Any]
    mutating: bool = False
    parameters: Tuple[ParamDescriptor, ...] = field(default_factory=tuple)
    shell: bool = False
    audited: bool = False
    allow_when_stopped: bool = False
    # Safety controls stay reachable when an agent is being throttled
    rate_limited: bool = True

    def __post_init__(self):
        if not _NAME_PATTERN.match(self.name):
            raise RegistryError(f"Invalid command name '{self.name}' (expected category.action)")
        names = [p.name for p in self.parameters]
        if len(names) != len(set(names)):
            raise RegistryError(f"Command '{self.name}' declares duplicate parameters")
        # Accept lists from callers, store immutably
        object.__setattr__(self, "parameters", tuple(self.parameters))

    @property
    def category(self) -> str:
        return self.name.split(".", 1)[0]

    @property
    def verb(self) -> str:
        return "do" if self.mutating else "get"


def param(
    name: str,
    type_name: str,
    description: str,
    required: bool = False,
    default: Any = None,
    choices: Optional[Tuple[Any, ...]] = None
) -> ParamDescriptor:
    """Shorthand used by the ``*_commands`` tables."""
    return ParamDescriptor(name, type_name, description, required, default, choices)
