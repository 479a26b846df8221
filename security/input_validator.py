"""Strict parameter parsing and binding against command parameter schemas."""

import json
import math
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Union

from loguru import logger

from core.exceptions import ValidationError


RawParams = Union[str, Mapping[str, Any], None]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_string(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string", name)
    return value


def _check_integer(value: Any, name: str) -> int:
    if _is_int(value):
        return value
    # JSON encoders sometimes emit 5.0 for 5
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    raise ValidationError(f"{name} must be an integer", name)


def _check_number(value: Any, name: str) -> float:
    if _is_int(value) or (isinstance(value, float) and math.isfinite(value)):
        return value
    raise ValidationError(f"{name} must be a number", name)


def _check_boolean(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean", name)
    return value


def _check_string_list(value: Any, name: str) -> list:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{name} must be an array of strings", name)
    return list(value)


def _check_object(value: Any, name: str) -> dict:
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be an object", name)
    return dict(value)


class InputValidator:
    """
    Binds raw command parameters to a command's declared parameters.

    Rejects unexpected fields, enforces type checks and length limits.
    Bools are never accepted where integers are expected.
    """

    MAX_STRING_LENGTH = 1_000_000

    TYPE_CHECKS: Dict[str, Callable[[Any, str], Any]] = {
        "string": _check_string,
        "integer": _check_integer,
        "number": _check_number,
        "boolean": _check_boolean,
        "string[]": _check_string_list,
        "object": _check_object,
    }

    def parse(self, raw: RawParams) -> Dict[str, Any]:
        """
        Parse raw parameters into a dictionary.

        Args:
            raw: JSON object text, a mapping, or None

        Raises:
            ValidationError: Malformed JSON or a non-object value
        """
        if raw is None:
            return {}

        if isinstance(raw, Mapping):
            return dict(raw)

        if isinstance(raw, str):
            if not raw.strip():
                return {}
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Malformed JSON parameters: {e.msg} at position {e.pos}")
            if parsed is None:
                return {}
            if not isinstance(parsed, dict):
                raise ValidationError(f"Parameters must be a JSON object, got {type(parsed).__name__}")
            return parsed

        raise ValidationError(f"Parameters must be a JSON object, got {type(raw).__name__}")

    def bind(self, data: Mapping[str, Any], parameters: Sequence[Any]) -> Dict[str, Any]:
        """
        Validate data against parameter descriptors and fill in defaults.

        Args:
            data: Parsed parameters
            parameters: Ordered ParamDescriptor list

        Returns:
            Keyword arguments for the command handler

        Raises:
            ValidationError: Missing required, wrong type or unexpected field
        """
        known = {p.name for p in parameters}
        unexpected = sorted(set(data.keys()) - known)
        if unexpected:
            raise ValidationError(f"Unexpected fields: {', '.join(unexpected)}", unexpected[0])

        bound: Dict[str, Any] = {}
        for param in parameters:
            value = data.get(param.name)

            if value is None:
                if param.required:
                    raise ValidationError(f"{param.name} is required", param.name)
                bound[param.name] = param.default
                continue

            bound[param.name] = self.validate(value, param)

        return bound

    def validate(self, value: Any, param: Any) -> Any:
        """Validate one value against one ParamDescriptor."""
        check = self.TYPE_CHECKS.get(param.type_name)
        if check is None:
            raise ValidationError(f"Unknown parameter type: {param.type_name}", param.name)

        value = check(value, param.name)

        if isinstance(value, str) and len(value) > self.MAX_STRING_LENGTH:
            raise ValidationError(
                f"{param.name} must be at most {self.MAX_STRING_LENGTH} characters",
                param.name
            )

        if param.choices and value not in param.choices:
            raise ValidationError(
                f"{param.name} must be one of: {', '.join(str(c) for c in param.choices)}",
                param.name
            )

        logger.trace(f"Validated {param.name} as {param.type_name}")
        return value

    def parse_and_bind(self, raw: RawParams, parameters: Sequence[Any]) -> Dict[str, Any]:
        return self.bind(self.parse(raw), parameters)


def describe_default(default: Optional[Any]) -> str:
    """Render a default value for help text."""
    if default is None:
        return "null"
    if isinstance(default, bool):
        return "true" if default else "false"
    if isinstance(default, str):
        return f'"{default}"'
    return json.dumps(default, default=str)
