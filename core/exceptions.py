"""Exception hierarchy shared by the control plane and capability providers.

Every error carries a stable ``code`` that the dispatcher copies into the
response envelope, so callers can branch on it without parsing messages.
"""

from typing import Optional


class HarnessError(Exception):
    """Base error for all harness operations."""

    code = "provider_error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class RegistryError(HarnessError):
    """Invalid command registration. Raised at startup, never at call time."""

    code = "registry_error"


class CommandNotFoundError(HarnessError):
    """Unknown command name or help topic."""

    code = "not_found"


class ValidationError(HarnessError):
    """Malformed or missing command parameters."""

    code = "invalid_parameter"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class CommandPolicyError(HarnessError):
    """A shell command matched a blocked program or pattern."""

    code = "policy_violation"

    def __init__(self, message: str, blocked_command: Optional[str] = None):
        self.blocked_command = blocked_command
        super().__init__(message)


class OperationCancelledError(HarnessError):
    """Emergency stop was active at dispatch time or fired mid-flight."""

    code = "cancelled"

    def __init__(self, message: str = "Operation cancelled by emergency stop"):
        super().__init__(message)


class UnsupportedOperationError(HarnessError):
    """A provider does not implement an optional operation."""

    code = "unsupported"


class RateLimitExceededError(HarnessError):
    """Too many mutating commands in the last second."""

    code = "rate_limited"


class SafeZoneViolationError(HarnessError):
    """Input command targets a point or window outside the safe zone."""

    code = "safe_zone_violation"


class ConfirmationError(HarnessError):
    """Base error for the confirmation workflow."""

    code = "confirmation_error"


class ConfirmationNotFoundError(ConfirmationError):
    """Unknown confirmation id, or its backing file is missing or corrupt."""

    code = "confirmation_not_found"


class ConfirmationStateError(ConfirmationError):
    """Transition attempted on a request that is already resolved."""

    code = "confirmation_conflict"
