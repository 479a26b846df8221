"""Safety layer: audit and action logs, command policy, emergency stop, confirmations, safe zone."""
from .action_log import ActionLog, ActionRecord
from .audit_logger import AuditEntry, AuditLogger, AuditingShell, audit_call
from .command_policy import CommandPolicy, PolicyEnforcingShell
from .confirmation_manager import ConfirmationManager, ConfirmationRequest, ConfirmationStatus
from .emergency_stop import EmergencyEvent, EmergencyStop
from .hotkey import EmergencyStopHotkey
from .safe_zone import Region, SafeZone, SafeZoneConfig

__all__ = [
    "ActionLog",
    "ActionRecord",
    "AuditEntry",
    "AuditLogger",
    "AuditingShell",
    "audit_call",
    "CommandPolicy",
    "PolicyEnforcingShell",
    "ConfirmationManager",
    "ConfirmationRequest",
    "ConfirmationStatus",
    "EmergencyEvent",
    "EmergencyStop",
    "EmergencyStopHotkey",
    "Region",
    "SafeZone",
    "SafeZoneConfig",
]
