"""The ``safety.*`` command surface over the control-plane components."""

from typing import Any, Dict, List, Optional

from loguru import logger

from core import response
from core.cancellation import CancellationToken
from core.exceptions import ValidationError
from dispatch.descriptor import CommandDescriptor, param
from safety.action_log import ActionLog
from safety.audit_logger import AuditLogger
from safety.confirmation_manager import ConfirmationManager
from safety.emergency_stop import EmergencyStop
from safety.safe_zone import Region, SafeZone
from security.rate_limiter import RateLimiter


class SafetyCommands:
    """Handlers for inspecting and steering the safety layer."""

    def __init__(
        self,
        emergency_stop: EmergencyStop,
        action_log: ActionLog,
        audit: AuditLogger,
        safe_zone: SafeZone,
        rate_limiter: RateLimiter,
        confirmations: ConfirmationManager,
        monitors: Optional[Any] = None
    ):
        self.emergency_stop = emergency_stop
        self.action_log = action_log
        self.audit = audit
        self.safe_zone = safe_zone
        self.rate_limiter = rate_limiter
        self.confirmations = confirmations
        self.monitors = monitors

    def _active_monitor_count(self) -> int:
        return len(self.monitors.list_active()) if self.monitors is not None else 0

    # ── History ──

    def action_history(self, count: int = 50, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        count = max(1, min(count, self.action_log.max_actions))
        return response.as_items([a.to_dict() for a in self.action_log.get_recent(count)])

    def clear_history(self, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        removed = self.action_log.clear()
        return response.as_message(f"Cleared {removed} action history entries.")

    def audit_log(
        self,
        category: Optional[str] = None,
        count: int = 100,
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """Most recent audit entries, oldest first."""
        entries = self.audit.get_entries(category)
        if count > 0:
            entries = entries[-count:]
        return response.as_items([e.to_dict() for e in entries])

    # ── Emergency stop ──

    def emergency_stop_now(
        self,
        reason: str = "Emergency stop requested by command",
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        monitors = self._active_monitor_count()
        triggered = self.emergency_stop.trigger("command", reason)
        return {
            "triggered": triggered,
            "generation": self.emergency_stop.generation,
            "stopped_monitors": monitors if triggered else 0,
            "message": "Emergency stop triggered. Use safety.resume to reset.",
        }

    def resume(self, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        was_triggered = self.emergency_stop.is_triggered
        self.emergency_stop.reset("command")
        return {
            "resumed": True,
            "was_triggered": was_triggered,
            "generation": self.emergency_stop.generation,
        }

    # ── Safe zone ──

    def set_zone(
        self,
        window: Optional[str] = None,
        region_x: Optional[int] = None,
        region_y: Optional[int] = None,
        region_w: Optional[int] = None,
        region_h: Optional[int] = None,
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        coords = (region_x, region_y, region_w, region_h)

        if not window or not window.strip():
            if any(c is not None for c in coords):
                raise ValidationError("window is required when a region is given", "window")
            self.safe_zone.clear()
            return response.as_message("Safe zone cleared. Actions unrestricted.")

        region = None
        if any(c is not None for c in coords):
            if any(c is None for c in coords):
                raise ValidationError("region_x, region_y, region_w and region_h must be given together", "region_x")
            try:
                region = Region(region_x, region_y, region_w, region_h)
            except ValueError as e:
                raise ValidationError(str(e), "region_w")

        return self.safe_zone.set(window.strip(), region).to_dict()

    def get_zone(self, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        zone = self.safe_zone.current
        return {
            "is_set": zone is not None,
            "window": zone.window if zone else None,
            "region": zone.region.to_dict() if zone and zone.region else None,
        }

    # ── Rate limit ──

    def set_rate_limit(self, max_per_second: int, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        self.rate_limiter.set_limit(max_per_second)
        limit = self.rate_limiter.max_per_second
        if limit:
            return response.as_message(f"Rate limit set to {limit} actions/second.")
        return response.as_message("Rate limit disabled.")

    def status(self, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        zone = self.safe_zone.current
        return {
            "emergency_stop": self.emergency_stop.get_status(),
            "safe_zone": zone.to_dict() if zone else None,
            "rate_limit": {
                "max_per_second": self.rate_limiter.max_per_second,
                "current_rate": self.rate_limiter.current_rate,
            },
            "active_monitors": self._active_monitor_count(),
            "action_history_count": self.action_log.count,
            "audit_entry_count": self.audit.count,
            "pending_confirmations": len(self.confirmations.list_pending()),
        }

    # ── Confirmations ──

    def confirm_before(self, action: str, reason: str, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        if not action.strip():
            raise ValidationError("action cannot be empty.", "action")
        if not reason.strip():
            raise ValidationError("reason cannot be empty.", "reason")

        request = self.confirmations.create(action, reason)
        data = request.to_dict()
        data["instructions"] = (
            "Edit the JSON file to change status to 'approved' or 'denied', "
            "or use safety.approve / safety.deny."
        )
        return data

    def check_confirmation(self, confirmation_id: str, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        return self.confirmations.check(confirmation_id).to_dict()

    def approve(self, confirmation_id: str, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        return self.confirmations.approve(confirmation_id).to_dict()

    def deny(self, confirmation_id: str, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        return self.confirmations.deny(confirmation_id).to_dict()

    def list_pending(self, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        return response.as_items([r.to_dict() for r in self.confirmations.list_pending()])


def safety_commands(s: SafetyCommands) -> List[CommandDescriptor]:
    """Command table for the safety category."""
    confirmation_id = param("confirmation_id", "string", "Confirmation request ID.", required=True)

    commands = [
        CommandDescriptor(
            "safety.action_history", "Recent dispatched commands, newest first.", s.action_history,
            parameters=(param("count", "integer", "Number of actions to return (1-200).", default=50),),
        ),
        CommandDescriptor(
            "safety.clear_history", "Clear the action history.", s.clear_history,
            mutating=True, rate_limited=False,
        ),
        CommandDescriptor(
            "safety.audit_log", "Audited actions, optionally filtered by category.", s.audit_log,
            parameters=(
                param("category", "string", "Exact category, case-insensitive (e.g. Shell, file)."),
                param("count", "integer", "Maximum entries to return (0 = all).", default=100),
            ),
        ),
        CommandDescriptor(
            "safety.emergency_stop", "Cancel in-flight work, stop monitors and refuse further commands.",
            s.emergency_stop_now, mutating=True, rate_limited=False,
            parameters=(param("reason", "string", "Why the stop was requested.",
                              default="Emergency stop requested by command"),),
        ),
        CommandDescriptor(
            "safety.resume", "Reset the emergency stop and resume operations.", s.resume,
            mutating=True, allow_when_stopped=True, rate_limited=False,
        ),
        CommandDescriptor(
            "safety.set_zone", "Restrict input to a window and optional region. Omit window to clear.",
            s.set_zone, mutating=True, rate_limited=False,
            parameters=(
                param("window", "string", "Window title substring. Omit to clear the zone."),
                param("region_x", "integer", "Region left edge."),
                param("region_y", "integer", "Region top edge."),
                param("region_w", "integer", "Region width."),
                param("region_h", "integer", "Region height."),
            ),
        ),
        CommandDescriptor("safety.get_zone", "Current safe zone, if any.", s.get_zone),
        CommandDescriptor(
            "safety.set_rate_limit", "Maximum mutating commands per second (0 disables).", s.set_rate_limit,
            mutating=True, rate_limited=False,
            parameters=(param("max_per_second", "integer", "Ceiling, 0 to disable.", required=True),),
        ),
        CommandDescriptor(
            "safety.status", "Emergency stop, safe zone, rate limit, monitors and log counts.", s.status,
            allow_when_stopped=True,
        ),
        CommandDescriptor(
            "safety.confirm_before", "Create a confirmation request file for a dangerous action.",
            s.confirm_before, mutating=True,
            parameters=(
                param("action", "string", "Action requiring confirmation.", required=True),
                param("reason", "string", "Why confirmation is needed.", required=True),
            ),
        ),
        CommandDescriptor(
            "safety.check_confirmation", "Poll a confirmation request (re-reads its file).",
            s.check_confirmation, parameters=(confirmation_id,),
        ),
        CommandDescriptor(
            "safety.approve", "Approve a pending confirmation request.", s.approve,
            mutating=True, parameters=(confirmation_id,),
        ),
        CommandDescriptor(
            "safety.deny", "Deny a pending confirmation request.", s.deny,
            mutating=True, parameters=(confirmation_id,),
        ),
        CommandDescriptor("safety.list_pending", "Pending confirmation requests.", s.list_pending),
    ]

    logger.debug(f"Safety commands: {len(commands)}")
    return commands
