"""Dispatch pipeline: resolve, bind, gate, execute, record, serialize."""

import asyncio
import inspect
import json
import time
from typing import Any, Dict, Optional

from loguru import logger

from core import response
from core.cancellation import CancellationToken
from core.exceptions import HarnessError, OperationCancelledError, ValidationError
from dispatch.descriptor import CommandDescriptor
from dispatch.registry import CommandRegistry
from safety.action_log import ActionLog
from safety.audit_logger import AuditLogger, audit_call
from safety.command_policy import CommandPolicy
from safety.emergency_stop import EmergencyStop
from security.input_validator import InputValidator, RawParams
from security.rate_limiter import RateLimiter


class Dispatcher:
    """
    Routes ``help`` / ``do`` / ``get`` calls through the safety pipeline.

    Every call returns an envelope string; errors never escape raw.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        emergency_stop: EmergencyStop,
        policy: CommandPolicy,
        rate_limiter: RateLimiter,
        action_log: ActionLog,
        audit: AuditLogger,
        validator: Optional[InputValidator] = None
    ):
        self.registry = registry
        self.emergency_stop = emergency_stop
        self.policy = policy
        self.rate_limiter = rate_limiter
        self.action_log = action_log
        self.audit = audit
        self.validator = validator or InputValidator()

        logger.info(f"Dispatcher ready ({registry.count} commands)")

    # ── Verbs ──

    def help(self, topic: Optional[str] = None) -> str:
        """Discover categories, commands in a category, or a command's parameters."""
        if topic is not None and not isinstance(topic, str):
            return response.error("invalid_parameter", "topic must be a string.")
        try:
            return response.content(self.registry.format_help(topic))
        except HarnessError as e:
            return response.error(e.code, e.message)
        except Exception as e:
            logger.error(f"Help failed for {topic!r}: {type(e).__name__}: {e}")
            return response.error("internal_error", f"{type(e).__name__}: {e}")

    async def do(self, name: str, params: RawParams = None) -> str:
        """Execute a mutating command."""
        return await self._dispatch_verb("do", name, params)

    async def get(self, name: str, params: RawParams = None) -> str:
        """Execute a read-only command."""
        return await self._dispatch_verb("get", name, params)

    async def _dispatch_verb(self, verb: str, name: str, params: RawParams) -> str:
        if not name or not name.strip():
            return response.error("invalid_parameter", "command cannot be empty.")

        descriptor = self.registry.find(name)
        if descriptor is None:
            return response.error("not_found", f"Unknown command: '{name}'. Use help() to discover commands.")

        if descriptor.verb != verb:
            kind = "a mutation" if descriptor.mutating else "read-only"
            return response.error(
                "wrong_verb",
                f"'{descriptor.name}' is {kind}. Use {descriptor.verb}(\"{descriptor.name}\") instead."
            )

        return await self._execute(descriptor, params)

    async def dispatch(self, name: str, params: RawParams = None) -> str:
        """Execute any command regardless of verb."""
        if not name or not name.strip():
            return response.error("invalid_parameter", "command cannot be empty.")

        descriptor = self.registry.find(name)
        if descriptor is None:
            return response.error("not_found", f"Unknown command: '{name}'. Use help() to discover commands.")

        return await self._execute(descriptor, params)

    # ── Pipeline ──

    async def _execute(self, descriptor: CommandDescriptor, params: RawParams) -> str:
        try:
            data = self.validator.parse(params)
            kwargs = self.validator.bind(data, descriptor.parameters)
        except ValidationError as e:
            return response.error(e.code, e.message)

        # Captured once; a reset mid-flight must not un-cancel this call
        token = self.emergency_stop.token
        if token.is_cancelled:
            if not descriptor.allow_when_stopped:
                logger.warning(f"Refused {descriptor.name}: emergency stop active")
                return response.error("cancelled", "Emergency stop is active. Use safety.resume to continue.")
            token = CancellationToken()

        if descriptor.shell:
            violation = self._check_policy(kwargs)
            if violation is not None:
                logger.warning(f"Refused {descriptor.name}: {violation}")
                return response.error("policy_violation", violation)

        if descriptor.mutating and descriptor.rate_limited and self.rate_limiter.record_and_check():
            logger.warning(f"Refused {descriptor.name}: rate limit {self.rate_limiter.max_per_second}/s exceeded")
            return response.error(
                "rate_limited",
                f"Rate limit exceeded ({self.rate_limiter.max_per_second} mutating commands per second)."
            )

        params_text = json.dumps(data, default=str, ensure_ascii=False) if data else None
        started = time.perf_counter()
        success = False
        try:
            if descriptor.audited:
                result = await audit_call(
                    self.audit, descriptor.category, descriptor.name.split(".", 1)[1], params_text,
                    lambda: self._invoke(descriptor, kwargs, token)
                )
            else:
                result = await self._invoke(descriptor, kwargs, token)
            success = True
            return response.ok(result, self._elapsed(started))
        except HarnessError as e:
            log = logger.warning if isinstance(e, OperationCancelledError) else logger.error
            log(f"{descriptor.name} failed [{e.code}]: {e.message}")
            return response.error(e.code, e.message, self._elapsed(started))
        except NotImplementedError as e:
            return response.error("unsupported", str(e) or f"{descriptor.name} is not supported on this system.",
                                  self._elapsed(started))
        except asyncio.CancelledError:
            # Only an emergency stop is reported; outer task cancellation propagates
            if not token.is_cancelled:
                raise
            logger.warning(f"{descriptor.name} cancelled")
            return response.error("cancelled", "Operation cancelled by emergency stop", self._elapsed(started))
        except Exception as e:
            logger.error(f"{descriptor.name} provider error: {type(e).__name__}: {e}")
            return response.error("provider_error", f"{type(e).__name__}: {e}", self._elapsed(started))
        finally:
            try:
                self.action_log.record(descriptor.name, params_text, self._elapsed(started), success)
            except Exception as e:
                logger.error(f"Failed to record action {descriptor.name}: {e}")

    def _check_policy(self, kwargs: Dict[str, Any]) -> Optional[str]:
        if kwargs.get("command") is not None:
            return self.policy.check_command(kwargs["command"])
        if kwargs.get("program") is not None:
            return self.policy.check_violation(kwargs["program"], kwargs.get("arguments") or "")
        return None

    @staticmethod
    async def _invoke(descriptor: CommandDescriptor, kwargs: Dict[str, Any], token: CancellationToken) -> Any:
        result = descriptor.handler(**kwargs, ct=token)
        if not inspect.isawaitable(result):
            return result

        task = asyncio.ensure_future(result)
        loop = asyncio.get_running_loop()
        unregister = token.add_callback(lambda: loop.call_soon_threadsafe(task.cancel))
        try:
            return await task
        finally:
            unregister()

    @staticmethod
    def _elapsed(started: float) -> float:
        return (time.perf_counter() - started) * 1000
