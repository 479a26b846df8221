"""End-to-end tests for the dispatch pipeline."""

import asyncio
import json
import sys

import pytest

from core.exceptions import HarnessError, SafeZoneViolationError
from dispatch.descriptor import CommandDescriptor, param
from dispatch.dispatcher import Dispatcher
from dispatch.registry import CommandRegistry
from dispatch.safety_commands import SafetyCommands, safety_commands
from safety.action_log import ActionLog
from safety.audit_logger import AuditLogger
from safety.command_policy import CommandPolicy
from safety.confirmation_manager import ConfirmationManager
from safety.emergency_stop import EmergencyStop
from safety.safe_zone import SafeZone
from security.rate_limiter import RateLimiter
from execution.shell_controller import ShellResult, shell_commands
from conftest import FakeShell, assert_error


def run(coro):
    return json.loads(asyncio.run(coro))


class Env:
    """A dispatcher over test commands plus the real safety commands."""

    def __init__(self, tmp_path):
        self.stop = EmergencyStop()
        self.audit = AuditLogger()
        self.actions = ActionLog()
        self.policy = CommandPolicy.create_default()
        self.limiter = RateLimiter()
        self.shell = FakeShell(result=ShellResult(0, "ok", "", 1))
        self.seen_tokens = []

        safety = SafetyCommands(self.stop, self.actions, self.audit, SafeZone(), self.limiter,
                                ConfirmationManager(tmp_path / "confirm"))
        self.registry = CommandRegistry([
            CommandDescriptor("test.echo", "Echo a value.", self.echo,
                              parameters=(param("value", "string", "Value", required=True),)),
            CommandDescriptor("test.touch", "Mutate something.", self.touch, mutating=True),
            CommandDescriptor("test.fail", "Raise the given kind of error.", self.fail, mutating=True, audited=True,
                              parameters=(param("kind", "string", "Error kind", required=True),)),
            CommandDescriptor("test.slow", "Sleep until cancelled.", self.slow, mutating=True),
            *shell_commands(self.shell),
            *safety_commands(safety),
        ])
        self.dispatcher = Dispatcher(self.registry, self.stop, self.policy, self.limiter, self.actions, self.audit)

    def echo(self, value, ct=None):
        self.seen_tokens.append(ct)
        return {"value": value}

    async def touch(self, ct=None):
        return {"touched": True}

    def fail(self, kind, ct=None):
        if kind == "harness":
            raise HarnessError("gone", code="not_found")
        if kind == "zone":
            raise SafeZoneViolationError("outside")
        if kind == "unsupported":
            raise NotImplementedError("no backend")
        raise KeyError("boom")

    async def slow(self, ct=None):
        await asyncio.sleep(30)


@pytest.fixture
def env(tmp_path):
    return Env(tmp_path)


# ── Resolution and binding ──

def test_unknown_command_has_no_side_effects(env):
    assert_error(run(env.dispatcher.do("nope.nothing")), "not_found")
    assert_error(run(env.dispatcher.dispatch("nope.nothing")), "not_found")
    assert env.actions.count == 0


def test_empty_command_name(env):
    assert_error(run(env.dispatcher.get("  ")), "invalid_parameter")


def test_invalid_params_have_no_side_effects(env):
    assert_error(run(env.dispatcher.get("test.echo", "{broken")), "invalid_parameter")
    assert_error(run(env.dispatcher.get("test.echo", {})), "invalid_parameter")
    assert_error(run(env.dispatcher.get("test.echo", {"value": 1})), "invalid_parameter")
    assert_error(run(env.dispatcher.get("test.echo", {"value": "a", "extra": 1})), "invalid_parameter")
    assert env.actions.count == 0


def test_wrong_verb(env):
    env_do = run(env.dispatcher.do("test.echo", {"value": "x"}))
    assert_error(env_do, "wrong_verb")
    assert 'get("test.echo")' in env_do["error"]["message"]
    assert_error(run(env.dispatcher.get("test.touch")), "wrong_verb")
    assert env.actions.count == 0


def test_success_records_action_with_token(env):
    result = run(env.dispatcher.get("test.echo", '{"value": "hi"}'))
    assert result["ok"] is True
    assert result["data"] == {"value": "hi"}
    assert "error" not in result
    assert isinstance(result["meta"]["ms"], int)

    record = env.actions.get_recent()[0]
    assert record.tool == "test.echo"
    assert record.success is True
    assert json.loads(record.parameters) == {"value": "hi"}
    assert env.seen_tokens == [env.stop.token]


def test_command_names_are_case_insensitive(env):
    assert run(env.dispatcher.get("TEST.Echo", {"value": "x"}))["ok"] is True


# ── Policy ──

def test_blocked_shell_command_records_nothing(env):
    result = run(env.dispatcher.do("shell.run", {"command": "shutdown /s /t 0"}))
    assert_error(result, "policy_violation")
    assert "shutdown" in result["error"]["message"]
    assert env.actions.count == 0
    assert env.audit.count == 0
    assert env.shell.calls == []


def test_blocked_program_via_two_argument_path(env):
    result = run(env.dispatcher.do("shell.run_program", {"program": "reg", "arguments": "delete HKCU\\Test /f"}))
    assert_error(result, "policy_violation")
    assert env.shell.calls == []


def test_allowed_shell_command_runs(env):
    result = run(env.dispatcher.do("shell.run", {"command": "git status"}))
    assert result["ok"] is True
    assert result["data"]["exit_code"] == 0
    assert env.shell.calls == [("run", "git status")]
    assert env.actions.count == 1


# ── Emergency stop ──

def test_emergency_stop_refuses_then_resume_allows(env):
    env.stop.trigger("test", "halt")

    assert_error(run(env.dispatcher.get("test.echo", {"value": "x"})), "cancelled")
    assert_error(run(env.dispatcher.do("test.touch")), "cancelled")
    assert env.actions.count == 0

    status = run(env.dispatcher.get("safety.status"))
    assert status["ok"] is True
    assert status["data"]["emergency_stop"]["triggered"] is True

    resumed = run(env.dispatcher.do("safety.resume"))
    assert resumed["data"] == {"resumed": True, "was_triggered": True, "generation": 1}

    assert run(env.dispatcher.get("test.echo", {"value": "x"}))["ok"] is True


def test_emergency_stop_cancels_in_flight_command(env):
    async def scenario():
        task = asyncio.ensure_future(env.dispatcher.do("test.slow"))
        await asyncio.sleep(0.05)
        env.stop.trigger("test", "mid-flight")
        return await asyncio.wait_for(task, timeout=5)

    result = json.loads(asyncio.run(scenario()))
    assert_error(result, "cancelled")
    record = env.actions.get_recent()[0]
    assert record.tool == "test.slow"
    assert record.success is False


def test_outer_cancellation_propagates(env):
    async def scenario():
        task = asyncio.ensure_future(env.dispatcher.do("test.slow"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert not env.stop.is_triggered
    assert env.actions.get_recent()[0].success is False


def test_emergency_stop_command(env):
    result = run(env.dispatcher.do("safety.emergency_stop", {"reason": "testing"}))
    assert result["data"]["triggered"] is True
    assert env.stop.is_triggered
    assert env.stop.get_history()[0].reason == "testing"


# ── Rate limiting ──

def test_rate_limit_applies_to_mutating_commands_only(env):
    assert run(env.dispatcher.do("safety.set_rate_limit", {"max_per_second": 2}))["ok"] is True

    assert run(env.dispatcher.do("test.touch"))["ok"] is True
    assert run(env.dispatcher.do("test.touch"))["ok"] is True
    assert_error(run(env.dispatcher.do("test.touch")), "rate_limited")

    # Reads are never counted and safety controls stay reachable
    for _ in range(5):
        assert run(env.dispatcher.get("test.echo", {"value": "x"}))["ok"] is True
    assert run(env.dispatcher.do("safety.set_rate_limit", {"max_per_second": 0}))["ok"] is True
    assert run(env.dispatcher.do("test.touch"))["ok"] is True

    # The refused call was not recorded
    assert [a.tool for a in env.actions.get_recent()].count("test.touch") == 3


# ── Error mapping ──

@pytest.mark.parametrize("kind,code", [
    ("harness", "not_found"),
    ("zone", "safe_zone_violation"),
    ("unsupported", "unsupported"),
    ("other", "provider_error"),
])
def test_exceptions_map_to_codes(env, kind, code):
    result = run(env.dispatcher.do("test.fail", {"kind": kind}))
    assert_error(result, code)

    record = env.actions.get_recent()[0]
    assert record.success is False

    entry = env.audit.get_entries()[-1]
    assert entry.category == "test"
    assert entry.action == "fail"
    assert entry.success is False


class BrokenActionLog(ActionLog):
    def record(self, *args, **kwargs):
        raise OSError("disk full")


def test_action_log_failure_does_not_change_result(env):
    env.dispatcher.action_log = BrokenActionLog()
    result = run(env.dispatcher.do("test.touch"))
    assert result["ok"] is True
    assert result["data"] == {"touched": True}

    assert_error(run(env.dispatcher.do("test.fail", {"kind": "harness"})), "not_found")


# ── Help ──

def test_help_envelopes(env):
    overview = json.loads(env.dispatcher.help())
    assert overview["data"]["format"] == "text"
    assert "categories" in overview["data"]["content"]

    assert "[do] test.touch" in json.loads(env.dispatcher.help("test"))["data"]["content"]
    assert "value (string, required)" in json.loads(env.dispatcher.help("test.echo"))["data"]["content"]
    assert_error(json.loads(env.dispatcher.help("missing")), "not_found")


def test_help_available_during_emergency_stop(env):
    env.stop.trigger()
    assert json.loads(env.dispatcher.help())["ok"] is True


# ── Full harness ──

def test_harness_blocks_destructive_shell(harness):
    result = json.loads(asyncio.run(harness.dispatcher.do("shell.run", {"command": "rm -rf /"})))
    assert_error(result, "policy_violation")
    assert harness.action_log.count == 0
    assert harness.audit.count == 0


def test_harness_runs_real_program(harness):
    params = {"program": sys.executable, "arguments": "-c \"print('hi')\""}
    result = json.loads(asyncio.run(harness.dispatcher.do("shell.run_program", params)))
    assert result["ok"] is True, result
    assert result["data"]["stdout"].strip() == "hi"
    assert result["data"]["exit_code"] == 0

    entry = harness.audit.get_entries("shell")[0]
    assert entry.action == "run_program"
    assert entry.success is True


def test_harness_rejects_unbalanced_quotes(harness):
    params = {"program": sys.executable, "arguments": "-c \"print(1)"}
    result = json.loads(asyncio.run(harness.dispatcher.do("shell.run_program", params)))
    assert_error(result, "invalid_parameter")
    assert "arguments" in result["error"]["message"]


def test_harness_confirmation_flow(harness):
    created = json.loads(asyncio.run(harness.dispatcher.do(
        "safety.confirm_before", {"action": "wipe cache", "reason": "irreversible"})))
    confirmation_id = created["data"]["id"]

    pending = json.loads(asyncio.run(harness.dispatcher.get("safety.list_pending")))
    assert [r["id"] for r in pending["data"]["items"]] == [confirmation_id]

    approved = json.loads(asyncio.run(harness.dispatcher.do("safety.approve", {"confirmation_id": confirmation_id})))
    assert approved["data"]["status"] == "approved"

    checked = json.loads(asyncio.run(harness.dispatcher.get(
        "safety.check_confirmation", {"confirmation_id": confirmation_id})))
    assert checked["data"]["status"] == "approved"
    assert checked["data"]["resolved_at"] is not None

    again = json.loads(asyncio.run(harness.dispatcher.do("safety.deny", {"confirmation_id": confirmation_id})))
    assert_error(again, "confirmation_conflict")

    unknown = json.loads(asyncio.run(harness.dispatcher.do("safety.approve", {"confirmation_id": "ffffffff"})))
    assert_error(unknown, "confirmation_not_found")


def test_harness_registers_every_category(harness):
    assert harness.registry.get_categories() == [
        "file", "keyboard", "monitor", "mouse", "process", "safety", "screen", "shell", "system",
    ]


def test_help_rejects_non_string_topic(env):
    assert_error(json.loads(env.dispatcher.help(5)), "invalid_parameter")


def test_help_reports_unexpected_failures(env, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("renderer broke")

    monkeypatch.setattr(env.registry, "format_help", broken)
    assert_error(json.loads(env.dispatcher.help()), "internal_error")
