"""Tests for cancellation tokens, the emergency stop and its hotkey."""

import threading

import pytest

from core.cancellation import CancellationToken
from core.exceptions import OperationCancelledError
from safety.emergency_stop import EmergencyStop
from safety.hotkey import EmergencyStopHotkey


# ── CancellationToken ──

def test_token_cancel_is_idempotent_and_runs_callbacks_once():
    token = CancellationToken()
    calls = []
    token.add_callback(lambda: calls.append(1))
    token.cancel()
    token.cancel()
    assert token.is_cancelled
    assert calls == [1]


def test_callback_runs_immediately_when_already_cancelled():
    token = CancellationToken()
    token.cancel()
    calls = []
    token.add_callback(lambda: calls.append(1))
    assert calls == [1]


def test_unregistered_callback_does_not_run():
    token = CancellationToken()
    calls = []
    unregister = token.add_callback(lambda: calls.append(1))
    unregister()
    token.cancel()
    assert calls == []


def test_failing_callback_does_not_stop_others():
    token = CancellationToken()
    calls = []

    def bad():
        raise RuntimeError("boom")

    token.add_callback(bad)
    token.add_callback(lambda: calls.append(1))
    token.cancel()
    assert calls == [1]


def test_raise_if_cancelled():
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    with pytest.raises(OperationCancelledError) as exc:
        token.raise_if_cancelled()
    assert exc.value.code == "cancelled"


def test_linked_token_follows_any_source():
    a, b = CancellationToken(), CancellationToken()
    linked = CancellationToken.linked(a, None, b)
    assert not linked.is_cancelled
    b.cancel()
    assert linked.is_cancelled
    assert not a.is_cancelled


def test_wait_returns_when_cancelled_from_another_thread():
    token = CancellationToken()
    threading.Timer(0.05, token.cancel).start()
    assert token.wait(timeout=5) is True


# ── EmergencyStop ──

def test_trigger_then_reset_yields_fresh_token():
    stop = EmergencyStop()
    old = stop.token
    assert stop.trigger("test", "because") is True
    assert stop.is_triggered
    assert old.is_cancelled

    assert stop.reset("test") is True
    assert not stop.is_triggered
    assert not stop.token.is_cancelled
    assert stop.token is not old
    assert old.is_cancelled
    assert stop.generation == 1


def test_trigger_is_idempotent():
    stop = EmergencyStop()
    assert stop.trigger() is True
    assert stop.trigger() is False
    assert stop.trigger_count == 1
    assert stop.reset() is True
    assert stop.reset() is False


def test_repeat_trigger_still_fires_handlers():
    stop = EmergencyStop()
    seen = []
    stop.register_handler(lambda by, reason: seen.append(by))

    assert stop.trigger("a", "first") is True
    token = stop.token
    assert stop.trigger("b", "second") is False

    assert seen == ["a", "b"]
    assert stop.token is token
    assert stop.trigger_count == 1
    assert len(stop.get_history()) == 1
    assert stop.get_status()["triggered_by"] == "a"


def test_disposed_trigger_fires_nothing():
    stop = EmergencyStop()
    seen = []
    stop.register_handler(lambda by, reason: seen.append(by))
    stop.dispose()
    stop.trigger("a")
    assert seen == []


def test_handlers_fire_and_errors_are_contained():
    stop = EmergencyStop()
    seen = []

    def bad(by, reason):
        raise RuntimeError("handler broke")

    stop.register_handler(bad)
    stop.register_handler(lambda by, reason: seen.append((by, reason)))
    stop.trigger("hotkey", "pressed")
    assert seen == [("hotkey", "pressed")]


def test_unregistered_handler_is_not_called():
    stop = EmergencyStop()
    seen = []
    handler = lambda by, reason: seen.append(by)  # noqa: E731
    stop.register_handler(handler)
    assert stop.unregister_handler(handler) is True
    stop.trigger()
    assert seen == []


def test_history_and_status():
    stop = EmergencyStop()
    stop.trigger("a", "first")
    stop.reset()
    stop.trigger("b", "second")

    history = stop.get_history(10)
    assert [(e.triggered_by, e.generation) for e in history] == [("a", 0), ("b", 1)]
    assert stop.get_history(1)[0].reason == "second"

    status = stop.get_status()
    assert status["triggered"] is True
    assert status["trigger_count"] == 2
    assert status["triggered_by"] == "b"


def test_dispose_makes_trigger_and_reset_noops():
    stop = EmergencyStop()
    stop.dispose()
    assert stop.trigger() is False
    assert not stop.is_triggered
    assert stop.reset() is False


def test_trigger_from_many_threads_counts_once():
    stop = EmergencyStop()
    results = []
    threads = [threading.Thread(target=lambda: results.append(stop.trigger("t"))) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1
    assert stop.trigger_count == 1


# ── Hotkey ──

def test_hotkey_activation_triggers_stop():
    stop = EmergencyStop()
    hotkey = EmergencyStopHotkey(stop)
    assert hotkey.active is False
    hotkey._on_activate()
    assert stop.is_triggered
    assert stop.get_history()[0].triggered_by == "hotkey"
    hotkey.stop()
