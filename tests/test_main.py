"""Tests for the console front end and settings-driven wiring."""

import asyncio
import io
import json
import sys

from config.settings import Settings
from main import build_harness, build_policy, handle_line, serve_console
from conftest import assert_error


def reply(harness, line):
    result = asyncio.run(handle_line(harness.dispatcher, line))
    return json.loads(result) if result is not None else None


def test_blank_line_produces_nothing(harness):
    assert reply(harness, "   ") is None


def test_help_lines(harness):
    assert "categories" in reply(harness, "help")["data"]["content"]
    assert "[get] mouse.position" in reply(harness, "help mouse")["data"]["content"]
    assert "mouse.move [do]" in reply(harness, '{"verb": "help", "command": "mouse.move"}')["data"]["content"]


def test_json_requests(harness):
    moved = reply(harness, '{"verb": "do", "command": "mouse.move", "params": {"x": 5, "y": 6}}')
    assert moved["data"] == {"x": 5, "y": 6}

    position = reply(harness, '{"command": "mouse.position"}')
    assert position["data"] == {"x": 5, "y": 6}

    as_string = reply(harness, '{"verb": "do", "command": "mouse.move", "params": "{\\"x\\": 1, \\"y\\": 2}"}')
    assert as_string["ok"] is True


def test_malformed_requests(harness):
    assert_error(reply(harness, "move the mouse"), "invalid_request")
    assert_error(reply(harness, "[1, 2]"), "invalid_request")
    assert_error(reply(harness, '{"verb": "do"}'), "invalid_request")
    assert_error(reply(harness, '{"verb": "run", "command": "mouse.move"}'), "invalid_request")
    assert_error(reply(harness, '{"command": "mouse.move", "params": [1]}'), "invalid_parameter")
    assert_error(reply(harness, '{"verb": "get", "command": "mouse.move"}'), "wrong_verb")


def test_non_string_command_is_rejected(harness):
    assert_error(reply(harness, '{"verb": "help", "command": 5}'), "invalid_request")
    assert_error(reply(harness, '{"verb": "do", "command": ["mouse.move"]}'), "invalid_request")
    assert_error(reply(harness, '{"command": {"name": "mouse.position"}}'), "invalid_request")
    assert reply(harness, '{"verb": "help"}')["ok"] is True


def test_console_stop_reaches_running_command(harness):
    slow = json.dumps({
        "verb": "do",
        "command": "shell.run_program",
        "params": {"program": sys.executable, "arguments": "-c \"import time; time.sleep(30)\""},
    })
    stop = json.dumps({"verb": "do", "command": "safety.emergency_stop", "params": {"reason": "console"}})
    reader = io.StringIO(slow + "\n\n" + stop + "\n")
    writer = io.StringIO()

    asyncio.run(asyncio.wait_for(serve_console(harness.dispatcher, reader, writer), timeout=20))

    replies = [json.loads(line) for line in writer.getvalue().splitlines()]
    assert len(replies) == 2
    stopped, cancelled = replies
    assert stopped["data"]["triggered"] is True
    assert_error(cancelled, "cancelled")


def test_settings_extend_policy(tmp_path):
    config = Settings(
        log_dir=tmp_path / "logs",
        confirmation_dir=tmp_path / "c",
        monitor_output_dir=tmp_path / "m",
        enable_emergency_hotkey=False,
        use_default_policy=False,
        blocked_programs=["curl"],
        blocked_patterns=[r"--force\b"],
    )
    policy = build_policy(config)
    assert policy.blocked_programs == ["curl"]
    assert policy.check_command("curl http://example.com") is not None
    assert policy.check_command("git push --force") is not None
    assert policy.check_command("shutdown /s") is None


def test_settings_rate_limit_applies(test_settings, fake_desktop):
    test_settings.rate_limit_per_second = 1
    h = build_harness(test_settings, desktop_backend=fake_desktop)
    try:
        assert json.loads(asyncio.run(h.dispatcher.do("mouse.move", {"x": 1, "y": 1})))["ok"] is True
        assert_error(json.loads(asyncio.run(h.dispatcher.do("mouse.move", {"x": 2, "y": 2}))), "rate_limited")
    finally:
        h.close()
