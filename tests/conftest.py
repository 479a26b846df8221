"""Shared fixtures: isolated control-plane components and fake backends.

Run with: python -m pytest tests -v
"""

import os
import sys

import pytest

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.settings import Settings


class FakeDesktop:
    """Records pyautogui-style calls without touching the real pointer."""

    def __init__(self, width=1920, height=1080, title=None, horizontal=True):
        self.calls = []
        self.pos = (0, 0)
        self.screen = (width, height)
        self.title = title
        if horizontal:
            self.hscroll = self._hscroll

    def size(self):
        return self.screen

    def position(self):
        return self.pos

    def moveTo(self, x, y, duration=0.0, _pause=True):
        self.calls.append(("moveTo", x, y))
        self.pos = (x, y)

    def mouseDown(self, button="left"):
        self.calls.append(("mouseDown", button))

    def mouseUp(self, button="left"):
        self.calls.append(("mouseUp", button))

    def click(self, button="left", clicks=1):
        self.calls.append(("click", button, clicks))

    def scroll(self, amount):
        self.calls.append(("scroll", amount))

    def _hscroll(self, amount):
        self.calls.append(("hscroll", amount))

    def write(self, text, interval=0.0, _pause=True):
        self.calls.append(("write", text))

    def press(self, key, presses=1, _pause=True):
        self.calls.append(("press", key, presses))

    def hotkey(self, *keys):
        self.calls.append(("hotkey",) + keys)

    def getActiveWindowTitle(self):
        return self.title


class FakeShell:
    """Shell double recording what reached it."""

    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result
        self.error = error

    async def run(self, command, **kwargs):
        self.calls.append(("run", command))
        if self.error is not None:
            raise self.error
        return self.result

    async def run_program(self, program, arguments="", **kwargs):
        self.calls.append(("run_program", program, arguments))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        log_dir=tmp_path / "logs",
        confirmation_dir=tmp_path / "confirmations",
        monitor_output_dir=tmp_path / "monitors",
        enable_emergency_hotkey=False,
        rate_limit_per_second=0,
        shell_timeout_seconds=30,
    )


@pytest.fixture
def fake_desktop():
    return FakeDesktop()


@pytest.fixture
def harness(test_settings, fake_desktop):
    from main import build_harness

    h = build_harness(test_settings, desktop_backend=fake_desktop)
    yield h
    h.close()


def assert_error(envelope, code):
    assert envelope["ok"] is False, envelope
    assert envelope["error"]["code"] == code, envelope
    assert "data" not in envelope


