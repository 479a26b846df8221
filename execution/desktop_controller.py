"""Desktop controller for mouse and keyboard automation."""

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from core.cancellation import CancellationToken
from core.exceptions import SafeZoneViolationError, UnsupportedOperationError, ValidationError
from dispatch.descriptor import CommandDescriptor, param
from safety.safe_zone import SafeZone


MOUSE_BUTTONS = ("left", "right", "middle")

# Timed moves and drags are split into steps of this length
STEP_SECONDS = 0.05


def glide_path(start: Tuple[int, int], end: Tuple[int, int], duration: float) -> Tuple[List[Tuple[int, int]], float]:
    """Intermediate points from start to end (inclusive of end) and the pause between them."""
    steps = max(1, math.ceil(round(duration / STEP_SECONDS, 6)))
    (x0, y0), (x1, y1) = start, end
    points = [
        (round(x0 + (x1 - x0) * i / steps), round(y0 + (y1 - y0) * i / steps))
        for i in range(1, steps + 1)
    ]
    return points, duration / steps


@dataclass
class Point:
    """2D point coordinates."""
    x: int
    y: int


class DesktopController:
    """
    Controller for desktop automation (mouse and keyboard).

    pyautogui is imported on first use so the harness starts on headless
    machines; tests pass a fake backend instead.
    """

    def __init__(self, safe_zone: SafeZone, backend: Optional[Any] = None):
        self.safe_zone = safe_zone
        self._backend = backend

    @property
    def backend(self) -> Any:
        if self._backend is None:
            import pyautogui

            pyautogui.FAILSAFE = True  # Move mouse to corner to abort
            pyautogui.PAUSE = 0.1  # Brief pause between actions
            self._backend = pyautogui
            logger.info(f"Desktop backend loaded (screen: {tuple(pyautogui.size())})")
        return self._backend

    def _check_ready(self, ct: Optional[CancellationToken], x: Optional[int] = None, y: Optional[int] = None) -> None:
        """Refuse input when cancelled or outside the safe zone."""
        if ct is not None:
            ct.raise_if_cancelled()

        zone = self.safe_zone.current
        if zone is None:
            return

        if zone.region is not None:
            if x is None or y is None:
                x, y = self.backend.position()
            if not zone.region.contains(x, y):
                logger.warning(f"Desktop action blocked: ({x}, {y}) outside safe zone {zone.region}")
                raise SafeZoneViolationError(f"Point ({x}, {y}) is outside the safe zone region {zone.region.to_dict()}.")

        get_title = getattr(self.backend, "getActiveWindowTitle", None)
        if callable(get_title):
            try:
                title = get_title()
            except Exception as e:
                logger.debug(f"Active window title unavailable: {e}")
                return
            if title is not None and zone.window.casefold() not in str(title).casefold():
                logger.warning(f"Desktop action blocked: active window '{title}' outside safe zone")
                raise SafeZoneViolationError(
                    f"Active window '{title}' does not match safe zone window '{zone.window}'."
                )

    @staticmethod
    async def _in_worker(work: Callable[[], None]) -> None:
        """
        Run blocking backend calls on a worker thread.

        The event loop stays free to deliver an emergency stop; ``work`` checks
        the token between steps so the thread stops soon after.
        """
        await asyncio.get_running_loop().run_in_executor(None, work)

    def _glide(self, x: int, y: int, duration: float, token: CancellationToken) -> None:
        if duration <= 0:
            self.backend.moveTo(x, y)
            return
        points, pause = glide_path(tuple(self.backend.position()), (x, y), duration)
        for px, py in points:
            token.raise_if_cancelled()
            self.backend.moveTo(px, py, _pause=False)
            token.wait(pause)

    # ── Mouse ──

    async def get_mouse_position(self, ct: Optional[CancellationToken] = None) -> Dict[str, int]:
        x, y = self.backend.position()
        return {"x": int(x), "y": int(y)}

    async def move_mouse(
        self,
        x: int,
        y: int,
        duration: float = 0.0,
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """
        Move mouse to coordinates.

        Args:
            x: X coordinate
            y: Y coordinate
            duration: Movement duration in seconds
        """
        if duration < 0:
            raise ValidationError("duration cannot be negative", "duration")
        self._check_ready(ct, x, y)
        token = ct or CancellationToken()

        await self._in_worker(lambda: self._glide(x, y, duration, token))
        logger.info(f"Mouse moved to ({x}, {y})")
        return {"x": x, "y": y}

    async def click(
        self,
        x: Optional[int] = None,
        y: Optional[int] = None,
        button: str = "left",
        clicks: int = 1,
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """Click at coordinates, or at the current position when omitted."""
        if (x is None) != (y is None):
            raise ValidationError("x and y must be given together", "x" if x is None else "y")
        if clicks < 1:
            raise ValidationError("clicks must be at least 1", "clicks")
        self._check_ready(ct, x, y)

        if x is not None:
            self.backend.moveTo(x, y)
        self.backend.click(button=button, clicks=clicks)

        pos = Point(*self.backend.position())
        logger.info(f"Mouse {button} click x{clicks} at ({pos.x}, {pos.y})")
        return {"x": pos.x, "y": pos.y, "button": button, "clicks": clicks}

    async def drag(
        self,
        start_x: int,
        start_y: int,
        end_x: int,
        end_y: int,
        duration: float = 0.5,
        button: str = "left",
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        if duration < 0:
            raise ValidationError("duration cannot be negative", "duration")
        self._check_ready(ct, start_x, start_y)
        self._check_ready(ct, end_x, end_y)
        token = ct or CancellationToken()

        def work():
            self.backend.moveTo(start_x, start_y)
            self.backend.mouseDown(button=button)
            try:
                self._glide(end_x, end_y, duration, token)
            finally:
                # Never leave the button held, even when stopped mid-drag
                self.backend.mouseUp(button=button)

        await self._in_worker(work)
        logger.info(f"Mouse dragged ({start_x}, {start_y}) -> ({end_x}, {end_y})")
        return {"start": {"x": start_x, "y": start_y}, "end": {"x": end_x, "y": end_y}}

    async def scroll(
        self,
        amount: int,
        x: Optional[int] = None,
        y: Optional[int] = None,
        ct: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """Scroll vertically; positive amounts scroll up."""
        if (x is None) != (y is None):
            raise ValidationError("x and y must be given together", "x" if x is None else "y")
        self._check_ready(ct, x, y)

        if x is not None:
            self.backend.moveTo(x, y)
        self.backend.scroll(amount)
        logger.info(f"Scrolled {amount}")
        return {"amount": amount}

    async def scroll_horizontal(self, amount: int, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        hscroll = getattr(self.backend, "hscroll", None)
        if not callable(hscroll):
            raise UnsupportedOperationError("Horizontal scrolling is not supported by this desktop backend.")
        self._check_ready(ct)

        try:
            hscroll(amount)
        except NotImplementedError:
            raise UnsupportedOperationError("Horizontal scrolling is not supported on this platform.")
        logger.info(f"Scrolled horizontally {amount}")
        return {"amount": amount}

    # ── Keyboard ──

    async def type_text(self, text: str, interval: float = 0.0, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        if interval < 0:
            raise ValidationError("interval cannot be negative", "interval")
        self._check_ready(ct)
        token = ct or CancellationToken()
        typed = 0

        def work():
            nonlocal typed
            for char in text:
                token.raise_if_cancelled()
                self.backend.write(char, _pause=False)
                typed += 1
                if interval:
                    token.wait(interval)

        try:
            await self._in_worker(work)
        finally:
            if typed < len(text):
                logger.warning(f"Typing interrupted after {typed} of {len(text)} characters")
        logger.info(f"Typed {len(text)} characters")
        return {"characters": len(text)}

    async def press_key(self, key: str, presses: int = 1, ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        if presses < 1:
            raise ValidationError("presses must be at least 1", "presses")
        self._check_key(key, "key")
        self._check_ready(ct)
        token = ct or CancellationToken()

        def work():
            for _ in range(presses):
                token.raise_if_cancelled()
                self.backend.press(key, _pause=False)

        await self._in_worker(work)
        logger.info(f"Pressed {key} x{presses}")
        return {"key": key, "presses": presses}

    async def hotkey(self, keys: List[str], ct: Optional[CancellationToken] = None) -> Dict[str, Any]:
        if not keys:
            raise ValidationError("keys cannot be empty", "keys")
        for key in keys:
            self._check_key(key, "keys")
        self._check_ready(ct)

        self.backend.hotkey(*keys)
        logger.info(f"Pressed hotkey {'+'.join(keys)}")
        return {"keys": keys}

    def _check_key(self, key: str, field: str) -> None:
        valid = getattr(self.backend, "KEYBOARD_KEYS", None)
        if valid is not None and key.lower() not in valid:
            raise ValidationError(f"Unknown key: '{key}'", field)

    # ── Screen ──

    async def get_screen_size(self, ct: Optional[CancellationToken] = None) -> Dict[str, int]:
        width, height = self.backend.size()
        return {"width": int(width), "height": int(height)}


def desktop_commands(desktop: DesktopController) -> List[CommandDescriptor]:
    """Command table for the mouse, keyboard and screen categories."""
    button = param("button", "string", "Mouse button.", default="left", choices=MOUSE_BUTTONS)

    return [
        CommandDescriptor("mouse.position", "Current pointer position.", desktop.get_mouse_position),
        CommandDescriptor(
            "mouse.move", "Move the pointer.", desktop.move_mouse, mutating=True,
            parameters=(
                param("x", "integer", "Target X.", required=True),
                param("y", "integer", "Target Y.", required=True),
                param("duration", "number", "Movement duration in seconds.", default=0.0),
            ),
        ),
        CommandDescriptor(
            "mouse.click", "Click at a point or at the current position.", desktop.click, mutating=True,
            parameters=(
                param("x", "integer", "Target X (with y)."),
                param("y", "integer", "Target Y (with x)."),
                button,
                param("clicks", "integer", "Number of clicks.", default=1),
            ),
        ),
        CommandDescriptor(
            "mouse.drag", "Drag from one point to another.", desktop.drag, mutating=True,
            parameters=(
                param("start_x", "integer", "Start X.", required=True),
                param("start_y", "integer", "Start Y.", required=True),
                param("end_x", "integer", "End X.", required=True),
                param("end_y", "integer", "End Y.", required=True),
                param("duration", "number", "Drag duration in seconds.", default=0.5),
                button,
            ),
        ),
        CommandDescriptor(
            "mouse.scroll", "Scroll vertically (positive is up).", desktop.scroll, mutating=True,
            parameters=(
                param("amount", "integer", "Scroll clicks.", required=True),
                param("x", "integer", "Pointer X before scrolling (with y)."),
                param("y", "integer", "Pointer Y before scrolling (with x)."),
            ),
        ),
        CommandDescriptor(
            "mouse.scroll_horizontal", "Scroll horizontally (positive is right).", desktop.scroll_horizontal,
            mutating=True,
            parameters=(param("amount", "integer", "Scroll clicks.", required=True),),
        ),
        CommandDescriptor(
            "keyboard.type", "Type text.", desktop.type_text, mutating=True,
            parameters=(
                param("text", "string", "Text to type.", required=True),
                param("interval", "number", "Seconds between keystrokes.", default=0.0),
            ),
        ),
        CommandDescriptor(
            "keyboard.press", "Press a key.", desktop.press_key, mutating=True,
            parameters=(
                param("key", "string", "Key name (e.g. enter, tab, f5).", required=True),
                param("presses", "integer", "Number of presses.", default=1),
            ),
        ),
        CommandDescriptor(
            "keyboard.hotkey", "Press a key combination.", desktop.hotkey, mutating=True,
            parameters=(param("keys", "string[]", "Keys pressed together, in order.", required=True),),
        ),
        CommandDescriptor("screen.size", "Primary screen size.", desktop.get_screen_size),
    ]
