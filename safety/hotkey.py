"""Global keyboard hotkey that triggers the emergency stop."""

from typing import Any, Optional

from loguru import logger

from safety.emergency_stop import EmergencyStop


class EmergencyStopHotkey:
    """
    Listens for a global key combination and triggers the emergency stop.

    The listener runs on pynput's hook thread. When pynput or a display is
    unavailable the hotkey stays inactive and the harness keeps running.
    """

    def __init__(self, emergency_stop: EmergencyStop, combination: str = "<ctrl>+<shift>+<esc>"):
        self._emergency_stop = emergency_stop
        self.combination = combination
        self._listener: Optional[Any] = None

    @property
    def active(self) -> bool:
        return self._listener is not None

    def _on_activate(self) -> None:
        try:
            self._emergency_stop.trigger("hotkey", f"Hotkey {self.combination} pressed")
        except Exception as e:
            logger.error(f"Hotkey trigger failed: {e}")

    def start(self) -> bool:
        """Start listening. Returns False when the hook cannot be installed."""
        if self._listener is not None:
            return True

        try:
            from pynput import keyboard
        except Exception as e:
            logger.warning(f"Emergency hotkey unavailable (pynput could not load: {e})")
            return False

        try:
            listener = keyboard.GlobalHotKeys({self.combination: self._on_activate})
            listener.daemon = True
            listener.start()
        except Exception as e:
            logger.warning(f"Emergency hotkey unavailable: {e}")
            return False

        self._listener = listener
        logger.info(f"Emergency hotkey armed: {self.combination}")
        return True

    def stop(self) -> None:
        if self._listener is None:
            return
        try:
            self._listener.stop()
        except Exception as e:
            logger.error(f"Failed to stop hotkey listener: {e}")
        self._listener = None
        logger.info("Emergency hotkey disarmed")
