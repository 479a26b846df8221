"""Optional restriction of input injection to one window and screen region."""

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger


@dataclass(frozen=True)
class Region:
    """Screen region."""
    x: int
    y: int
    width: int
    height: int

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Region size must be positive (got {self.width}x{self.height})")

    def contains(self, x: int, y: int) -> bool:
        return self.x <= x < self.x + self.width and self.y <= y < self.y + self.height

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class SafeZoneConfig:
    window: str
    region: Optional[Region] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window": self.window,
            "region": self.region.to_dict() if self.region else None,
        }


class SafeZone:
    """Thread-safe holder for the current safe zone. None means unrestricted."""

    def __init__(self):
        self._lock = threading.Lock()
        self._current: Optional[SafeZoneConfig] = None

    @property
    def current(self) -> Optional[SafeZoneConfig]:
        with self._lock:
            return self._current

    def set(self, window: str, region: Optional[Region] = None) -> SafeZoneConfig:
        config = SafeZoneConfig(window=window, region=region)
        with self._lock:
            self._current = config
        logger.info(f"Safe zone set: window='{window}' region={region}")
        return config

    def clear(self) -> None:
        with self._lock:
            self._current = None
        logger.info("Safe zone cleared")
