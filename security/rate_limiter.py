"""Sliding one-second rate limiting for mutating commands."""

import threading
import time
from collections import deque
from typing import Callable, Deque

from loguru import logger


class RateLimiter:
    """
    Sliding-window limiter over the last second.

    A limit of 0 disables limiting. Calls are recorded only while enabled.
    """

    WINDOW_SECONDS = 1.0

    def __init__(self, max_per_second: int = 0, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._timestamps: Deque[float] = deque()
        self._max_per_second = max(0, int(max_per_second))

        logger.info(f"Rate limiter initialized (max {self._max_per_second}/s, 0 = disabled)")

    @property
    def max_per_second(self) -> int:
        """Current ceiling, 0 when disabled."""
        with self._lock:
            return self._max_per_second

    @property
    def enabled(self) -> bool:
        return self.max_per_second > 0

    def set_limit(self, max_per_second: int) -> None:
        """Replace the ceiling and clear history. Negative values clamp to 0."""
        limit = max(0, int(max_per_second))
        with self._lock:
            self._max_per_second = limit
            self._timestamps.clear()
        logger.info(f"Rate limit set to {limit}/s" if limit else "Rate limiting disabled")

    def _prune(self, now: float) -> None:
        cutoff = now - self.WINDOW_SECONDS
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def record_and_check(self) -> bool:
        """
        Record a call and check whether the window is over the limit.

        Returns:
            True if the limit is exceeded, False otherwise (always False when disabled)
        """
        with self._lock:
            if self._max_per_second <= 0:
                return False

            now = self._clock()
            self._prune(now)
            self._timestamps.append(now)
            exceeded = len(self._timestamps) > self._max_per_second

        if exceeded:
            logger.warning(f"Rate limit exceeded ({self._max_per_second}/s)")
        return exceeded

    @property
    def current_rate(self) -> int:
        """Number of calls recorded within the last second."""
        with self._lock:
            self._prune(self._clock())
            return len(self._timestamps)
