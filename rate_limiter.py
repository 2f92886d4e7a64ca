"""
Sliding-window rate limiter for outbound API calls.
"""

import threading
import time
from typing import Callable

from log_utils import create_logger

logger = create_logger("rate-limiter")

# (max requests, window seconds)
HUBSPOT_RATE_LIMIT = (100, 10.0)
LEMLIST_RATE_LIMIT = (100, 60.0)

# Small buffer added to computed waits so the oldest slot has expired on wake-up
WAIT_BUFFER_SECONDS = 0.01


class RateLimiter:
    """Allows at most ``max_requests`` calls in any ``window_seconds`` window."""

    def __init__(self, name: str, max_requests: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if max_requests < 1:
            raise ValueError(f"max_requests must be at least 1, got {max_requests}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: list[float] = []
        self._lock = threading.Lock()

    def _cleanup(self, now: float) -> None:
        self._timestamps = [t for t in self._timestamps if now - t < self.window_seconds]

    def _wait_time(self, now: float) -> float:
        self._cleanup(now)
        if len(self._timestamps) < self.max_requests:
            return 0.0
        # When the oldest timestamp leaves the window
        return max(0.0, self.window_seconds - (now - self._timestamps[0]))

    def get_wait_time(self) -> float:
        """Seconds until the next slot frees up, 0 if one is available now."""
        with self._lock:
            return self._wait_time(self._clock())

    def get_available_slots(self) -> int:
        with self._lock:
            self._cleanup(self._clock())
            return self.max_requests - len(self._timestamps)

    def acquire(self) -> None:
        """Take a slot, sleeping until one is free."""
        while True:
            with self._lock:
                now = self._clock()
                wait = self._wait_time(now)
                if wait <= 0:
                    self._timestamps.append(now)
                    return
            logger.debug(
                "Rate limit reached, waiting for slot",
                limiter=self.name,
                wait_seconds=round(wait, 3),
            )
            self._sleep(wait + WAIT_BUFFER_SECONDS)

    def try_acquire(self) -> bool:
        """Take a slot if one is free right now. Never waits."""
        with self._lock:
            now = self._clock()
            self._cleanup(now)
            if len(self._timestamps) < self.max_requests:
                self._timestamps.append(now)
                return True
            return False

    def get_status(self) -> dict:
        with self._lock:
            now = self._clock()
            wait = self._wait_time(now)
            return {
                "name": self.name,
                "available_slots": self.max_requests - len(self._timestamps),
                "max_slots": self.max_requests,
                "window_seconds": self.window_seconds,
                "wait_seconds": wait,
            }

    def reset(self) -> None:
        with self._lock:
            self._timestamps = []


def create_rate_limiter(name: str, max_requests: int, window_seconds: float) -> RateLimiter:
    """Create a rate limiter instance."""
    return RateLimiter(name, max_requests, window_seconds)
