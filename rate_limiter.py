"""
Home Bridge - Rate Limiter
Non-blocking leaky bucket shared by every caller of one language-model backend.
"""

import threading
import time
from typing import Callable


class LeakyBucketRateLimiter:
    """Leaky bucket that drains `capacity` units every `interval_seconds`.

    `try_acquire` never blocks or queues: it either admits the request and
    raises the level by one, or refuses it.
    """

    def __init__(self, capacity: int, interval_seconds: float, clock: Callable[[], float] = time.monotonic):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.capacity = capacity
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._level = 0.0
        self._last_check = clock()
        self._lock = threading.Lock()

    def _leak(self):
        now = self._clock()
        elapsed = max(0.0, now - self._last_check)
        self._last_check = now
        leaked = elapsed * self.capacity / self.interval_seconds
        self._level = max(0.0, self._level - leaked)

    def try_acquire(self) -> bool:
        """Admit one request if the bucket has room."""
        with self._lock:
            self._leak()
            if self._level < self.capacity:
                self._level += 1
                return True
            return False

    @property
    def level(self) -> float:
        """Current fill level after leaking."""
        with self._lock:
            self._leak()
            return self._level
