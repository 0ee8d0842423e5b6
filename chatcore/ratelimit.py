"""
Token-bucket rate limiter.

One bucket per key (the caller's user id). The limiter is created in the
application lifespan and handed to routes through a dependency; it holds no
module-level state.
"""

import logging
import threading
import time
from typing import Callable

from chatcore.errors import RateLimitedError

logger = logging.getLogger(__name__)


class TokenBucketLimiter:
    def __init__(self, capacity: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            capacity: Maximum burst, and the number of requests allowed per window
            window_seconds: Time to refill an empty bucket
            clock: Monotonic time source
        """
        self.capacity = capacity
        self.refill_rate = capacity / window_seconds
        self.clock = clock
        self._buckets: dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        """Take a token for key. False when the bucket is empty."""
        now = self.clock()
        with self._lock:
            tokens, updated = self._buckets.get(key, (float(self.capacity), now))
            tokens = min(float(self.capacity), tokens + (now - updated) * self.refill_rate)
            if tokens < 1:
                self._buckets[key] = (tokens, now)
                return False
            self._buckets[key] = (tokens - 1, now)
            return True

    def check(self, key: str) -> None:
        if not self.allow(key):
            logger.warning(f"Rate limit exceeded for {key}")
            raise RateLimitedError()

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
