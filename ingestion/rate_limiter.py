"""
Token-bucket rate limiter shared by every request a connector makes.

The clock is injectable so spacing can be asserted in tests without real
sleeps.
"""

import asyncio
import time
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class Clock:
    """Monotonic time source plus the matching sleep"""

    def monotonic(self) -> float:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class TokenBucket:
    """
    Classic token bucket.

    ``rate`` tokens are added per second up to ``capacity``. A bucket with
    capacity 1 behaves like a fixed minimum interval between requests.
    """

    def __init__(self, rate: float, capacity: float = 1.0, clock: Optional[Clock] = None):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate
        self.capacity = capacity
        self.clock = clock or SystemClock()
        self._tokens = capacity
        self._updated_at: Optional[float] = None
        self._lock = asyncio.Lock()
        self.total_wait = 0.0

    @classmethod
    def from_interval(cls, interval_ms: int, clock: Optional[Clock] = None) -> "TokenBucket":
        """One request per ``interval_ms`` with no burst allowance"""
        interval_s = max(interval_ms, 1) / 1000.0
        return cls(rate=1.0 / interval_s, capacity=1.0, clock=clock)

    def _refill(self) -> None:
        now = self.clock.monotonic()
        if self._updated_at is not None:
            elapsed = max(now - self._updated_at, 0.0)
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated_at = now

    async def acquire(self, tokens: float = 1.0) -> float:
        """Wait until ``tokens`` are available and take them. Returns seconds waited."""
        if tokens > self.capacity:
            raise ValueError("cannot acquire more tokens than the bucket holds")

        waited = 0.0
        async with self._lock:
            self._refill()
            if self._tokens < tokens:
                waited = (tokens - self._tokens) / self.rate
                await self.clock.sleep(waited)
                self._refill()
            # the sleep covered the deficit; float rounding must not leave a sliver owed
            self._tokens = max(self._tokens - tokens, 0.0)

        if waited:
            self.total_wait += waited
            logger.debug(f"Rate limiter waited {waited * 1000:.0f}ms")
        return waited
