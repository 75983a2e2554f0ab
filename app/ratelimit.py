"""Token bucket throttling for outbound API calls."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allow short bursts up to ``capacity`` while holding a sustained rate.

    One instance is shared by every caller of an upstream API, so the limit
    applies process-wide rather than per session.
    """

    def __init__(
        self,
        name: str,
        capacity: float,
        refill_rate: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity < 1:
            raise ValueError("Rate limiter capacity must allow at least one call")
        if refill_rate <= 0:
            raise ValueError("Rate limiter refill rate must be positive")
        self.name = name
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._updated = now

    async def acquire(self) -> float:
        """Take one token, waiting for it if needed. Returns seconds waited."""

        async with self._lock:
            self._refill()
            waited = 0.0
            if self._tokens < 1:
                waited = (1 - self._tokens) / self.refill_rate
                logger.debug("%s rate limit reached, waiting %.2fs", self.name, waited)
                await self._sleep(waited)
                self._refill()
            self._tokens = max(0.0, self._tokens - 1)
            return waited
