"""
Per-source request pacing.

Each adapter owns one RateLimiter sized to its upstream's requests-per-second
ceiling and awaits wait_for_slot() before every fetch. Independent of the
retry logic in ResilientFetcher: the limiter paces first attempts, the fetcher
paces retries.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Minimum-interval gate: successive slots are at least 1/requests_per_second apart.

    Usage:
        limiter = RateLimiter(2)          # 2 req/s → 500ms spacing
        await limiter.wait_for_slot()
        response = await fetcher.execute(url)
    """

    def __init__(
        self,
        requests_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second
        self._clock = clock
        self._sleep = sleep
        self._last_slot_at: float | None = None  # None until the first slot is handed out
        self._lock = asyncio.Lock()

    async def wait_for_slot(self) -> None:
        """Suspend until the next request may be issued, then reserve that slot."""
        async with self._lock:
            if self._last_slot_at is not None:
                elapsed = self._clock() - self._last_slot_at
                if elapsed < self.min_interval:
                    wait = self.min_interval - elapsed
                    logger.debug("RateLimiter waiting %.3fs for next slot", wait)
                    await self._sleep(wait)
            self._last_slot_at = self._clock()
