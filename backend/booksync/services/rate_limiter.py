from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

from booksync.services.errors import RateLimitError
from booksync.utils.logger import logger


class RateLimiter:
    """Client-side throttle: at most ``limit`` calls in any rolling minute.

    ``acquire`` sleeps until a slot frees up; if that would take longer than
    ``max_wait_seconds`` it raises ``RateLimitError`` instead.
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        limit: int,
        max_wait_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.limit = limit
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.WINDOW_SECONDS:
            self._calls.popleft()

    def wait_time(self) -> float:
        now = self._clock()
        self._prune(now)
        if len(self._calls) < self.limit:
            return 0.0
        return self.WINDOW_SECONDS - (now - self._calls[0])

    async def acquire(self, operation: Optional[str] = None) -> None:
        async with self._lock:
            wait = self.wait_time()
            if wait > self.max_wait_seconds:
                raise RateLimitError(
                    f"Local rate limit reached; next slot in {wait:.0f}s",
                    code="local_rate_limit",
                )
            if wait > 0:
                logger.info("[rate_limiter] waiting %.1fs before %s", wait, operation or "request")
                await self._sleep(wait)
                self._prune(self._clock())
            self._calls.append(self._clock())
