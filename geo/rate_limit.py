from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable


class RateLimiter:
    """Sliding-window limiter shared by concurrent coroutines.

    At most `limit` acquisitions are granted within any `period_seconds` span.
    A caller over capacity sleeps until the oldest grant leaves the window; the
    lock is released while it sleeps.
    """

    def __init__(
        self,
        limit: int,
        period_seconds: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.period_seconds = period_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._grants: deque[float] = deque()

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                now = self._clock()
                while self._grants and now - self._grants[0] >= self.period_seconds:
                    self._grants.popleft()
                if len(self._grants) < self.limit:
                    self._grants.append(now)
                    return
                wait_seconds = self.period_seconds - (now - self._grants[0])
            await self._sleep(max(wait_seconds, 0.0))
