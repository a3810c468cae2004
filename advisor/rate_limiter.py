from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable


class SlidingWindowRateLimiter:
    """At most ``max_starts`` acquisitions per ``window_ms``; waiters are served FIFO.

    Waiters queue on an ``asyncio.Lock`` (FIFO) and the holder sleeps until the
    oldest start leaves the window.
    """

    def __init__(
        self,
        *,
        max_starts: int,
        window_ms: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] = asyncio.sleep,
    ) -> None:
        self.max_starts = max(1, int(max_starts))
        self.window_s = max(1, int(window_ms)) / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._starts: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window_s:
            self._starts.popleft()

    def in_window(self) -> int:
        self._evict(self._clock())
        return len(self._starts)

    async def acquire(self) -> float:
        """Block until a slot is free; returns the seconds spent waiting."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._starts) < self.max_starts:
                    self._starts.append(now)
                    return waited
                delay = max(0.0, self._starts[0] + self.window_s - now)
                waited += delay
                await self._sleep(delay)
