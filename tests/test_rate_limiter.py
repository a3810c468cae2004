from __future__ import annotations

import asyncio

from advisor.rate_limiter import SlidingWindowRateLimiter


class FakeTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def test_starts_beyond_limit_wait_for_window():
    fake = FakeTime()
    limiter = SlidingWindowRateLimiter(max_starts=2, window_ms=1000, clock=fake.clock, sleep=fake.sleep)

    async def scenario():
        return [await limiter.acquire() for _ in range(3)]

    waits = asyncio.run(scenario())
    assert waits == [0.0, 0.0, 1.0]
    assert fake.sleeps == [1.0]
    assert limiter.in_window() == 1


def test_no_wait_once_window_has_passed():
    fake = FakeTime()
    limiter = SlidingWindowRateLimiter(max_starts=1, window_ms=500, clock=fake.clock, sleep=fake.sleep)

    async def scenario():
        await limiter.acquire()
        fake.now = 0.6
        return await limiter.acquire()

    assert asyncio.run(scenario()) == 0.0
    assert fake.sleeps == []


def test_waiters_are_served_in_arrival_order():
    fake = FakeTime()
    limiter = SlidingWindowRateLimiter(max_starts=1, window_ms=100, clock=fake.clock, sleep=fake.sleep)
    order: list[int] = []

    async def worker(i: int) -> None:
        await limiter.acquire()
        order.append(i)

    async def scenario():
        await asyncio.gather(*(worker(i) for i in range(4)))

    asyncio.run(scenario())
    assert order == [0, 1, 2, 3]
    assert fake.now >= 0.3
