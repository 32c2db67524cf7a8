import asyncio

import pytest

from buybot.errors import RateLimitExceeded
from buybot.rate_limiter import TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_bucket(clock, **kwargs) -> TokenBucket:
    return TokenBucket(5, 1.0, clock=clock, sleep=clock.sleep, **kwargs)


async def test_sixth_call_in_a_second_is_rejected_when_not_blocking():
    clock = FakeClock()
    bucket = make_bucket(clock, blocking=False)
    for _ in range(5):
        await bucket.acquire()
    with pytest.raises(RateLimitExceeded):
        await bucket.acquire()


async def test_token_comes_back_after_refill():
    clock = FakeClock()
    bucket = make_bucket(clock, blocking=False)
    for _ in range(5):
        await bucket.acquire()
    clock.now += 0.2
    await bucket.acquire()
    assert bucket.tokens == pytest.approx(0.0)


async def test_blocking_caller_waits_for_the_refill():
    clock = FakeClock()
    bucket = make_bucket(clock)
    for _ in range(6):
        await bucket.acquire()
    assert clock.now == pytest.approx(0.2)
    assert len(clock.sleeps) == 1


async def test_blocking_caller_gives_up_past_max_wait():
    clock = FakeClock()
    bucket = make_bucket(clock, max_wait=0.1)
    for _ in range(5):
        await bucket.acquire()
    with pytest.raises(RateLimitExceeded):
        await bucket.acquire()
    assert clock.sleeps == []


async def test_queued_callers_are_served_in_order():
    clock = FakeClock()
    bucket = make_bucket(clock)
    for _ in range(5):
        bucket.try_acquire()
    served = []

    async def worker(n):
        await bucket.acquire()
        served.append(n)

    await asyncio.gather(*(worker(n) for n in range(3)))
    assert served == [0, 1, 2]
    assert clock.now == pytest.approx(0.6)


def test_tokens_never_exceed_capacity():
    clock = FakeClock()
    bucket = make_bucket(clock)
    clock.now += 100
    assert bucket.tokens == 5


def test_rate_must_be_positive():
    with pytest.raises(ValueError):
        TokenBucket(0)
