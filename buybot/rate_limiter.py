# buybot/rate_limiter.py
import asyncio
import logging
import time
from typing import Optional

from buybot.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket holding up to ``rate`` tokens, refilled at ``rate`` per ``per`` seconds.

    acquire() takes a token immediately when one is available. Otherwise a
    blocking bucket queues the caller (FIFO) until the refill, and a
    non-blocking one raises RateLimitExceeded. ``max_wait`` bounds how long a
    blocking caller may queue before it gets RateLimitExceeded too.
    """

    def __init__(self, rate: int, per: float = 1.0, *, blocking: bool = True,
                 max_wait: Optional[float] = None, name: str = "limiter",
                 clock=time.monotonic, sleep=asyncio.sleep):
        if rate <= 0 or per <= 0:
            raise ValueError("rate and per must be positive")
        self.rate = rate
        self.per = per
        self.blocking = blocking
        self.max_wait = max_wait
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(rate)
        self._updated = clock()
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.rate), self._tokens + elapsed * self.rate / self.per)
        self._updated = now

    def try_acquire(self) -> bool:
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self) -> None:
        async with self._lock:
            waited = 0.0
            while True:
                if self.try_acquire():
                    return
                if not self.blocking:
                    raise RateLimitExceeded(f"{self.name}: {self.rate} per {self.per}s exceeded")
                delay = (1 - self._tokens) * self.per / self.rate
                if self.max_wait is not None and waited + delay > self.max_wait:
                    raise RateLimitExceeded(f"{self.name}: would wait more than {self.max_wait}s for a token")
                await self._sleep(delay)
                waited += delay
