import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window limiter: at most `max_requests` acquisitions in any
    rolling `interval` seconds.

    Callers over the limit are suspended, never rejected. There is no bound
    on how many callers may be waiting.
    """

    def __init__(
        self,
        max_requests: int,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "upstream",
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.max_requests = max_requests
        self.interval = interval
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.interval:
            self._timestamps.popleft()

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._timestamps)

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_requests:
                    break
                wait = self.interval - (now - self._timestamps[0])
                if wait > 0:
                    logger.info("%s rate limit reached, waiting %.0fms", self.name, wait * 1000)
                    await self._sleep(wait)
            self._timestamps.append(self._clock())
