import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Runs `job` every `period_minutes` on a background asyncio task.

    stop() ends the loop without cancelling a job that is already running.
    """

    def __init__(self, job: Callable[[], Awaitable[Any]]):
        self.job = job
        self.period_minutes: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, period_minutes: float, run_immediately: bool = True) -> None:
        if period_minutes <= 0:
            raise ValueError("period_minutes must be positive")
        if self.running:
            logger.warning("Scheduler already running")
            return
        self.period_minutes = period_minutes
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop(period_minutes * 60, run_immediately))
        logger.info("Scheduler started (every %s minutes)", period_minutes)

    async def _loop(self, period_seconds: float, run_immediately: bool) -> None:
        if not run_immediately:
            if await self._wait(period_seconds):
                return
        while not self._stop.is_set():
            try:
                await self.job()
            except Exception as e:
                logger.error("Scheduled job failed: %s", e)
            if await self._wait(period_seconds):
                return

    async def _wait(self, seconds: float) -> bool:
        """
        Sleep for `seconds` or until stopped. True means stop was requested.
        """
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("Scheduler stopped")
