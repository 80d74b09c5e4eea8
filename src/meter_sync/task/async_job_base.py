import asyncio
import logging
import time
from abc import ABC, abstractmethod

from meter_sync.util.time_util import next_tick_monotonic

logger = logging.getLogger(__name__)


class AsyncRecurringJob(ABC):
    """
    Base class for recurring asynchronous background jobs.

    Subclasses implement `run_once()`. Runs are scheduled on a fixed grid
    (start + k * interval) so a slow run does not shift later ones; a run
    that overshoots one or more ticks skips them.
    """

    def __init__(self, interval_seconds: float, run_immediately: bool = True):
        self._interval = float(interval_seconds)
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self._stopping: bool = False

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @abstractmethod
    async def run_once(self) -> None: ...

    async def _loop(self) -> None:
        name = self.__class__.__name__
        logger.info(f"[{name}] loop started (interval={self._interval}s)")

        anchor = time.monotonic()
        if not self._run_immediately:
            await asyncio.sleep(max(0.0, next_tick_monotonic(anchor, self._interval) - time.monotonic()))

        while not self._stopping:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                logger.info(f"[{name}] task cancelled")
                break
            except Exception as e:
                logger.exception(f"[{name}] exception in run_once: {e}")

            if self._stopping:
                break
            try:
                await asyncio.sleep(max(0.0, next_tick_monotonic(anchor, self._interval) - time.monotonic()))
            except asyncio.CancelledError:
                break

        logger.info(f"[{name}] loop stopped")

    def start(self) -> asyncio.Task:
        if self._task and not self._task.done():
            logger.warning(f"[{self.__class__.__name__}] already running")
            return self._task

        self._stopping = False
        self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        """Cancel the background task and wait for it. Safe to call when not running."""
        self._stopping = True

        if not self._task:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
