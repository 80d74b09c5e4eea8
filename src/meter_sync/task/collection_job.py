import logging

from meter_sync.collection.collection_cycle_manager import CollectionCycleManager
from meter_sync.task.async_job_base import AsyncRecurringJob

logger = logging.getLogger("CollectionJob")


class CollectionJob(AsyncRecurringJob):
    """Runs a collection cycle every `collection_interval_sec`."""

    def __init__(self, manager: CollectionCycleManager, interval_seconds: float):
        super().__init__(interval_seconds=interval_seconds, run_immediately=True)
        self.manager = manager

    async def run_once(self) -> None:
        result = await self.manager.execute_cycle()
        if result is not None and not result.success:
            logger.debug(f"[CollectionJob] cycle {result.cycle_id} finished with {len(result.errors)} errors")
