import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from meter_sync.collection.collection_cycle_manager import CollectionCycleManager
from meter_sync.device.bacnet.batch_size_manager import BatchSizeManager
from meter_sync.device.bacnet.read_coordinator import BacnetReadCoordinator
from meter_sync.device.bacnet.reader_base import DataPointReader
from meter_sync.device.modbus.modbus_reader import ModbusDataPointReader
from meter_sync.model.upload_result import UploadCycleResult
from meter_sync.repository.reading_queue import ReadingQueue
from meter_sync.repository.util.db_manager import SQLiteQueueDBManager
from meter_sync.schema.sync_config_schema import SyncConfig
from meter_sync.sender.client_api import ClientSystemApiClient
from meter_sync.sender.connectivity_monitor import ConnectivityMonitor
from meter_sync.sender.retry_state import BackoffPolicy
from meter_sync.sender.upload_manager import UploadManager
from meter_sync.task.collection_job import CollectionJob
from meter_sync.util.time_util import utc_now

logger = logging.getLogger("SyncAgent")


def to_jsonable(obj: Any) -> Any:
    if is_dataclass(obj) and not isinstance(obj, type):
        return to_jsonable(asdict(obj))
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return obj


class SyncAgent:
    """
    Wires the pipeline together from one SyncConfig:

        CollectionJob -> CollectionCycleManager -> BacnetReadCoordinator -> ReadingQueue
        UploadManager (+ ConnectivityMonitor) -> ClientSystemApiClient

    `reader` and `http_client` can be injected (tests, alternative transports).
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        reader: DataPointReader | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        bacnet_cfg = config.bacnet
        upload_cfg = config.upload

        self.db_manager = SQLiteQueueDBManager(config.storage.db_path, echo=config.storage.echo_sql)
        self.queue = ReadingQueue(self.db_manager)

        self.reader = reader or ModbusDataPointReader()
        self.batch_sizes = BatchSizeManager(
            initial_batch_size=bacnet_cfg.initial_batch_size,
            min_batch_size=bacnet_cfg.min_batch_size,
            reduction_factor=bacnet_cfg.reduction_factor,
            growth_threshold=bacnet_cfg.growth_threshold,
        )
        self.coordinator = BacnetReadCoordinator(self.reader, self.batch_sizes, bacnet_cfg)
        self.collection = CollectionCycleManager(
            self.coordinator,
            self.queue,
            config.enabled_devices,
            read_concurrency=bacnet_cfg.read_concurrency,
            slow_device_timeout_threshold=bacnet_cfg.slow_device_timeout_threshold,
        )
        self.collection_job = CollectionJob(self.collection, bacnet_cfg.collection_interval_sec)

        self.api_client = ClientSystemApiClient(config.client_api, client=http_client)
        self.monitor = ConnectivityMonitor(
            self.api_client.check_health, poll_interval_sec=config.connectivity.connectivity_poll_ms / 1000.0
        )
        self.upload_manager = UploadManager(
            self.queue,
            self.api_client,
            self.monitor,
            upload_batch_size=upload_cfg.upload_batch_size,
            upload_interval_sec=upload_cfg.upload_interval_ms / 1000.0,
            backoff=BackoffPolicy(
                base_sec=upload_cfg.retry_base_ms / 1000.0,
                ceiling_sec=upload_cfg.retry_ceiling_ms / 1000.0,
            ),
        )

        self._started_at: datetime | None = None

    async def start(self) -> None:
        await self.queue.init()
        pending = await self.queue.count_pending()
        logger.info(
            f"[SyncAgent] site={self.config.site_id} devices={len(self.collection.devices)} "
            f"pending readings={pending}"
        )

        self.monitor.start()
        self.upload_manager.start()
        self.collection_job.start()
        self._started_at = utc_now()
        logger.info("[SyncAgent] started")

    async def stop(self) -> None:
        logger.info("[SyncAgent] stopping...")
        steps = [
            ("collection job", self.collection_job.stop),
            ("connectivity monitor", self.monitor.stop),
            ("upload manager", self.upload_manager.stop),
            ("device reader", self.reader.close),
            ("http client", self.api_client.aclose),
            ("queue database", self.db_manager.close_engine),
        ]
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.warning(f"[SyncAgent] stopping {name} failed: {e}")
        self._started_at = None
        logger.info("[SyncAgent] stopped")

    async def trigger_upload(self) -> UploadCycleResult:
        return await self.upload_manager.trigger_upload()

    async def get_sync_stats(self, hours: int = 24) -> dict:
        return await self.queue.get_sync_stats(hours)

    async def get_status(self) -> dict:
        upload_status = await self.upload_manager.get_status()
        collection_status = self.collection.get_status()
        connectivity_status = self.monitor.get_status()

        last_cycle = collection_status["last_cycle"]
        return {
            "site_id": self.config.site_id,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "queue": {"pending": upload_status.queue_size, "db_size_bytes": self.queue.db.get_file_size()},
            "upload": to_jsonable(upload_status),
            "connectivity": connectivity_status,
            "collection": collection_status,
            "last_errors": {
                "upload": upload_status.last_upload_error,
                "connectivity": connectivity_status["last_error"],
                "collection": (
                    f"{last_cycle['errors']} errors in cycle {last_cycle['cycle_id']}"
                    if last_cycle and last_cycle["errors"]
                    else None
                ),
            },
        }
