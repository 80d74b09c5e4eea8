import asyncio
import logging
import math
import uuid
from dataclasses import asdict

from meter_sync.device.bacnet.read_coordinator import BacnetReadCoordinator
from meter_sync.exception import QueueStoreError
from meter_sync.model.collection_result import (
    CollectionCycleResult,
    CollectionError,
    CollectionResult,
    OfflineDeviceStatus,
    TimeoutMetrics,
)
from meter_sync.model.enum.collection_enum import CollectionOperation
from meter_sync.model.reading import PendingReading
from meter_sync.repository.reading_queue import ReadingQueue
from meter_sync.schema.sync_config_schema import MeterDeviceSchema
from meter_sync.util.time_util import utc_now

logger = logging.getLogger("CollectionCycleManager")


class CollectionCycleManager:
    """
    Runs one collection pass over the configured meters and feeds the queue.

    Devices are read concurrently (bounded by `read_concurrency`). A failing
    device only adds an error to the cycle result; the other devices still
    run. Cycles never overlap: a call made while a cycle runs returns None.
    """

    def __init__(
        self,
        coordinator: BacnetReadCoordinator,
        queue: ReadingQueue,
        devices: list[MeterDeviceSchema],
        *,
        read_concurrency: int = 4,
        slow_device_timeout_threshold: int = 3,
    ):
        self.coordinator = coordinator
        self.queue = queue
        self.devices = list(devices)
        self.read_concurrency = max(1, int(read_concurrency))
        self.slow_device_timeout_threshold = int(slow_device_timeout_threshold)

        self._cycle_lock = asyncio.Lock()
        self._timeout_metrics = TimeoutMetrics()
        self._offline_devices: dict[str, OfflineDeviceStatus] = {}
        self._slow_devices: set[str] = set()

        self._cycles_executed = 0
        self._total_readings_collected = 0
        self._total_errors = 0
        self._last_cycle: CollectionCycleResult | None = None

    @property
    def is_cycle_running(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def timeout_metrics(self) -> TimeoutMetrics:
        return self._timeout_metrics

    @property
    def offline_devices(self) -> list[OfflineDeviceStatus]:
        return list(self._offline_devices.values())

    async def execute_cycle(self, devices: list[MeterDeviceSchema] | None = None) -> CollectionCycleResult | None:
        if self._cycle_lock.locked():
            logger.warning("[Collection] previous cycle still running, skipping this one")
            return None

        async with self._cycle_lock:
            targets = [d for d in (devices if devices is not None else self.devices) if d.enabled]
            cycle = CollectionCycleResult(cycle_id=uuid.uuid4().hex[:12], started_at=utc_now())
            logger.info(f"[Collection] cycle {cycle.cycle_id} started ({len(targets)} devices)")

            semaphore = asyncio.Semaphore(self.read_concurrency)

            async def _run(device: MeterDeviceSchema) -> None:
                async with semaphore:
                    await self._process_device(device, cycle)

            await asyncio.gather(*(_run(d) for d in targets))

            cycle.ended_at = utc_now()
            self._cycles_executed += 1
            self._total_readings_collected += cycle.readings_collected
            self._total_errors += len(cycle.errors)
            self._last_cycle = cycle

            elapsed = (cycle.ended_at - cycle.started_at).total_seconds()
            logger.info(
                f"[Collection] cycle {cycle.cycle_id} done in {elapsed:.2f}s: devices={cycle.devices_processed} "
                f"readings={cycle.readings_collected} skipped={cycle.readings_skipped} errors={len(cycle.errors)}"
            )
            return cycle

    async def _process_device(self, device: MeterDeviceSchema, cycle: CollectionCycleResult) -> None:
        device_id = device.device_id
        if not device.registers:
            cycle.errors.append(CollectionError(device_id, CollectionOperation.READ, "no registers configured"))
            return

        try:
            collected = await self.coordinator.collect_device(device)
        except Exception as e:
            logger.exception(f"[Collection] {device_id}: read failed: {e}")
            cycle.errors.append(CollectionError(device_id, CollectionOperation.READ, f"{type(e).__name__}: {e}"))
            return

        cycle.devices_processed += 1
        self._record_timeouts(collected, cycle)
        self._track_offline(collected)

        if collected.device_offline:
            cycle.errors.append(CollectionError(device_id, CollectionOperation.CONNECTIVITY, "device offline"))
            cycle.readings_skipped += len(collected.outcomes)
            return

        units = {r.data_point: r.unit for r in device.registers}
        readings: list[PendingReading] = []
        for outcome in collected.outcomes:
            if not outcome.ok or not math.isfinite(outcome.value):
                cycle.readings_skipped += 1
                cycle.errors.append(
                    CollectionError(device_id, CollectionOperation.READ, outcome.error or "invalid value", outcome.register)
                )
                continue
            readings.append(
                PendingReading(
                    device_id=device_id,
                    data_point=outcome.register,
                    value=outcome.value,
                    unit=units.get(outcome.register),
                    timestamp=collected.read_at,
                )
            )

        if not readings:
            return

        try:
            await self.queue.enqueue(readings)
        except QueueStoreError as e:
            logger.error(f"[Collection] {device_id}: could not queue {len(readings)} readings: {e}")
            cycle.errors.append(CollectionError(device_id, CollectionOperation.WRITE, str(e)))
            return

        cycle.readings_collected += len(readings)
        logger.debug(f"[Collection] {device_id}: queued {len(readings)}/{len(collected.outcomes)} readings")

    def _record_timeouts(self, collected: CollectionResult, cycle: CollectionCycleResult) -> None:
        for event in collected.timeout_events:
            self._timeout_metrics.record(event)
            cycle.timeout_events.append(event)

        count = self._timeout_metrics.timeouts_by_device.get(collected.device_id, 0)
        if count >= self.slow_device_timeout_threshold and collected.device_id not in self._slow_devices:
            self._slow_devices.add(collected.device_id)
            logger.warning(
                f"[Collection] {collected.device_id} is slow: {count} timeouts so far, "
                f"consider a smaller initial batch size"
            )

    def _track_offline(self, collected: CollectionResult) -> None:
        device_id = collected.device_id
        now = collected.read_at
        status = self._offline_devices.get(device_id)

        if collected.device_offline:
            if status is None:
                self._offline_devices[device_id] = OfflineDeviceStatus(
                    device_id=device_id, offline_since=now, last_checked_at=now
                )
                logger.warning(f"[Collection] {device_id} went offline")
            else:
                status.last_checked_at = now
                status.consecutive_failures += 1
        elif status is not None:
            del self._offline_devices[device_id]
            logger.info(f"[Collection] {device_id} back online after {status.consecutive_failures} offline cycles")

    def get_status(self) -> dict:
        metrics = self._timeout_metrics
        last = self._last_cycle
        return {
            "is_cycle_running": self.is_cycle_running,
            "cycles_executed": self._cycles_executed,
            "total_readings_collected": self._total_readings_collected,
            "total_errors": self._total_errors,
            "last_cycle": (
                {
                    "cycle_id": last.cycle_id,
                    "started_at": last.started_at.isoformat(),
                    "ended_at": last.ended_at.isoformat() if last.ended_at else None,
                    "devices_processed": last.devices_processed,
                    "readings_collected": last.readings_collected,
                    "errors": len(last.errors),
                    "success": last.success,
                }
                if last
                else None
            ),
            "timeout_metrics": {
                "total_timeouts": metrics.total_timeouts,
                "timeouts_by_device": dict(metrics.timeouts_by_device),
                "average_timeout_recovery_ms": round(metrics.average_timeout_recovery_ms, 1),
                "last_timeout_at": metrics.last_timeout_at.isoformat() if metrics.last_timeout_at else None,
            },
            "offline_devices": [
                {**asdict(s), "offline_since": s.offline_since.isoformat(), "last_checked_at": s.last_checked_at.isoformat()}
                for s in self._offline_devices.values()
            ],
            "slow_devices": sorted(self._slow_devices),
            "batch_sizes": self.coordinator.batch_sizes.snapshot(),
        }
