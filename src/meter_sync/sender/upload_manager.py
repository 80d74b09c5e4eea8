"""
Upload Manager

Drains the local reading queue to the Client System in batches.

- Scheduled cycles run on a fixed grid (start + k * interval). A tick that
  lands while a cycle is still running, or inside a backoff window, is skipped.
- While backing off the scheduler also wakes at `next_retry_at` so the retry
  does not wait for the next regular tick.
- A CONNECTED event from the connectivity monitor resets the backoff and
  triggers an immediate out-of-band cycle.
- Only one cycle runs at a time; concurrent calls return a SKIPPED result.
"""

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime

from meter_sync.exception import QueueStoreError, RemoteUnavailableError
from meter_sync.model.enum.connectivity_enum import ConnectivityEvent
from meter_sync.model.enum.upload_enum import RetryEvent, RetryPhase, UploadCycleOutcome
from meter_sync.model.upload_result import UploadCycleResult, UploadStatus
from meter_sync.repository.reading_queue import ReadingQueue
from meter_sync.sender.client_api import ClientSystemApiClient
from meter_sync.sender.connectivity_monitor import ConnectivityMonitor
from meter_sync.sender.retry_state import BackoffPolicy, Clock, RetryStateMachine
from meter_sync.util.time_util import next_tick_monotonic, utc_now

logger = logging.getLogger("UploadManager")

MAX_LOGGED_REJECTIONS = 5


class UploadManager:
    def __init__(
        self,
        queue: ReadingQueue,
        api_client: ClientSystemApiClient,
        monitor: ConnectivityMonitor | None = None,
        *,
        upload_batch_size: int = 1000,
        upload_interval_sec: float = 300.0,
        backoff: BackoffPolicy | None = None,
        clock: Clock = utc_now,
    ):
        if upload_batch_size < 1:
            raise ValueError("upload_batch_size must be >= 1")

        self.queue = queue
        self.api_client = api_client
        self.monitor = monitor
        self.upload_batch_size = int(upload_batch_size)
        self.upload_interval_sec = float(upload_interval_sec)

        self._clock = clock
        self._retry = RetryStateMachine(backoff or BackoffPolicy(), clock)
        self._retry_fired_for: datetime | None = None

        self._cycle_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: asyncio.Task | None = None
        self._trigger_tasks: set[asyncio.Task] = set()

        self._status = UploadStatus()

        if monitor is not None:
            monitor.add_listener(self._on_connectivity_event)

    @property
    def retry_state(self):
        return self._retry.state

    @property
    def is_cycle_running(self) -> bool:
        return self._cycle_lock.locked()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, interval_sec: float | None = None) -> asyncio.Task:
        if self._task and not self._task.done():
            logger.warning("[UploadManager] already running")
            return self._task

        if interval_sec is not None:
            self.upload_interval_sec = float(interval_sec)
        if self.upload_interval_sec <= 0:
            raise ValueError("upload interval must be > 0")

        self._stopping = False
        self._status.is_running = True
        self._task = asyncio.create_task(self._schedule_loop())
        logger.info(
            f"[UploadManager] started (interval={self.upload_interval_sec:.0f}s, batch={self.upload_batch_size})"
        )
        return self._task

    async def stop(self) -> None:
        """Graceful stop: a running cycle finishes its current batch, then everything exits."""
        self._stopping = True
        self._wakeup.set()

        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            finally:
                self._task = None

        if self._trigger_tasks:
            await asyncio.gather(*list(self._trigger_tasks), return_exceptions=True)

        self._status.is_running = False
        logger.info("[UploadManager] stopped")

    async def trigger_upload(self) -> UploadCycleResult:
        """Run one cycle now, outside the schedule. The timer phase is not changed."""
        return await self.perform_upload_cycle()

    # ------------------------------------------------------------------
    # Upload cycle
    # ------------------------------------------------------------------
    async def perform_upload_cycle(self) -> UploadCycleResult:
        if self._cycle_lock.locked():
            logger.debug("[UploadManager] cycle already running, skipped")
            return UploadCycleResult(outcome=UploadCycleOutcome.SKIPPED)

        async with self._cycle_lock:
            result = UploadCycleResult(outcome=UploadCycleOutcome.EMPTY, started_at=self._clock())
            started = time.monotonic()
            try:
                await self._drain_queue(result)
            except Exception as e:
                logger.exception(f"[UploadManager] unexpected error in upload cycle: {e}")
                result.outcome = UploadCycleOutcome.ERROR
                result.error_message = f"{type(e).__name__}: {e}"
            finally:
                result.duration_sec = time.monotonic() - started

            await self._finish_cycle(result)
            return result

    async def _drain_queue(self, result: UploadCycleResult) -> None:
        cursor: tuple[datetime, int] | None = None
        got_response = False
        exhausted = False

        while not self._stopping:
            try:
                batch = await self.queue.dequeue_batch(self.upload_batch_size, after=cursor)
            except QueueStoreError as e:
                logger.error(f"[UploadManager] queue read failed: {e}")
                result.outcome = UploadCycleOutcome.STORE_FAILED
                result.error_message = str(e)
                return

            if not batch:
                exhausted = True
                break
            cursor = batch[-1].order_key

            try:
                upload = await self.api_client.upload_batch(batch)
            except RemoteUnavailableError as e:
                state = self._retry.apply(RetryEvent.CONNECTIVITY_FAILURE)
                logger.warning(
                    f"[UploadManager] remote unavailable ({e}); {len(batch)} rows stay queued, "
                    f"retry #{state.consecutive_failure_count} in {state.last_delay_sec:.0f}s"
                )
                result.outcome = UploadCycleOutcome.CONNECTIVITY_FAILED
                result.error_message = str(e)
                if self.monitor is not None:
                    await self.monitor.report_unreachable(str(e))
                return

            got_response = True
            result.batches += 1

            try:
                await self.queue.mark_deleted(upload.accepted_ids)
                await self.queue.increment_retry(upload.rejected_ids)
            except QueueStoreError as e:
                logger.error(f"[UploadManager] queue update after upload failed: {e}")
                result.outcome = UploadCycleOutcome.STORE_FAILED
                result.error_message = str(e)
                return

            result.uploaded_rows += len(upload.accepted_ids)
            result.inserted_count += upload.inserted_count
            result.skipped_count += upload.skipped_count
            result.errors.extend(upload.rejected)

            if upload.rejected:
                reasons = ", ".join(f"#{e.row_id}:{e.error_code}" for e in upload.rejected[:MAX_LOGGED_REJECTIONS])
                logger.warning(
                    f"[UploadManager] batch {result.batches}: {len(upload.rejected)} rows rejected ({reasons})"
                )
            logger.debug(
                f"[UploadManager] batch {result.batches}: accepted={len(upload.accepted_ids)} "
                f"rejected={len(upload.rejected)}"
            )

        if got_response:
            result.outcome = UploadCycleOutcome.COMPLETED
            if exhausted:
                self._retry.apply(RetryEvent.UPLOAD_SUCCEEDED)
            else:
                logger.info("[UploadManager] stopping, remaining rows stay queued")

    async def _finish_cycle(self, result: UploadCycleResult) -> None:
        if result.outcome == UploadCycleOutcome.EMPTY:
            logger.debug("[UploadManager] queue empty, nothing to upload")
            self._status.last_cycle = result
            return

        status = self._status
        status.last_cycle = result
        status.last_upload_time = self._clock()
        status.total_uploaded += result.uploaded_rows
        status.total_failed += result.failed_count

        if result.outcome == UploadCycleOutcome.COMPLETED:
            status.last_upload_success = True
            status.last_upload_error = f"{result.failed_count} rows rejected" if result.errors else None
            logger.info(
                f"[UploadManager] cycle done: uploaded={result.uploaded_rows} failed={result.failed_count} "
                f"batches={result.batches} duration={result.duration_sec:.2f}s"
            )
        else:
            status.last_upload_success = False
            status.last_upload_error = result.error_message
            logger.warning(
                f"[UploadManager] cycle ended {result.outcome.value}: uploaded={result.uploaded_rows} "
                f"failed={result.failed_count} error={result.error_message}"
            )

        try:
            await self.queue.log_sync_operation(
                batch_size=result.uploaded_rows,
                success=result.outcome == UploadCycleOutcome.COMPLETED,
                error_message=result.error_message or status.last_upload_error,
            )
        except QueueStoreError as e:
            logger.warning(f"[UploadManager] sync log write failed: {e}")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    async def _schedule_loop(self) -> None:
        anchor = time.monotonic()
        next_tick = anchor

        while not self._stopping:
            wait_sec = max(0.0, next_tick - time.monotonic())
            if self._retry_pending():
                wait_sec = min(wait_sec, self._retry.seconds_until_retry())

            if wait_sec > 0:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=wait_sec)
                except TimeoutError:
                    pass
                continue

            now = time.monotonic()
            tick_due = now >= next_tick
            if tick_due:
                next_tick = next_tick_monotonic(anchor, self.upload_interval_sec, now)

            if self._retry_pending() and self._retry.is_retry_due():
                self._retry_fired_for = self._retry.state.next_retry_at
                await self.perform_upload_cycle()
            elif tick_due:
                if self._retry.phase == RetryPhase.BACKING_OFF and not self._retry.is_retry_due():
                    logger.debug(
                        f"[UploadManager] tick skipped, backing off for "
                        f"{self._retry.seconds_until_retry():.0f}s more"
                    )
                    continue
                await self.perform_upload_cycle()

    def _retry_pending(self) -> bool:
        state = self._retry.state
        return state.phase == RetryPhase.BACKING_OFF and state.next_retry_at != self._retry_fired_for

    async def _on_connectivity_event(self, event: ConnectivityEvent) -> None:
        if event == ConnectivityEvent.DISCONNECTED:
            self._status.is_client_connected = False
            return

        self._status.is_client_connected = True
        self._retry.apply(RetryEvent.RECONNECTED)
        self._wakeup.set()

        if self._stopping:
            return
        logger.info("[UploadManager] connectivity restored, uploading now")
        task = asyncio.create_task(self.trigger_upload())
        self._trigger_tasks.add(task)
        task.add_done_callback(self._trigger_tasks.discard)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    async def get_status(self) -> UploadStatus:
        try:
            self._status.queue_size = await self.queue.count_pending()
        except QueueStoreError as e:
            logger.warning(f"[UploadManager] queue size unavailable: {e}")

        if self.monitor is not None:
            self._status.is_client_connected = self.monitor.is_connected
        return replace(self._status, retry_state=self._retry.state)
