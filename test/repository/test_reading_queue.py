from datetime import datetime, timedelta, timezone

import pytest

from meter_sync.exception import QueueStoreError
from meter_sync.model.reading import PendingReading
from meter_sync.repository.reading_queue import ReadingQueue
from meter_sync.repository.util.db_manager import SQLiteQueueDBManager

BASE_TS = datetime(2025, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


class TestReadingQueueEnqueue:
    @pytest.mark.asyncio
    async def test_when_enqueue_then_ids_assigned_and_counted(self, reading_queue, readings_factory):
        # Arrange
        readings = readings_factory(3)

        # Act
        inserted = await reading_queue.enqueue(readings)

        # Assert
        assert inserted == 3
        assert all(r.id is not None for r in readings)
        assert len({r.id for r in readings}) == 3
        assert await reading_queue.count_pending() == 3

    @pytest.mark.asyncio
    async def test_when_enqueue_empty_then_noop(self, reading_queue):
        assert await reading_queue.enqueue([]) == 0
        assert await reading_queue.count_pending() == 0

    @pytest.mark.asyncio
    async def test_when_read_back_then_timestamps_are_utc(self, reading_queue, readings_factory):
        await reading_queue.enqueue(readings_factory(1))

        [stored] = await reading_queue.dequeue_batch(10)

        assert stored.timestamp == BASE_TS
        assert stored.timestamp.tzinfo == timezone.utc
        assert stored.unit == "kWh"
        assert stored.retry_count == 0


class TestReadingQueueOrdering:
    @pytest.mark.asyncio
    async def test_when_inserted_out_of_order_then_dequeued_by_timestamp_then_id(self, reading_queue):
        # Arrange
        late = PendingReading(device_id="MTR-1", data_point="a", value=1.0, timestamp=BASE_TS + timedelta(hours=1))
        early = PendingReading(device_id="MTR-1", data_point="b", value=2.0, timestamp=BASE_TS)
        same_ts_first = PendingReading(device_id="MTR-2", data_point="c", value=3.0, timestamp=BASE_TS)
        await reading_queue.enqueue([late, early])
        await reading_queue.enqueue([same_ts_first])

        # Act
        batch = await reading_queue.dequeue_batch(10)

        # Assert
        assert [r.data_point for r in batch] == ["b", "c", "a"]
        assert [r.order_key for r in batch] == sorted(r.order_key for r in batch)

    @pytest.mark.asyncio
    async def test_when_cursor_given_then_only_later_rows_returned(self, reading_queue, readings_factory):
        await reading_queue.enqueue(readings_factory(5))
        first = await reading_queue.dequeue_batch(2)

        rest = await reading_queue.dequeue_batch(10, after=first[-1].order_key)

        assert [r.data_point for r in first] == ["p0", "p1"]
        assert [r.data_point for r in rest] == ["p2", "p3", "p4"]

    @pytest.mark.asyncio
    async def test_when_cursor_on_shared_timestamp_then_tie_broken_by_id(self, reading_queue):
        readings = [
            PendingReading(device_id="MTR-1", data_point=f"p{i}", value=float(i), timestamp=BASE_TS)
            for i in range(3)
        ]
        await reading_queue.enqueue(readings)

        rest = await reading_queue.dequeue_batch(10, after=readings[0].order_key)

        assert [r.id for r in rest] == [readings[1].id, readings[2].id]

    @pytest.mark.asyncio
    async def test_when_dequeue_then_rows_are_not_removed(self, reading_queue, readings_factory):
        await reading_queue.enqueue(readings_factory(2))

        await reading_queue.dequeue_batch(10)

        assert await reading_queue.count_pending() == 2

    @pytest.mark.asyncio
    async def test_when_max_size_not_positive_then_empty(self, reading_queue, readings_factory):
        await reading_queue.enqueue(readings_factory(2))

        assert await reading_queue.dequeue_batch(0) == []


class TestReadingQueueAcknowledgement:
    @pytest.mark.asyncio
    async def test_when_mark_deleted_then_rows_gone(self, reading_queue, readings_factory):
        readings = readings_factory(4)
        await reading_queue.enqueue(readings)

        deleted = await reading_queue.mark_deleted([readings[0].id, readings[2].id])

        assert deleted == 2
        remaining = await reading_queue.dequeue_batch(10)
        assert [r.data_point for r in remaining] == ["p1", "p3"]

    @pytest.mark.asyncio
    async def test_when_increment_retry_then_row_kept_with_higher_count(self, reading_queue, readings_factory):
        readings = readings_factory(2)
        await reading_queue.enqueue(readings)

        await reading_queue.increment_retry([readings[1].id])
        await reading_queue.increment_retry([readings[1].id])

        [p0, p1] = await reading_queue.get_readings([r.id for r in readings])
        assert p0.retry_count == 0
        assert p1.retry_count == 2
        assert await reading_queue.count_pending() == 2

    @pytest.mark.asyncio
    async def test_when_many_ids_then_chunked_delete_removes_all(self, reading_queue, readings_factory):
        readings = readings_factory(1200)
        await reading_queue.enqueue(readings)

        deleted = await reading_queue.mark_deleted([r.id for r in readings])

        assert deleted == 1200
        assert await reading_queue.count_pending() == 0

    @pytest.mark.asyncio
    async def test_when_ids_empty_then_nothing_happens(self, reading_queue):
        assert await reading_queue.mark_deleted([]) == 0
        assert await reading_queue.increment_retry([]) == 0
        assert await reading_queue.get_readings([]) == []


class TestReadingQueueSyncLog:
    @pytest.mark.asyncio
    async def test_when_sync_operations_logged_then_stats_summarize_them(self, reading_queue):
        # Arrange
        await reading_queue.log_sync_operation(100, True)
        await reading_queue.log_sync_operation(50, True)
        await reading_queue.log_sync_operation(0, False, "remote unavailable")

        # Act
        stats = await reading_queue.get_sync_stats(hours=24)

        # Assert
        assert stats == {
            "hours": 24,
            "total_syncs": 3,
            "successful_syncs": 2,
            "failed_syncs": 1,
            "total_readings_synced": 150,
            "success_rate": 66.67,
        }

    @pytest.mark.asyncio
    async def test_when_no_logs_then_stats_are_zero(self, reading_queue):
        stats = await reading_queue.get_sync_stats()

        assert stats["total_syncs"] == 0
        assert stats["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_when_recent_logs_requested_then_newest_first(self, reading_queue):
        await reading_queue.log_sync_operation(1, True)
        await reading_queue.log_sync_operation(2, False, "boom")

        logs = await reading_queue.get_recent_sync_logs(limit=1)

        assert len(logs) == 1
        assert logs[0]["batch_size"] == 2
        assert logs[0]["error_message"] == "boom"
        assert logs[0]["success"] is False


class TestReadingQueueStoreFailure:
    @pytest.mark.asyncio
    async def test_when_schema_missing_then_errors_are_wrapped(self, tmp_path):
        # Arrange: a queue whose schema was never created
        db_manager = SQLiteQueueDBManager(str(tmp_path / "empty.db"))
        queue = ReadingQueue(db_manager)

        # Act / Assert
        try:
            with pytest.raises(QueueStoreError):
                await queue.count_pending()
        finally:
            await db_manager.close_engine()
