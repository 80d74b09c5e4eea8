"""Durable local queue of meter readings awaiting upload."""

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, case, delete, desc, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from meter_sync.exception import QueueStoreError
from meter_sync.model.reading import PendingReading
from meter_sync.repository.model.reading_model import MeterReading, SyncLog
from meter_sync.repository.util.db_manager import SQLiteQueueDBManager
from meter_sync.util.time_util import ensure_utc, utc_now

logger = logging.getLogger("ReadingQueue")

# Stay well below SQLite's bound-parameter limit
_ID_CHUNK = 500


def _chunks(ids: Sequence[int], size: int = _ID_CHUNK) -> Iterable[list[int]]:
    for i in range(0, len(ids), size):
        yield list(ids[i : i + size])


class ReadingQueue:
    """
    Only writer of the `meter_readings` table.

    Rows leave the queue in (timestamp, id) order. They are deleted once the
    remote accepted them and are never dropped on failure; a rejection only
    increments retry_count. Each mutating call is one transaction.
    """

    def __init__(self, db_manager: SQLiteQueueDBManager):
        self.db = db_manager

    async def init(self) -> None:
        try:
            await self.db.init_database()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"queue schema init failed: {e}") from e

    # --------------------------------------------------------------
    # Readings
    # --------------------------------------------------------------
    async def enqueue(self, readings: Sequence[PendingReading]) -> int:
        """Persist readings atomically. Assigns `id` on the given objects."""
        if not readings:
            return 0

        records = [
            MeterReading(
                meter_external_id=r.device_id,
                data_point=r.data_point,
                value=float(r.value),
                unit=r.unit,
                timestamp=ensure_utc(r.timestamp),
                created_at=ensure_utc(r.created_at),
                is_synchronized=False,
                retry_count=r.retry_count,
            )
            for r in readings
        ]

        try:
            async with self.db.get_async_session() as session:
                session.add_all(records)
                await session.commit()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"enqueue of {len(readings)} readings failed: {e}") from e

        for reading, record in zip(readings, records):
            reading.id = record.id

        logger.debug(f"[Queue] Enqueued {len(records)} readings")
        return len(records)

    async def dequeue_batch(
        self, max_size: int, after: tuple[datetime, int] | None = None
    ) -> list[PendingReading]:
        """
        Oldest unsynchronized readings, without removing them.

        `after` is a (timestamp, id) cursor: only rows strictly after it are
        returned, so one upload cycle never sees the same row twice.
        """
        if max_size <= 0:
            return []

        stmt = select(MeterReading).where(MeterReading.is_synchronized.is_(False))
        if after is not None:
            after_ts, after_id = ensure_utc(after[0]), int(after[1])
            stmt = stmt.where(
                or_(
                    MeterReading.timestamp > after_ts,
                    and_(MeterReading.timestamp == after_ts, MeterReading.id > after_id),
                )
            )
        stmt = stmt.order_by(MeterReading.timestamp, MeterReading.id).limit(max_size)

        try:
            async with self.db.get_async_session() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"dequeue failed: {e}") from e

        return [self._to_pending(row) for row in rows]

    async def mark_deleted(self, ids: Sequence[int]) -> int:
        """Permanently remove accepted readings."""
        if not ids:
            return 0

        deleted = 0
        try:
            async with self.db.get_async_session() as session:
                for chunk in _chunks(ids):
                    result = await session.execute(delete(MeterReading).where(MeterReading.id.in_(chunk)))
                    deleted += result.rowcount or 0
                await session.commit()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"delete of {len(ids)} readings failed: {e}") from e

        logger.debug(f"[Queue] Deleted {deleted} synchronized readings")
        return deleted

    async def increment_retry(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0

        updated = 0
        try:
            async with self.db.get_async_session() as session:
                for chunk in _chunks(ids):
                    result = await session.execute(
                        update(MeterReading)
                        .where(MeterReading.id.in_(chunk))
                        .values(retry_count=MeterReading.retry_count + 1)
                    )
                    updated += result.rowcount or 0
                await session.commit()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"retry increment of {len(ids)} readings failed: {e}") from e

        return updated

    async def count_pending(self) -> int:
        try:
            async with self.db.get_async_session() as session:
                result = await session.execute(
                    select(func.count(MeterReading.id)).where(MeterReading.is_synchronized.is_(False))
                )
                return int(result.scalar() or 0)
        except SQLAlchemyError as e:
            raise QueueStoreError(f"count failed: {e}") from e

    async def get_readings(self, ids: Sequence[int]) -> list[PendingReading]:
        if not ids:
            return []
        try:
            async with self.db.get_async_session() as session:
                result = await session.execute(
                    select(MeterReading).where(MeterReading.id.in_(list(ids))).order_by(MeterReading.id)
                )
                return [self._to_pending(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise QueueStoreError(f"lookup failed: {e}") from e

    # --------------------------------------------------------------
    # Sync log
    # --------------------------------------------------------------
    async def log_sync_operation(self, batch_size: int, success: bool, error_message: str | None = None) -> None:
        record = SyncLog(batch_size=batch_size, success=success, error_message=error_message, synced_at=utc_now())
        try:
            async with self.db.get_async_session() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"sync log write failed: {e}") from e

    async def get_recent_sync_logs(self, limit: int = 10) -> list[dict[str, Any]]:
        try:
            async with self.db.get_async_session() as session:
                result = await session.execute(select(SyncLog).order_by(desc(SyncLog.id)).limit(limit))
                logs = result.scalars().all()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"sync log read failed: {e}") from e

        return [
            {
                "id": log.id,
                "batch_size": log.batch_size,
                "success": log.success,
                "error_message": log.error_message,
                "synced_at": ensure_utc(log.synced_at).isoformat(),
            }
            for log in logs
        ]

    async def get_sync_stats(self, hours: int = 24) -> dict[str, Any]:
        since = utc_now() - timedelta(hours=hours)
        stmt = select(
            func.count(SyncLog.id),
            func.sum(case((SyncLog.success.is_(True), 1), else_=0)),
            func.sum(case((SyncLog.success.is_(True), SyncLog.batch_size), else_=0)),
        ).where(SyncLog.synced_at >= since)

        try:
            async with self.db.get_async_session() as session:
                total, successful, readings_synced = (await session.execute(stmt)).one()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"sync stats failed: {e}") from e

        total = int(total or 0)
        successful = int(successful or 0)
        return {
            "hours": hours,
            "total_syncs": total,
            "successful_syncs": successful,
            "failed_syncs": total - successful,
            "total_readings_synced": int(readings_synced or 0),
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
        }

    # --------------------------------------------------------------

    @staticmethod
    def _to_pending(row: MeterReading) -> PendingReading:
        return PendingReading(
            id=row.id,
            device_id=row.meter_external_id,
            data_point=row.data_point,
            value=row.value,
            unit=row.unit,
            timestamp=ensure_utc(row.timestamp),
            is_synchronized=row.is_synchronized,
            retry_count=row.retry_count,
            created_at=ensure_utc(row.created_at),
        )
