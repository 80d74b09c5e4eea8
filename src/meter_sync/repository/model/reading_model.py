"""SQLAlchemy models for the local reading queue."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from meter_sync.util.time_util import utc_now


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    ...


class MeterReading(Base):
    """
    One queued meter reading.

    Rows are inserted by collection and removed once the Client System
    accepted them. A rejected row stays with its retry_count incremented.
    """

    __tablename__ = "meter_readings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    meter_external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    data_point: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    is_synchronized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_readings_pending_order", "is_synchronized", "timestamp", "id"),
        Index("idx_readings_meter", "meter_external_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<MeterReading(id={self.id}, meter={self.meter_external_id}, point={self.data_point}, "
            f"ts={self.timestamp}, retry={self.retry_count})>"
        )


class SyncLog(Base):
    """One row per upload cycle that talked to (or tried to talk to) the remote."""

    __tablename__ = "sync_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
