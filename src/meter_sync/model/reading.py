from dataclasses import dataclass, field
from datetime import datetime

from meter_sync.util.time_util import utc_now


@dataclass
class PendingReading:
    """
    One data point value waiting in the local queue for upload.

    `id` is assigned by the queue on insert and is None before that.
    """

    device_id: str
    data_point: str
    value: float
    timestamp: datetime
    unit: str | None = None
    id: int | None = None
    is_synchronized: bool = False
    retry_count: int = 0
    created_at: datetime = field(default_factory=utc_now)

    @property
    def order_key(self) -> tuple[datetime, int]:
        """Position in the upload order: (timestamp, id)."""
        return self.timestamp, self.id if self.id is not None else 0
