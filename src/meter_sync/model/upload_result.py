from dataclasses import dataclass, field
from datetime import datetime

from meter_sync.model.enum.upload_enum import RetryPhase, UploadCycleOutcome
from meter_sync.util.time_util import utc_now


@dataclass(frozen=True)
class RowError:
    row_id: int
    error_code: str
    message: str = ""


@dataclass
class BatchUploadResult:
    """What the remote said about one uploaded batch, mapped to local row ids."""

    accepted_ids: list[int] = field(default_factory=list)
    rejected: list[RowError] = field(default_factory=list)
    inserted_count: int = 0
    skipped_count: int = 0

    @property
    def rejected_ids(self) -> list[int]:
        return [e.row_id for e in self.rejected]


@dataclass
class UploadCycleResult:
    outcome: UploadCycleOutcome
    inserted_count: int = 0
    skipped_count: int = 0
    errors: list[RowError] = field(default_factory=list)
    batches: int = 0
    uploaded_rows: int = 0
    started_at: datetime = field(default_factory=utc_now)
    duration_sec: float = 0.0
    error_message: str | None = None

    @property
    def failed_count(self) -> int:
        return len(self.errors)


@dataclass
class RetryState:
    phase: RetryPhase = RetryPhase.HEALTHY
    consecutive_failure_count: int = 0
    next_retry_at: datetime | None = None
    last_connected_at: datetime | None = None
    last_delay_sec: float = 0.0


@dataclass
class UploadStatus:
    is_running: bool = False
    queue_size: int = 0
    last_upload_time: datetime | None = None
    last_upload_success: bool | None = None
    last_upload_error: str | None = None
    total_uploaded: int = 0
    total_failed: int = 0
    is_client_connected: bool = False
    retry_state: RetryState = field(default_factory=RetryState)
    last_cycle: UploadCycleResult | None = None
