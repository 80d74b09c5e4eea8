from dataclasses import dataclass, field
from datetime import datetime

from meter_sync.model.enum.collection_enum import CollectionOperation
from meter_sync.model.enum.read_enum import ReadErrorCode, RecoveryMethod
from meter_sync.util.time_util import utc_now


@dataclass(frozen=True)
class RegisterOutcome:
    """Either a value or an error for one requested data point, never both."""

    register: str
    value: float | None = None
    error: str | None = None
    error_code: ReadErrorCode | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None


@dataclass
class TimeoutEvent:
    device_id: str
    register_count: int
    batch_size: int
    timeout_ms: int
    recovery_method: RecoveryMethod
    success: bool
    recovery_ms: float | None = None
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass
class CollectionResult:
    """Per-device result of one collection cycle."""

    device_id: str
    outcomes: list[RegisterOutcome] = field(default_factory=list)
    device_offline: bool = False
    used_sequential_fallback: bool = False
    timeout_events: list[TimeoutEvent] = field(default_factory=list)
    read_at: datetime = field(default_factory=utc_now)

    @property
    def succeeded_count(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)


@dataclass
class OfflineDeviceStatus:
    device_id: str
    offline_since: datetime
    last_checked_at: datetime
    consecutive_failures: int = 1


@dataclass
class CollectionError:
    device_id: str
    operation: CollectionOperation
    error: str
    data_point: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class TimeoutMetrics:
    """Cumulative timeout statistics across collection cycles."""

    total_timeouts: int = 0
    timeouts_by_device: dict[str, int] = field(default_factory=dict)
    last_timeout_at: datetime | None = None
    average_timeout_recovery_ms: float = 0.0
    events: list[TimeoutEvent] = field(default_factory=list)

    MAX_EVENTS = 1000

    def record(self, event: TimeoutEvent) -> None:
        self.total_timeouts += 1
        self.timeouts_by_device[event.device_id] = self.timeouts_by_device.get(event.device_id, 0) + 1
        self.last_timeout_at = event.occurred_at

        if event.recovery_ms is not None:
            timed = [e.recovery_ms for e in self.events if e.recovery_ms is not None]
            timed.append(event.recovery_ms)
            self.average_timeout_recovery_ms = sum(timed) / len(timed)

        self.events.append(event)
        if len(self.events) > self.MAX_EVENTS:
            del self.events[: len(self.events) - self.MAX_EVENTS]


@dataclass
class CollectionCycleResult:
    cycle_id: str
    started_at: datetime
    ended_at: datetime | None = None
    devices_processed: int = 0
    readings_collected: int = 0
    readings_skipped: int = 0
    errors: list[CollectionError] = field(default_factory=list)
    timeout_events: list[TimeoutEvent] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors
