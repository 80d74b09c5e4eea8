import time
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes (as SQLite hands them back) are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def next_tick_monotonic(anchor: float, interval_sec: float, now: float | None = None) -> float:
    """
    Next point of the fixed grid anchor + k * interval strictly after `now`.
    Keeps a recurring timer on its original phase even when a run overshoots.
    """
    if now is None:
        now = time.monotonic()
    if interval_sec <= 0:
        return now
    elapsed = now - anchor
    ticks = int(elapsed // interval_sec) + 1
    return anchor + ticks * interval_sec
