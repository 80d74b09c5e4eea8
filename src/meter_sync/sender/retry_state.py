"""
Upload retry/backoff state.

    HEALTHY --CONNECTIVITY_FAILURE--> BACKING_OFF --CONNECTIVITY_FAILURE--> BACKING_OFF (delay grows)
    BACKING_OFF --UPLOAD_SUCCEEDED | RECONNECTED--> HEALTHY

The delay after N consecutive failures is min(base * 2^(N-1), ceiling); the
agent never gives up, it keeps retrying at the ceiling.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable

from meter_sync.model.enum.upload_enum import RetryEvent, RetryPhase
from meter_sync.model.upload_result import RetryState
from meter_sync.util.time_util import utc_now

logger = logging.getLogger("RetryStateMachine")

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class BackoffPolicy:
    base_sec: float = 120.0
    ceiling_sec: float = 8 * 3600.0
    factor: float = 2.0

    def delay_for(self, consecutive_failures: int) -> float:
        if consecutive_failures <= 0:
            return 0.0
        # Exponent is bounded so huge failure counts cannot overflow
        exponent = min(consecutive_failures - 1, 64)
        return min(self.base_sec * (self.factor**exponent), self.ceiling_sec)


# (phase, event) -> next phase
TRANSITIONS: dict[tuple[RetryPhase, RetryEvent], RetryPhase] = {
    (RetryPhase.HEALTHY, RetryEvent.CONNECTIVITY_FAILURE): RetryPhase.BACKING_OFF,
    (RetryPhase.HEALTHY, RetryEvent.UPLOAD_SUCCEEDED): RetryPhase.HEALTHY,
    (RetryPhase.HEALTHY, RetryEvent.RECONNECTED): RetryPhase.HEALTHY,
    (RetryPhase.BACKING_OFF, RetryEvent.CONNECTIVITY_FAILURE): RetryPhase.BACKING_OFF,
    (RetryPhase.BACKING_OFF, RetryEvent.UPLOAD_SUCCEEDED): RetryPhase.HEALTHY,
    (RetryPhase.BACKING_OFF, RetryEvent.RECONNECTED): RetryPhase.HEALTHY,
}


class RetryStateMachine:
    def __init__(self, policy: BackoffPolicy, clock: Clock = utc_now):
        self.policy = policy
        self._clock = clock
        self._state = RetryState()

    @property
    def state(self) -> RetryState:
        return replace(self._state)

    @property
    def phase(self) -> RetryPhase:
        return self._state.phase

    def apply(self, event: RetryEvent, now: datetime | None = None) -> RetryState:
        now = now or self._clock()
        current = self._state
        next_phase = TRANSITIONS[(current.phase, event)]

        if event == RetryEvent.CONNECTIVITY_FAILURE:
            failures = current.consecutive_failure_count + 1
            delay = self.policy.delay_for(failures)
            self._state = replace(
                current,
                phase=next_phase,
                consecutive_failure_count=failures,
                next_retry_at=now + timedelta(seconds=delay),
                last_delay_sec=delay,
            )
            logger.warning(
                f"[Retry] connectivity failure #{failures}, next attempt in {delay:.0f}s "
                f"at {self._state.next_retry_at.isoformat()}"
            )
        else:
            if current.phase == RetryPhase.BACKING_OFF:
                logger.info(f"[Retry] {event.value}: backoff reset after {current.consecutive_failure_count} failures")
            self._state = RetryState(
                phase=next_phase,
                consecutive_failure_count=0,
                next_retry_at=None,
                last_connected_at=now,
                last_delay_sec=0.0,
            )

        return self.state

    def is_retry_due(self, now: datetime | None = None) -> bool:
        if self._state.phase == RetryPhase.HEALTHY or self._state.next_retry_at is None:
            return True
        return (now or self._clock()) >= self._state.next_retry_at

    def seconds_until_retry(self, now: datetime | None = None) -> float:
        if self._state.next_retry_at is None:
            return 0.0
        return max(0.0, (self._state.next_retry_at - (now or self._clock())).total_seconds())
