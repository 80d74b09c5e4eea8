from datetime import datetime, timedelta, timezone

import pytest

from meter_sync.model.enum.upload_enum import RetryEvent, RetryPhase
from meter_sync.sender.retry_state import BackoffPolicy, RetryStateMachine

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestBackoffPolicy:
    @pytest.mark.parametrize(
        "failures, expected",
        [(0, 0.0), (1, 120.0), (2, 240.0), (3, 480.0), (8, 15360.0), (9, 28800.0), (50, 28800.0), (10_000, 28800.0)],
    )
    def test_delay_doubles_until_ceiling(self, failures, expected):
        policy = BackoffPolicy(base_sec=120, ceiling_sec=8 * 3600)

        assert policy.delay_for(failures) == expected

    def test_delays_are_monotonic(self):
        policy = BackoffPolicy(base_sec=5, ceiling_sec=300)

        delays = [policy.delay_for(n) for n in range(1, 40)]

        assert delays == sorted(delays)
        assert max(delays) == 300


class TestRetryStateMachine:
    def test_when_created_then_healthy_and_retry_due(self):
        machine = RetryStateMachine(BackoffPolicy(), clock=lambda: T0)

        assert machine.phase == RetryPhase.HEALTHY
        assert machine.is_retry_due()
        assert machine.seconds_until_retry() == 0.0

    def test_when_connectivity_fails_repeatedly_then_delay_grows(self):
        # Arrange
        machine = RetryStateMachine(BackoffPolicy(base_sec=120, ceiling_sec=28800), clock=lambda: T0)

        # Act
        first = machine.apply(RetryEvent.CONNECTIVITY_FAILURE, now=T0)
        second = machine.apply(RetryEvent.CONNECTIVITY_FAILURE, now=T0 + timedelta(seconds=120))

        # Assert
        assert first.phase == RetryPhase.BACKING_OFF
        assert first.next_retry_at == T0 + timedelta(seconds=120)
        assert second.consecutive_failure_count == 2
        assert second.last_delay_sec == 240
        assert second.next_retry_at == T0 + timedelta(seconds=360)

    def test_when_backing_off_then_retry_due_only_after_deadline(self):
        machine = RetryStateMachine(BackoffPolicy(base_sec=60, ceiling_sec=600), clock=lambda: T0)
        machine.apply(RetryEvent.CONNECTIVITY_FAILURE, now=T0)

        assert not machine.is_retry_due(T0 + timedelta(seconds=59))
        assert machine.seconds_until_retry(T0 + timedelta(seconds=30)) == 30
        assert machine.is_retry_due(T0 + timedelta(seconds=60))

    @pytest.mark.parametrize("event", [RetryEvent.UPLOAD_SUCCEEDED, RetryEvent.RECONNECTED])
    def test_when_recovered_then_state_resets(self, event):
        machine = RetryStateMachine(BackoffPolicy(), clock=lambda: T0)
        machine.apply(RetryEvent.CONNECTIVITY_FAILURE, now=T0)
        machine.apply(RetryEvent.CONNECTIVITY_FAILURE, now=T0)

        state = machine.apply(event, now=T0 + timedelta(minutes=5))

        assert state.phase == RetryPhase.HEALTHY
        assert state.consecutive_failure_count == 0
        assert state.next_retry_at is None
        assert state.last_connected_at == T0 + timedelta(minutes=5)

    def test_when_state_copy_mutated_then_machine_unaffected(self):
        machine = RetryStateMachine(BackoffPolicy(), clock=lambda: T0)

        snapshot = machine.state
        snapshot.consecutive_failure_count = 99

        assert machine.state.consecutive_failure_count == 0
