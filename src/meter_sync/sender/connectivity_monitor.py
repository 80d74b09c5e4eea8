import inspect
import logging
from datetime import datetime
from typing import Awaitable, Callable

from meter_sync.model.enum.connectivity_enum import ConnectivityEvent, ConnectivityState
from meter_sync.task.async_job_base import AsyncRecurringJob
from meter_sync.util.time_util import utc_now

logger = logging.getLogger("ConnectivityMonitor")

Probe = Callable[[], Awaitable[bool]]
Listener = Callable[[ConnectivityEvent], Awaitable[None] | None]


class ConnectivityMonitor(AsyncRecurringJob):
    """
    Periodically probes the Client System and publishes edge-triggered events.

    UNKNOWN -> CONNECTED      : no event (first probe only resolves the state)
    UNKNOWN -> DISCONNECTED   : DISCONNECTED
    CONNECTED -> DISCONNECTED : DISCONNECTED
    DISCONNECTED -> CONNECTED : CONNECTED

    Probe and listener exceptions are logged here and never reach the caller.
    """

    def __init__(self, probe: Probe, poll_interval_sec: float = 60.0):
        super().__init__(interval_seconds=poll_interval_sec, run_immediately=True)
        self._probe = probe
        self._state = ConnectivityState.UNKNOWN
        self._listeners: list[Listener] = []

        self._last_check_at: datetime | None = None
        self._last_change_at: datetime | None = None
        self._last_error: str | None = None
        self._last_upload_failure: str | None = None
        self._last_upload_failure_at: datetime | None = None

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectivityState.CONNECTED

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def run_once(self) -> None:
        await self.check_now()

    async def check_now(self) -> ConnectivityState:
        """Probe once and apply the result."""
        self._last_check_at = utc_now()
        try:
            reachable = bool(await self._probe())
            if reachable:
                self._last_error = None
            else:
                self._last_error = "health probe failed"
        except Exception as e:
            logger.warning(f"[Connectivity] probe raised {type(e).__name__}: {e}")
            self._last_error = f"{type(e).__name__}: {e}"
            reachable = False

        await self._transition(ConnectivityState.CONNECTED if reachable else ConnectivityState.DISCONNECTED)
        return self._state

    async def report_unreachable(self, reason: str) -> None:
        """
        Record an upload that failed with a connectivity-class error.

        Status only: the state and its events follow the health probe alone, so
        a remote whose health endpoint answers while uploads fail never produces
        a CONNECTED event (which would reset the upload backoff).
        """
        self._last_upload_failure = reason
        self._last_upload_failure_at = utc_now()
        logger.debug(f"[Connectivity] upload reported remote unreachable: {reason}")

    def get_status(self) -> dict:
        return {
            "state": self._state.value,
            "last_check_at": self._last_check_at.isoformat() if self._last_check_at else None,
            "last_change_at": self._last_change_at.isoformat() if self._last_change_at else None,
            "last_error": self._last_error,
            "last_upload_failure": self._last_upload_failure,
            "last_upload_failure_at": (
                self._last_upload_failure_at.isoformat() if self._last_upload_failure_at else None
            ),
            "poll_interval_sec": self.interval,
        }

    # ------------------------------------------------------------------

    async def _transition(self, new_state: ConnectivityState) -> None:
        previous = self._state
        if new_state == previous:
            return

        self._state = new_state
        self._last_change_at = utc_now()
        logger.info(f"[Connectivity] {previous.value} -> {new_state.value}")

        if new_state == ConnectivityState.DISCONNECTED:
            await self._emit(ConnectivityEvent.DISCONNECTED)
        elif previous == ConnectivityState.DISCONNECTED:
            await self._emit(ConnectivityEvent.CONNECTED)

    async def _emit(self, event: ConnectivityEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"[Connectivity] listener failed on {event.value}: {e}")
