"""
Per-device adaptive batch sizing.

A device starts at its initial batch size. Every timeout shrinks it by the
reduction factor (never below the minimum), and a run of successful batches
grows it back towards the full register count.
"""

import logging
import math
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger("BatchSizeManager")


@dataclass
class DeviceBatchState:
    device_id: str
    total_registers: int
    current_batch_size: int
    consecutive_successes: int = 0
    timeout_count: int = 0


class BatchSizeManager:
    def __init__(
        self,
        *,
        initial_batch_size: int | Literal["all"] = "all",
        min_batch_size: int = 1,
        reduction_factor: float = 0.5,
        growth_threshold: int = 3,
    ):
        if min_batch_size < 1:
            raise ValueError("min_batch_size must be >= 1")
        if not 0.0 < reduction_factor < 1.0:
            raise ValueError("reduction_factor must be between 0 and 1 (exclusive)")
        if initial_batch_size != "all" and (not isinstance(initial_batch_size, int) or initial_batch_size < 1):
            raise ValueError("initial_batch_size must be 'all' or a positive integer")
        if growth_threshold < 0:
            raise ValueError("growth_threshold must be >= 0")

        self._initial_batch_size = initial_batch_size
        self._min_batch_size = int(min_batch_size)
        self._reduction_factor = float(reduction_factor)
        self._growth_threshold = int(growth_threshold)

        self._states: dict[str, DeviceBatchState] = {}

    @property
    def min_batch_size(self) -> int:
        return self._min_batch_size

    def get_batch_size(self, device_id: str, total_registers: int) -> int:
        """
        Current batch size for a device. The first call for a device creates its
        state; a changed register count re-clamps the stored size.
        """
        total = max(1, int(total_registers))
        state = self._states.get(device_id)

        if state is None:
            state = DeviceBatchState(
                device_id=device_id,
                total_registers=total,
                current_batch_size=self._clamp(self._initial_size(total), total),
            )
            self._states[device_id] = state
            logger.debug(f"[BatchSize] {device_id}: initial batch size {state.current_batch_size}/{total}")
        elif state.total_registers != total:
            state.total_registers = total
            state.current_batch_size = self._clamp(state.current_batch_size, total)

        return state.current_batch_size

    def on_timeout(self, device_id: str) -> int:
        """Shrink the batch after a timeout. Returns the new size."""
        state = self._states.get(device_id)
        if state is None:
            return self._min_batch_size

        previous = state.current_batch_size
        reduced = int(math.floor(previous * self._reduction_factor))
        state.current_batch_size = self._clamp(max(self._min_batch_size, reduced), state.total_registers)
        state.consecutive_successes = 0
        state.timeout_count += 1

        if state.current_batch_size != previous:
            logger.info(f"[BatchSize] {device_id}: timeout, batch size {previous} -> {state.current_batch_size}")
        return state.current_batch_size

    def on_success(self, device_id: str) -> int:
        """Count a successful batch; grow the size once the success streak reaches the threshold."""
        state = self._states.get(device_id)
        if state is None:
            return 0

        state.consecutive_successes += 1
        if self._growth_threshold <= 0 or state.current_batch_size >= state.total_registers:
            return state.current_batch_size

        if state.consecutive_successes >= self._growth_threshold:
            previous = state.current_batch_size
            state.current_batch_size = min(state.total_registers, previous * 2)
            state.consecutive_successes = 0
            logger.info(f"[BatchSize] {device_id}: stable, batch size {previous} -> {state.current_batch_size}")

        return state.current_batch_size

    def is_at_minimum(self, device_id: str) -> bool:
        state = self._states.get(device_id)
        if state is None:
            return False
        return state.current_batch_size <= self._min_batch_size

    def reset(self, device_id: str) -> None:
        self._states.pop(device_id, None)

    def get_state(self, device_id: str) -> DeviceBatchState | None:
        return self._states.get(device_id)

    def snapshot(self) -> dict[str, dict]:
        return {
            device_id: {
                "total_registers": s.total_registers,
                "current_batch_size": s.current_batch_size,
                "consecutive_successes": s.consecutive_successes,
                "timeout_count": s.timeout_count,
            }
            for device_id, s in self._states.items()
        }

    # ------------------------------------------------------------------

    def _initial_size(self, total: int) -> int:
        if self._initial_batch_size == "all":
            return total
        return int(self._initial_batch_size)

    def _clamp(self, size: int, total: int) -> int:
        # A device with fewer registers than the minimum reads them all at once
        lower = min(self._min_batch_size, total)
        return max(lower, min(int(size), total))
