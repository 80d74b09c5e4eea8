from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio

from meter_sync.device.bacnet.reader_base import DataPointReader
from meter_sync.exception import BatchReadTimeoutError, DeviceTimeoutError
from meter_sync.model.reading import PendingReading
from meter_sync.repository.reading_queue import ReadingQueue
from meter_sync.repository.util.db_manager import SQLiteQueueDBManager
from meter_sync.schema.sync_config_schema import MeterDeviceSchema, RegisterSchema

BASE_TS = datetime(2025, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


class ScriptedReader(DataPointReader):
    """
    In-memory device reader.

    - values[device_id][point]: raw value returned for a data point
    - max_batch[device_id]: batches larger than this time out
    - answered_before_timeout[device_id]: leading points of a timed-out batch that still answered
    - offline: device ids failing the connectivity check
    - single_timeouts[device_id]: points whose single reads time out
    - batch_side_effects[device_id]: consumed per batch call; an Exception is raised, a dict returned
    """

    def __init__(self):
        self.values: dict[str, dict[str, Any]] = {}
        self.max_batch: dict[str, int] = {}
        self.answered_before_timeout: dict[str, int] = {}
        self.offline: set[str] = set()
        self.single_timeouts: dict[str, set[str]] = {}
        self.batch_side_effects: dict[str, list] = {}

        self.batch_calls: list[tuple[str, list[str]]] = []
        self.single_calls: list[tuple[str, str]] = []
        self.connectivity_calls: list[str] = []
        self.closed = False

    async def check_connectivity(self, device: MeterDeviceSchema, timeout_sec: float) -> bool:
        self.connectivity_calls.append(device.device_id)
        return device.device_id not in self.offline

    async def read_property_multiple(
        self, device: MeterDeviceSchema, registers: list[str], timeout_sec: float
    ) -> dict[str, Any]:
        device_id = device.device_id
        self.batch_calls.append((device_id, list(registers)))

        side_effects = self.batch_side_effects.get(device_id)
        if side_effects:
            effect = side_effects.pop(0)
            if isinstance(effect, Exception):
                raise effect
            if isinstance(effect, dict):
                return effect

        values = self.values.get(device_id, {})
        limit = self.max_batch.get(device_id)
        if limit is not None and len(registers) > limit:
            answered = registers[: self.answered_before_timeout.get(device_id, 0)]
            raise BatchReadTimeoutError(
                f"{device_id}: batch timed out", device_id, {n: values[n] for n in answered if n in values}
            )
        return {n: values[n] for n in registers if n in values}

    async def read_property(self, device: MeterDeviceSchema, register: str, timeout_sec: float) -> Any:
        self.single_calls.append((device.device_id, register))
        if register in self.single_timeouts.get(device.device_id, set()):
            raise DeviceTimeoutError(f"{device.device_id}.{register} timed out", device.device_id)
        return self.values.get(device.device_id, {}).get(register)

    async def close(self) -> None:
        self.closed = True


def build_device(device_id: str = "MTR-1", points: int = 4, **kwargs) -> MeterDeviceSchema:
    return MeterDeviceSchema(
        device_id=device_id,
        host="127.0.0.1",
        registers=[
            RegisterSchema(data_point=f"p{i}", address=i * 2, format="f32", unit="kWh") for i in range(points)
        ],
        **kwargs,
    )


def build_readings(count: int, device_id: str = "MTR-1", start: datetime = BASE_TS) -> list[PendingReading]:
    return [
        PendingReading(
            device_id=device_id,
            data_point=f"p{i}",
            value=float(i),
            unit="kWh",
            timestamp=start + timedelta(minutes=i),
        )
        for i in range(count)
    ]


@pytest.fixture
def scripted_reader():
    return ScriptedReader()


@pytest.fixture
def device_factory():
    return build_device


@pytest.fixture
def readings_factory():
    return build_readings


@pytest_asyncio.fixture
async def reading_queue(tmp_path):
    """ReadingQueue on a fresh SQLite file."""
    db_manager = SQLiteQueueDBManager(str(tmp_path / "queue" / "readings.db"))
    queue = ReadingQueue(db_manager)
    await queue.init()
    yield queue
    await db_manager.close_engine()
