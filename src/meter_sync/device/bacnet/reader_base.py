from abc import ABC, abstractmethod
from typing import Any

from meter_sync.schema.sync_config_schema import MeterDeviceSchema


class DataPointReader(ABC):
    """
    Device read primitive used by the read coordinator.

    Implementations must honour the given timeouts and report failures with
    the device exceptions from `meter_sync.exception`:
        - BatchReadTimeoutError (with the values that did arrive) for a multi-point timeout
        - DeviceTimeoutError for a single-point timeout
        - DeviceConnectionError when the device cannot be reached at all

    Returned values are raw; callers normalize them.
    """

    @abstractmethod
    async def read_property(self, device: MeterDeviceSchema, register: str, timeout_sec: float) -> Any: ...

    @abstractmethod
    async def read_property_multiple(
        self, device: MeterDeviceSchema, registers: list[str], timeout_sec: float
    ) -> dict[str, Any]: ...

    async def check_connectivity(self, device: MeterDeviceSchema, timeout_sec: float) -> bool:
        """Cheap probe: one read of the first configured data point."""
        if not device.registers:
            return False
        try:
            value = await self.read_property(device, device.registers[0].data_point, timeout_sec)
        except Exception:
            return False
        return value is not None

    async def close(self) -> None:
        return None
