"""Meter Sync Exception Definitions"""

from typing import Any


class MeterSyncError(Exception):
    """Base exception for the meter sync agent"""

    pass


class ConfigError(MeterSyncError):
    """Invalid or missing configuration"""

    pass


class DeviceError(MeterSyncError):
    """Base class for device-related exceptions"""

    def __init__(self, message: str, device_id: str | None = None):
        super().__init__(message)
        self.device_id = device_id


class DeviceConnectionError(DeviceError):
    """Device unreachable (connection refused, protocol error, closed socket)"""

    pass


class DeviceTimeoutError(DeviceError):
    """Single data point read did not answer within its timeout"""

    pass


class BatchReadTimeoutError(DeviceTimeoutError):
    """
    A multi-point read timed out.

    `partial_values` holds the data points that answered before the deadline,
    keyed by data point name. They are still valid readings.
    """

    def __init__(self, message: str, device_id: str | None = None, partial_values: dict[str, Any] | None = None):
        super().__init__(message, device_id)
        self.partial_values: dict[str, Any] = dict(partial_values or {})


class RemoteApiError(MeterSyncError):
    """Base class for Client System API failures"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteUnavailableError(RemoteApiError):
    """Connectivity-class failure: network error, timeout, auth rejection, server error"""

    pass


class QueueStoreError(MeterSyncError):
    """Local reading queue could not complete an operation"""

    pass
