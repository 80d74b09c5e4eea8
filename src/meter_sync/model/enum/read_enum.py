from enum import StrEnum


class ReadErrorCode(StrEnum):
    """Why a single data point has no value in a collection result."""

    DEVICE_OFFLINE = "device_offline"
    TIMEOUT = "timeout"
    READ_FAILED = "read_failed"
    INVALID_VALUE = "invalid_value"
    MISSING = "missing"
    DEVICE_ERROR = "device_error"


class RecoveryMethod(StrEnum):
    REDUCED_BATCH = "reduced_batch"
    SEQUENTIAL = "sequential"
    OFFLINE = "offline"
