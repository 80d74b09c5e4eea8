from enum import StrEnum


class RetryPhase(StrEnum):
    HEALTHY = "healthy"
    BACKING_OFF = "backing_off"


class RetryEvent(StrEnum):
    CONNECTIVITY_FAILURE = "connectivity_failure"
    UPLOAD_SUCCEEDED = "upload_succeeded"
    RECONNECTED = "reconnected"


class UploadCycleOutcome(StrEnum):
    EMPTY = "empty"
    COMPLETED = "completed"
    CONNECTIVITY_FAILED = "connectivity_failed"
    STORE_FAILED = "store_failed"
    SKIPPED = "skipped"
    ERROR = "error"
