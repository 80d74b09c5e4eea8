import math
from dataclasses import dataclass
from typing import Any

from meter_sync.model.enum.read_enum import ReadErrorCode


@dataclass(frozen=True)
class ReadOk:
    value: float


@dataclass(frozen=True)
class ReadErr:
    code: ReadErrorCode
    reason: str


ReadResult = ReadOk | ReadErr

_MAX_UNWRAP_DEPTH = 4


def normalize_read_value(raw: Any) -> ReadResult:
    """
    Turn whatever a device read primitive returned into a finite float or an error.

    Accepted shapes (as seen from real gateways):
        12.5                        -> 12.5
        True / False                -> 1.0 / 0.0
        "12.5"                      -> 12.5
        {"value": 12.5}             -> 12.5
        [{"value": 12.5}]           -> 12.5
        {"values": [{"value": 1}]}  -> 1.0
    """
    return _normalize(raw, depth=0)


def _normalize(raw: Any, depth: int) -> ReadResult:
    if raw is None:
        return ReadErr(ReadErrorCode.MISSING, "no value returned")

    if depth > _MAX_UNWRAP_DEPTH:
        return ReadErr(ReadErrorCode.INVALID_VALUE, "value nested too deeply")

    if isinstance(raw, bool):
        return ReadOk(1.0 if raw else 0.0)

    if isinstance(raw, (int, float)):
        value = float(raw)
        if not math.isfinite(value):
            return ReadErr(ReadErrorCode.INVALID_VALUE, f"non-finite value: {raw}")
        return ReadOk(value)

    if isinstance(raw, str):
        try:
            return _normalize(float(raw.strip()), depth + 1)
        except ValueError:
            return ReadErr(ReadErrorCode.INVALID_VALUE, f"non-numeric value: {raw!r}")

    if isinstance(raw, dict):
        if "value" in raw:
            return _normalize(raw["value"], depth + 1)
        if "values" in raw:
            return _normalize(raw["values"], depth + 1)
        if "error" in raw:
            return ReadErr(ReadErrorCode.READ_FAILED, str(raw["error"]))
        return ReadErr(ReadErrorCode.INVALID_VALUE, f"unrecognized value shape: keys={sorted(raw)}")

    if isinstance(raw, (list, tuple)):
        if not raw:
            return ReadErr(ReadErrorCode.MISSING, "empty value list")
        return _normalize(raw[0], depth + 1)

    return ReadErr(ReadErrorCode.INVALID_VALUE, f"unsupported value type: {type(raw).__name__}")
