"""
Per-device read orchestration for one collection cycle.

    CONNECTIVITY_CHECK -> BATCH_READ -> (SUCCESS | TIMEOUT_RETRY_SMALLER | SEQUENTIAL_FALLBACK) -> DONE

Every requested data point ends the cycle with exactly one outcome (a value
or an error). Read failures are data in the result; only programming errors
escape `collect_device`.
"""

import logging
import time

from meter_sync.device.bacnet.batch_size_manager import BatchSizeManager
from meter_sync.device.bacnet.read_result import ReadErr, ReadOk, normalize_read_value
from meter_sync.device.bacnet.reader_base import DataPointReader
from meter_sync.exception import DeviceConnectionError, DeviceError, DeviceTimeoutError
from meter_sync.model.collection_result import CollectionResult, RegisterOutcome, TimeoutEvent
from meter_sync.model.enum.read_enum import ReadErrorCode, RecoveryMethod
from meter_sync.schema.sync_config_schema import BacnetCollectionConfig, MeterDeviceSchema
from meter_sync.util.logging_noise import RateLimitFilter

logger = logging.getLogger("BacnetReadCoordinator")
logger.addFilter(RateLimitFilter(period_sec=30.0))

OFFLINE_ERROR = "device offline"


class BacnetReadCoordinator:
    def __init__(
        self,
        reader: DataPointReader,
        batch_size_manager: BatchSizeManager,
        config: BacnetCollectionConfig,
    ):
        self.reader = reader
        self.batch_sizes = batch_size_manager
        self.config = config

    async def collect_device(
        self,
        device: MeterDeviceSchema,
        registers: list[str] | None = None,
        config: BacnetCollectionConfig | None = None,
    ) -> CollectionResult:
        """
        Read `registers` (default: every data point configured on the device).

        `config` overrides the coordinator-wide settings for this call only.
        """
        cfg = config or self.config
        requested = list(dict.fromkeys(registers if registers is not None else [r.data_point for r in device.registers]))
        result = CollectionResult(device_id=device.device_id)
        outcomes: dict[str, RegisterOutcome] = {}

        if not requested:
            return result

        try:
            if cfg.enable_connectivity_check and not await self._is_reachable(device, cfg):
                logger.warning(f"[Read] {device.device_id}: connectivity check failed, marking offline for this cycle")
                for name in requested:
                    outcomes[name] = RegisterOutcome(name, error=OFFLINE_ERROR, error_code=ReadErrorCode.DEVICE_OFFLINE)
                result.device_offline = True
                result.timeout_events.append(
                    TimeoutEvent(
                        device_id=device.device_id,
                        register_count=len(requested),
                        batch_size=0,
                        timeout_ms=cfg.connectivity_check_timeout_ms,
                        recovery_method=RecoveryMethod.OFFLINE,
                        success=False,
                    )
                )
                return self._finalize(result, requested, outcomes)

            await self._read_batched(device, requested, outcomes, result, cfg)

        except DeviceError as e:
            self._fail_unanswered(requested, outcomes, ReadErrorCode.DEVICE_ERROR, str(e) or type(e).__name__)
            logger.warning(f"[Read] {device.device_id}: device error, {len(outcomes)} data points settled: {e}")
        except Exception as e:
            self._fail_unanswered(requested, outcomes, ReadErrorCode.DEVICE_ERROR, f"{type(e).__name__}: {e}")
            logger.warning(f"[Read] {device.device_id}: unexpected read failure: {type(e).__name__}: {e}")

        return self._finalize(result, requested, outcomes)

    # ------------------------------------------------------------------
    # Batch loop
    # ------------------------------------------------------------------
    async def _read_batched(
        self,
        device: MeterDeviceSchema,
        requested: list[str],
        outcomes: dict[str, RegisterOutcome],
        result: CollectionResult,
        cfg: BacnetCollectionConfig,
    ) -> None:
        device_id = device.device_id
        total = len(requested)
        remaining = list(requested)
        batch_timeout_sec = cfg.batch_read_timeout_ms / 1000.0
        pending_reductions: list[tuple[TimeoutEvent, float]] = []

        while remaining:
            if cfg.adaptive_batch_sizing:
                size = self.batch_sizes.get_batch_size(device_id, total)
            else:
                size = len(remaining)
            batch = remaining[:size]
            started = time.monotonic()

            try:
                values = await self.reader.read_property_multiple(device, batch, batch_timeout_sec)

            except (DeviceTimeoutError, TimeoutError) as e:
                partial = getattr(e, "partial_values", None) or {}
                for name in batch:
                    if name in partial:
                        outcomes[name] = self._to_outcome(name, partial[name])

                unanswered = [n for n in batch if n not in outcomes]
                rest = unanswered + remaining[size:]
                at_minimum = (
                    not cfg.adaptive_batch_sizing or size <= 1 or self.batch_sizes.is_at_minimum(device_id)
                )
                if cfg.adaptive_batch_sizing:
                    self.batch_sizes.on_timeout(device_id)

                logger.info(
                    f"[Read] {device_id}: batch of {len(batch)} timed out "
                    f"({len(batch) - len(unanswered)} answered, {len(rest)} left)"
                )

                if not at_minimum:
                    event = TimeoutEvent(
                        device_id=device_id,
                        register_count=len(rest),
                        batch_size=len(batch),
                        timeout_ms=cfg.batch_read_timeout_ms,
                        recovery_method=RecoveryMethod.REDUCED_BATCH,
                        success=False,
                    )
                    result.timeout_events.append(event)
                    pending_reductions.append((event, started))
                    remaining = rest
                    continue

                if cfg.enable_sequential_fallback:
                    event = TimeoutEvent(
                        device_id=device_id,
                        register_count=len(rest),
                        batch_size=len(batch),
                        timeout_ms=cfg.batch_read_timeout_ms,
                        recovery_method=RecoveryMethod.SEQUENTIAL,
                        success=False,
                    )
                    result.timeout_events.append(event)
                    result.used_sequential_fallback = True
                    succeeded = await self._read_sequential(device, rest, outcomes, cfg)
                    event.success = succeeded > 0
                    event.recovery_ms = (time.monotonic() - started) * 1000.0
                    logger.info(f"[Read] {device_id}: sequential fallback recovered {succeeded}/{len(rest)}")
                else:
                    for name in rest:
                        outcomes[name] = RegisterOutcome(
                            name, error="read timed out", error_code=ReadErrorCode.TIMEOUT
                        )
                return

            for name in batch:
                if name in values:
                    outcomes[name] = self._to_outcome(name, values[name])
                else:
                    outcomes[name] = RegisterOutcome(
                        name, error="not present in device response", error_code=ReadErrorCode.MISSING
                    )

            if cfg.adaptive_batch_sizing:
                self.batch_sizes.on_success(device_id)

            for event, timed_out_at in pending_reductions:
                event.success = True
                event.recovery_ms = (time.monotonic() - timed_out_at) * 1000.0
            pending_reductions.clear()

            remaining = remaining[size:]

    async def _read_sequential(
        self,
        device: MeterDeviceSchema,
        names: list[str],
        outcomes: dict[str, RegisterOutcome],
        cfg: BacnetCollectionConfig,
    ) -> int:
        timeout_sec = cfg.sequential_read_timeout_ms / 1000.0
        succeeded = 0

        for name in names:
            try:
                raw = await self.reader.read_property(device, name, timeout_sec)
            except (DeviceTimeoutError, TimeoutError):
                outcomes[name] = RegisterOutcome(name, error="read timed out", error_code=ReadErrorCode.TIMEOUT)
                continue
            except DeviceConnectionError as e:
                outcomes[name] = RegisterOutcome(name, error=str(e) or "read failed", error_code=ReadErrorCode.READ_FAILED)
                continue

            outcome = self._to_outcome(name, raw)
            outcomes[name] = outcome
            if outcome.ok:
                succeeded += 1

        return succeeded

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _is_reachable(self, device: MeterDeviceSchema, cfg: BacnetCollectionConfig) -> bool:
        try:
            return bool(await self.reader.check_connectivity(device, cfg.connectivity_check_timeout_ms / 1000.0))
        except Exception as e:
            logger.debug(f"[Read] {device.device_id}: connectivity probe raised {type(e).__name__}: {e}")
            return False

    @staticmethod
    def _to_outcome(name: str, raw) -> RegisterOutcome:
        match normalize_read_value(raw):
            case ReadOk(value=value):
                return RegisterOutcome(name, value=value)
            case ReadErr(code=code, reason=reason):
                return RegisterOutcome(name, error=reason, error_code=code)
            case other:
                raise TypeError(f"unexpected read result for {name}: {other!r}")

    @staticmethod
    def _fail_unanswered(
        requested: list[str], outcomes: dict[str, RegisterOutcome], code: ReadErrorCode, message: str
    ) -> None:
        for name in requested:
            if name not in outcomes:
                outcomes[name] = RegisterOutcome(name, error=message, error_code=code)

    @staticmethod
    def _finalize(
        result: CollectionResult, requested: list[str], outcomes: dict[str, RegisterOutcome]
    ) -> CollectionResult:
        result.outcomes = [
            outcomes.get(name) or RegisterOutcome(name, error="not read", error_code=ReadErrorCode.MISSING)
            for name in requested
        ]
        return result
