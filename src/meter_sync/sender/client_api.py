import logging
from datetime import datetime

import httpx
from pydantic import ValidationError

from meter_sync.exception import RemoteUnavailableError
from meter_sync.model.reading import PendingReading
from meter_sync.model.upload_result import BatchUploadResult, RowError
from meter_sync.schema.client_api_schema import (
    BatchUploadRequest,
    BatchUploadResponse,
    ReadingPayload,
    UploadErrorItem,
)
from meter_sync.schema.sync_config_schema import ClientApiConfig
from meter_sync.util.time_util import ensure_utc

logger = logging.getLogger("ClientSystemApi")

# Statuses that judge the readings themselves; anything else non-2xx means the remote is not usable right now
ROW_REJECTION_STATUSES = {400, 409, 413, 422}

# A response body must carry at least one of these to count as an upload result
RESULT_KEYS = {"success", "insertedCount", "errors"}


def build_http_client(config: ClientApiConfig) -> httpx.AsyncClient:
    timeout = httpx.Timeout(
        connect=config.connect_timeout_sec,
        read=config.read_timeout_sec,
        write=config.read_timeout_sec,
        pool=config.connect_timeout_sec,
    )
    return httpx.AsyncClient(base_url=config.base_url, timeout=timeout)


class ClientSystemApiClient:
    """
    Batch upload client for the Client System readings endpoint.

    `upload_batch` either returns which rows were accepted and rejected, or
    raises RemoteUnavailableError for connectivity-class failures (network,
    timeouts, auth, throttling, server errors, 2xx without a readable result).
    It never retries by itself.
    """

    def __init__(self, config: ClientApiConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client or build_http_client(config)
        self._headers = {"X-API-Key": config.api_key} if config.api_key else {}

    async def upload_batch(self, readings: list[PendingReading]) -> BatchUploadResult:
        if not readings:
            return BatchUploadResult()

        request = BatchUploadRequest(
            readings=[
                ReadingPayload(
                    device_id=r.device_id,
                    timestamp=ensure_utc(r.timestamp),
                    data_point=r.data_point,
                    value=r.value,
                    unit=r.unit,
                )
                for r in readings
            ]
        )
        payload = request.model_dump(mode="json", by_alias=True, exclude_none=True)

        try:
            resp = await self._client.post(self.config.upload_path, json=payload, headers=self._headers)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise RemoteUnavailableError(f"upload failed: {type(e).__name__}: {e}") from e

        status = resp.status_code
        if 200 <= status < 300:
            body = self._parse_body(resp)
            if body is None:
                # Only a readable upload result confirms rows
                snippet = (resp.text or "")[:120]
                raise RemoteUnavailableError(
                    f"upload failed: HTTP {status} without a readable result: {snippet!r}", status_code=status
                )
            return self._map_response(readings, body, status)

        if status in ROW_REJECTION_STATUSES:
            body = self._parse_body(resp)
            if body is not None and body.errors:
                return self._map_response(readings, body, status)
            message = (resp.text or "")[:200]
            logger.warning(f"[Upload] HTTP {status}, rejecting all {len(readings)} rows: {message}")
            return BatchUploadResult(rejected=[RowError(r.id, f"HTTP_{status}", message) for r in readings])

        raise RemoteUnavailableError(f"upload failed: HTTP {status}", status_code=status)

    async def check_health(self) -> bool:
        try:
            resp = await self._client.get(self.config.health_path, headers=self._headers)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.debug(f"[Health] probe failed: {type(e).__name__}: {e}")
            return False
        return 200 <= resp.status_code < 300

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------

    @staticmethod
    def _parse_body(resp: httpx.Response) -> BatchUploadResponse | None:
        try:
            data = resp.json()
        except ValueError:
            return None
        if not isinstance(data, dict) or not RESULT_KEYS & data.keys():
            return None
        try:
            return BatchUploadResponse.model_validate(data)
        except ValidationError:
            return None

    @staticmethod
    def _map_response(readings: list[PendingReading], body: BatchUploadResponse, status: int) -> BatchUploadResult:
        if not body.success and not body.errors:
            return BatchUploadResult(
                rejected=[RowError(r.id, "REJECTED", "remote reported failure") for r in readings],
                inserted_count=body.inserted_count,
                skipped_count=body.skipped_count,
            )

        rejected: dict[int, RowError] = {}
        unmatched: list[UploadErrorItem] = []
        for err in body.errors:
            matched = _match_error_rows(readings, err)
            if not matched:
                unmatched.append(err)
            for reading in matched:
                rejected.setdefault(reading.id, RowError(reading.id, err.code, err.message))

        if unmatched:
            # Unattributable errors keep the whole batch queued
            logger.warning(
                f"[Upload] HTTP {status}: {len(unmatched)} error(s) not attributable to rows, "
                f"keeping whole batch of {len(readings)}: {unmatched[0].code} {unmatched[0].message}"
            )
            for r in readings:
                rejected.setdefault(r.id, RowError(r.id, unmatched[0].code, unmatched[0].message))

        return BatchUploadResult(
            accepted_ids=[r.id for r in readings if r.id not in rejected],
            rejected=list(rejected.values()),
            inserted_count=body.inserted_count,
            skipped_count=body.skipped_count,
        )


def _match_error_rows(readings: list[PendingReading], err: UploadErrorItem) -> list[PendingReading]:
    if err.index is not None:
        if 0 <= err.index < len(readings):
            return [readings[err.index]]
        return []

    if err.device_id is None:
        return []

    err_ts: datetime | None = ensure_utc(err.timestamp) if err.timestamp else None
    return [
        r
        for r in readings
        if r.device_id == err.device_id
        and (err.data_point is None or r.data_point == err.data_point)
        and (err_ts is None or ensure_utc(r.timestamp) == err_ts)
    ]
