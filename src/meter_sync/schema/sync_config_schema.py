from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from meter_sync.model.enum.decode_format import DecodeFormat
from meter_sync.model.enum.register_type_enum import RegisterType


# ---------- Devices ----------
class RegisterSchema(BaseModel):
    """One readable data point of a meter."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    data_point: str = Field(..., min_length=1, description="Data point name sent upstream (e.g. 'energy_kwh')")
    address: int = Field(..., ge=0, le=65535, description="Register offset")
    register_type: RegisterType = Field(default=RegisterType.HOLDING)
    format: DecodeFormat = Field(default=DecodeFormat.U16)
    scale: float = Field(default=1.0, description="Multiplier applied after decoding")
    unit: str | None = Field(default=None, description="Engineering unit, forwarded as-is")

    @field_validator("format", mode="before")
    @classmethod
    def _parse_format(cls, v):
        parsed = DecodeFormat.from_string(v) if isinstance(v, str) else v
        if parsed is None:
            raise ValueError(f"unsupported register format: {v}")
        return parsed


class MeterDeviceSchema(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", coerce_numbers_to_str=True)

    device_id: str = Field(..., min_length=1, description="External meter id used by the Client System")
    name: str | None = None
    host: str = Field(..., description="Meter (or gateway) IP address / hostname")
    port: int = Field(default=502, ge=1, le=65535)
    unit_id: int = Field(default=1, ge=0, le=255, description="Modbus unit / BACnet instance routed by the gateway")
    enabled: bool = True
    registers: list[RegisterSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_data_points(self):
        seen: set[str] = set()
        for reg in self.registers:
            if reg.data_point in seen:
                raise ValueError(f"duplicate data_point '{reg.data_point}' on device {self.device_id}")
            seen.add(reg.data_point)
        return self


# ---------- Sub-config ----------
class BacnetCollectionConfig(BaseModel):
    """Per-device read resilience and collection cadence."""

    model_config = ConfigDict(extra="ignore")

    batch_read_timeout_ms: int = Field(default=5000, gt=0, description="Timeout of one multi-point read")
    sequential_read_timeout_ms: int = Field(default=3000, gt=0, description="Timeout of one single-point read")
    connectivity_check_timeout_ms: int = Field(default=2000, gt=0, description="Timeout of the pre-cycle probe")
    enable_connectivity_check: bool = True
    enable_sequential_fallback: bool = True
    adaptive_batch_sizing: bool = True

    min_batch_size: int = Field(default=1, ge=1)
    initial_batch_size: int | Literal["all"] = Field(default="all", description="'all' or a positive integer")
    reduction_factor: float = Field(default=0.5, gt=0.0, lt=1.0, description="Batch shrink factor on timeout")
    growth_threshold: int = Field(
        default=3, ge=0, description="Consecutive successful batches before the size doubles (0 disables growth)"
    )

    collection_interval_sec: float = Field(default=60.0, gt=0)
    read_concurrency: int = Field(default=4, ge=1, description="Devices read in parallel within one cycle")
    slow_device_timeout_threshold: int = Field(default=3, ge=1)

    @field_validator("initial_batch_size")
    @classmethod
    def _positive_initial(cls, v):
        if isinstance(v, int) and v < 1:
            raise ValueError("initial_batch_size must be >= 1 or 'all'")
        return v


class UploadConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    upload_interval_ms: int = Field(default=300_000, gt=0, description="Scheduled upload period")
    upload_batch_size: int = Field(default=1000, ge=1, le=1000, description="Readings per remote call")
    retry_base_ms: int = Field(default=120_000, gt=0, description="Backoff delay after the first failure")
    retry_ceiling_ms: int = Field(default=28_800_000, gt=0, description="Backoff never exceeds this")

    @model_validator(mode="after")
    def _ceiling_not_below_base(self):
        if self.retry_ceiling_ms < self.retry_base_ms:
            raise ValueError("retry_ceiling_ms must be >= retry_base_ms")
        return self


class ConnectivityConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    connectivity_poll_ms: int = Field(default=60_000, gt=0)


class ClientApiConfig(BaseModel):
    # Keys resolved from the environment may arrive as numbers
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", coerce_numbers_to_str=True)

    base_url: str = Field(..., description="Client System base URL (HTTP/HTTPS)")
    api_key: str = Field(default="", description="Sent as X-API-Key")
    upload_path: str = "/api/readings/batch"
    health_path: str = "/api/health"
    connect_timeout_sec: float = Field(default=5.0, gt=0)
    read_timeout_sec: float = Field(default=30.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class StorageConfig(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    db_path: str = Field(default="data/meter_sync.db")
    echo_sql: bool = False


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: str = "INFO"
    log_to_file: bool = False
    log_dir: str = "logs"
    backup_count: int = Field(default=7, ge=0)


class ApiConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = Field(default=8765, ge=1, le=65535)


# ---------- Main config ----------
class SyncConfig(BaseModel):
    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra="ignore",
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    site_id: str = Field(default="site", description="Label used in logs and status output")
    bacnet: BacnetCollectionConfig = Field(default_factory=BacnetCollectionConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    client_api: ClientApiConfig
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    devices: list[MeterDeviceSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_device_ids(self):
        ids = [d.device_id for d in self.devices]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"duplicate device_id: {sorted(duplicates)}")
        return self

    @property
    def enabled_devices(self) -> list[MeterDeviceSchema]:
        return [d for d in self.devices if d.enabled]
