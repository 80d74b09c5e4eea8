from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ReadingPayload(_CamelModel):
    device_id: str
    timestamp: datetime
    data_point: str
    value: float
    unit: str | None = None


class BatchUploadRequest(_CamelModel):
    readings: list[ReadingPayload]


class UploadErrorItem(_CamelModel):
    """
    One rejected reading. The Client System identifies it either by its
    position in the request or by deviceId + dataPoint (+ timestamp).
    """

    index: int | None = None
    device_id: str | None = None
    data_point: str | None = None
    timestamp: datetime | None = None
    code: str = Field(default="REJECTED", validation_alias=AliasChoices("code", "errorCode"))
    message: str = Field(default="", validation_alias=AliasChoices("message", "error"))


class BatchUploadResponse(_CamelModel):
    success: bool = True
    inserted_count: int = 0
    skipped_count: int = 0
    errors: list[UploadErrorItem] = Field(default_factory=list)
