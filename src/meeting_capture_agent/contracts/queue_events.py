"""
Контракты payload задач очередей (Pydantic).

Важно:
- payload всегда JSON, ключи camelCase (как их ставят внешние продюсеры)
- варианты различаются полем kind; валидация — в момент enqueue
- schemaVersion обязателен для эволюции контрактов
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from meeting_capture_agent.domain.enums import Platform

from .versions import QUEUE_SCHEMA_VERSION


class _QueuePayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    schema_version: Literal["v1"] = QUEUE_SCHEMA_VERSION
    organization_id: str = Field(min_length=1)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CapturePayload(_QueuePayload):
    kind: Literal["capture"] = "capture"
    session_id: str = Field(min_length=1)
    target_url: str = Field(min_length=1)
    platform: Platform
    credentials_ref: str | None = None


class TranscodePayload(_QueuePayload):
    kind: Literal["transcode"] = "transcode"
    artifact_id: str = Field(min_length=1)
    raw_storage_key: str = Field(min_length=1)
    output_format: str = "webm"


JobPayload = Annotated[CapturePayload | TranscodePayload, Field(discriminator="kind")]

_JOB_PAYLOAD_ADAPTER: TypeAdapter[CapturePayload | TranscodePayload] = TypeAdapter(JobPayload)


def parse_job_payload(data: dict[str, Any]) -> CapturePayload | TranscodePayload:
    """
    Разбор payload по полю kind. Бросает pydantic.ValidationError.
    """
    return _JOB_PAYLOAD_ADAPTER.validate_python(data)
