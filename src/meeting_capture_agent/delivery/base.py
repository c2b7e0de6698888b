"""
Базовые типы доставки.

Назначение:
- Единый результат попытки для всех транспортов (callback/stream_http/socket/storage)
- Снимок Destination (без ORM), безопасный для фоновых потоков
- Чанк стрима и его JSON-представление
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from meeting_capture_agent.common.utils import b64_encode
from meeting_capture_agent.domain.enums import DestinationTransport, StreamFormat


@dataclass
class DeliveryResult:
    """
    Результат одной попытки доставки.
    """

    ok: bool
    transport: str
    destination_id: str
    status_code: int | None = None
    error: str | None = None
    duration_ms: int | None = None
    meta: dict[str, Any] | None = None


@dataclass(frozen=True)
class DestinationSpec:
    id: str
    organization_id: str
    transport: DestinationTransport
    url: str
    session_id: str | None = None
    stream_format: StreamFormat = StreamFormat.media_chunk
    secret: str | None = None
    events: tuple[str, ...] = ()
    headers: dict[str, str] = field(default_factory=dict)
    retry_budget: int = 3
    timeout_ms: int = 10_000
    chunk_interval_ms: int = 5_000

    @property
    def timeout_sec(self) -> float:
        return max(0.001, self.timeout_ms / 1000.0)

    @classmethod
    def from_model(cls, d: Any) -> DestinationSpec:
        return cls(
            id=d.id,
            organization_id=d.organization_id,
            transport=DestinationTransport(d.transport),
            url=d.url,
            session_id=d.session_id,
            stream_format=StreamFormat(d.stream_format or StreamFormat.media_chunk),
            secret=d.secret,
            events=tuple(str(e) for e in (d.events or [])),
            headers={str(k): str(v) for k, v in (d.headers or {}).items()},
            retry_budget=int(d.retry_budget or 1),
            timeout_ms=int(d.timeout_ms or 10_000),
            chunk_interval_ms=int(d.chunk_interval_ms or 5_000),
        )


@dataclass
class StreamChunk:
    session_id: str
    organization_id: str
    chunk_index: int
    timestamp: str
    data: bytes | str
    format: StreamFormat = StreamFormat.media_chunk
    metadata: dict[str, Any] | None = None

    @property
    def size(self) -> int:
        if isinstance(self.data, bytes):
            return len(self.data)
        return len(self.data.encode("utf-8"))

    def to_body(self) -> dict[str, Any]:
        binary = isinstance(self.data, bytes)
        return {
            "sessionId": self.session_id,
            "organizationId": self.organization_id,
            "chunkIndex": self.chunk_index,
            "timestamp": self.timestamp,
            "format": StreamFormat(self.format).value,
            "data": b64_encode(self.data) if binary else self.data,
            "encoding": "base64" if binary else "utf-8",
            "metadata": self.metadata,
        }
