"""
ORM-модели базы данных.

Назначение:
- Session (субъект захвата) и Artifact (субъект перекодирования)
- Destination: куда отправлять события/чанки (только чтение для fan-out)
- DeliveryAttempt: append-only журнал попыток доставки
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from meeting_capture_agent.common.time import utc_now
from meeting_capture_agent.domain.enums import (
    ArtifactStatus,
    DestinationTransport,
    SessionStatus,
    StreamFormat,
)


def _now() -> datetime:
    return utc_now().replace(tzinfo=None)


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


# =============================================================================
# SESSION
# =============================================================================
class CaptureSession(Base):
    """
    Сессия захвата: создаётся вызывающей стороной до постановки задачи,
    меняется только capture state machine.
    """

    __tablename__ = "capture_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)

    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus), default=SessionStatus.pending, nullable=False
    )

    scheduled_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    scheduled_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_now, onupdate=_now, nullable=False
    )


# =============================================================================
# ARTIFACT
# =============================================================================
class Artifact(Base):
    """
    Результат захвата. Не более одного на Session (unique session_id).
    """

    __tablename__ = "artifacts"
    __table_args__ = (UniqueConstraint("session_id", name="uq_artifacts_session_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("capture_sessions.id"), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    byte_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_sec: Mapped[float | None] = mapped_column(nullable=True)
    format: Mapped[str] = mapped_column(String(16), default="webm", nullable=False)
    capture_log_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[ArtifactStatus] = mapped_column(
        Enum(ArtifactStatus), default=ArtifactStatus.raw, nullable=False
    )
    encoded_storage_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    encoded_byte_size: Mapped[int | None] = mapped_column(Integer, nullable=True)

    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_now, onupdate=_now, nullable=False
    )


# =============================================================================
# DESTINATION
# =============================================================================
class Destination(Base):
    """
    Получатель событий: session_id=None — дефолт организации.
    events — подписка (только для callback).
    """

    __tablename__ = "destinations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    transport: Mapped[DestinationTransport] = mapped_column(
        Enum(DestinationTransport), nullable=False
    )
    stream_format: Mapped[StreamFormat] = mapped_column(
        Enum(StreamFormat), default=StreamFormat.media_chunk, nullable=False
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str | None] = mapped_column(String(256), nullable=True)
    events: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    headers: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    retry_budget: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    timeout_ms: Mapped[int] = mapped_column(Integer, default=10_000, nullable=False)
    chunk_interval_ms: Mapped[int] = mapped_column(Integer, default=5_000, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)


# =============================================================================
# DELIVERY ATTEMPTS
# =============================================================================
class DeliveryAttempt(Base):
    """
    Одна попытка доставки события. После записи не меняется.
    """

    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint(
            "destination_id", "event_id", "attempt", name="uq_delivery_attempts_dest_event_try"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    destination_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    event_id: Mapped[str] = mapped_column(String(96), index=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)

    success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    terminal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)
