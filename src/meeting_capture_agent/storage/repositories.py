"""
Репозитории (DAO слой).

Правила:
- Никакой бизнес-логики (переходы статусов решает domain/state_machine)
- Только create/update/find by id и запросы, нужные ядру
- RecordStore сам открывает короткие транзакции: воркеры не держат
  сессию БД на всё время захвата
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from meeting_capture_agent.common.errors import NotFoundError
from meeting_capture_agent.common.ids import new_uuid
from meeting_capture_agent.domain.enums import STREAM_TRANSPORTS, DestinationTransport

from .db import get_session_factory, session_scope
from .models import Artifact, CaptureSession, DeliveryAttempt, Destination


# =============================================================================
# РЕПОЗИТОРИИ НА СЕССИИ
# =============================================================================
class SessionRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, session_id: str) -> CaptureSession | None:
        return self.session.get(CaptureSession, session_id)

    def save(self, obj: CaptureSession) -> None:
        self.session.add(obj)


class ArtifactRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, artifact_id: str) -> Artifact | None:
        return self.session.get(Artifact, artifact_id)

    def find_by_session(self, session_id: str) -> Artifact | None:
        return self.session.scalars(
            select(Artifact).where(Artifact.session_id == session_id)
        ).first()

    def save(self, obj: Artifact) -> None:
        self.session.add(obj)


class DestinationRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, destination_id: str) -> Destination | None:
        return self.session.get(Destination, destination_id)

    def list_active(self, organization_id: str) -> list[Destination]:
        return list(
            self.session.scalars(
                select(Destination)
                .where(Destination.organization_id == organization_id)
                .where(Destination.is_active.is_(True))
                .order_by(Destination.created_at, Destination.id)
            )
        )

    def save(self, obj: Destination) -> None:
        self.session.add(obj)


class DeliveryAttemptRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, obj: DeliveryAttempt) -> None:
        self.session.add(obj)

    def list_for_destination(
        self, destination_id: str, *, limit: int = 50
    ) -> list[DeliveryAttempt]:
        return list(
            self.session.scalars(
                select(DeliveryAttempt)
                .where(DeliveryAttempt.destination_id == destination_id)
                .order_by(DeliveryAttempt.id.desc())
                .limit(limit)
            )
        )

    def list_for_event(self, destination_id: str, event_id: str) -> list[DeliveryAttempt]:
        return list(
            self.session.scalars(
                select(DeliveryAttempt)
                .where(DeliveryAttempt.destination_id == destination_id)
                .where(DeliveryAttempt.event_id == event_id)
                .order_by(DeliveryAttempt.attempt)
            )
        )


@dataclass
class DeliveryStats:
    destinations: int
    active_destinations: int
    total: int
    succeeded: int
    failed: int

    @property
    def success_rate(self) -> float | None:
        if self.total == 0:
            return None
        return round(self.succeeded / self.total * 100, 2)


# =============================================================================
# RECORD STORE (фасад для воркеров и fan-out)
# =============================================================================
class RecordStore:
    """
    Узкий интерфейс к реляционному хранилищу.
    Возвращает detached-объекты (expire_on_commit=False).
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._factory = session_factory

    @contextmanager
    def _tx(self) -> Iterator[Session]:
        with session_scope(self._factory or get_session_factory()) as session:
            yield session

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------
    def get_session(self, session_id: str) -> CaptureSession | None:
        with self._tx() as s:
            return SessionRepository(s).get(session_id)

    def require_session(self, session_id: str) -> CaptureSession:
        obj = self.get_session(session_id)
        if obj is None:
            raise NotFoundError("Session не найдена", details={"session_id": session_id})
        return obj

    def create_session(self, **fields: Any) -> CaptureSession:
        obj = CaptureSession(**fields)
        with self._tx() as s:
            SessionRepository(s).save(obj)
        return obj

    def update_session(
        self, session_id: str, mutate: Callable[[CaptureSession], None]
    ) -> CaptureSession:
        """
        Изменить Session в одной транзакции (mutate видит свежую строку).
        """
        with self._tx() as s:
            repo = SessionRepository(s)
            obj = repo.get(session_id)
            if obj is None:
                raise NotFoundError("Session не найдена", details={"session_id": session_id})
            mutate(obj)
            repo.save(obj)
            s.flush()
            return obj

    # -------------------------------------------------------------------------
    # Artifact
    # -------------------------------------------------------------------------
    def get_artifact(self, artifact_id: str) -> Artifact | None:
        with self._tx() as s:
            return ArtifactRepository(s).get(artifact_id)

    def find_artifact_by_session(self, session_id: str) -> Artifact | None:
        with self._tx() as s:
            return ArtifactRepository(s).find_by_session(session_id)

    def create_or_get_artifact(self, *, session_id: str, **fields: Any) -> tuple[Artifact, bool]:
        """
        Не более одного Artifact на Session: при повторе возвращаем существующий.
        Возвращает (artifact, created).
        """
        existing = self.find_artifact_by_session(session_id)
        if existing is not None:
            return existing, False
        obj = Artifact(id=fields.pop("id", None) or new_uuid(), session_id=session_id, **fields)
        try:
            with self._tx() as s:
                ArtifactRepository(s).save(obj)
        except IntegrityError:
            existing = self.find_artifact_by_session(session_id)
            if existing is None:
                raise
            return existing, False
        return obj, True

    def update_artifact(self, artifact_id: str, mutate: Callable[[Artifact], None]) -> Artifact:
        with self._tx() as s:
            repo = ArtifactRepository(s)
            obj = repo.get(artifact_id)
            if obj is None:
                raise NotFoundError("Artifact не найден", details={"artifact_id": artifact_id})
            mutate(obj)
            repo.save(obj)
            s.flush()
            return obj

    # -------------------------------------------------------------------------
    # Destination
    # -------------------------------------------------------------------------
    def get_destination(self, destination_id: str) -> Destination | None:
        with self._tx() as s:
            return DestinationRepository(s).get(destination_id)

    def add_destination(self, **fields: Any) -> Destination:
        obj = Destination(id=fields.pop("id", None) or new_uuid(), **fields)
        with self._tx() as s:
            DestinationRepository(s).save(obj)
        return obj

    def list_callback_destinations(
        self, organization_id: str, event_type: str
    ) -> list[Destination]:
        """
        Активные callback-получатели организации, подписанные на событие.
        """
        with self._tx() as s:
            rows = DestinationRepository(s).list_active(organization_id)
        return [
            d
            for d in rows
            if d.transport == DestinationTransport.callback and event_type in (d.events or [])
        ]

    def list_stream_destinations(self, organization_id: str, session_id: str) -> list[Destination]:
        """
        Активные stream-получатели: привязанные к сессии + дефолты организации.
        """
        with self._tx() as s:
            rows = list(
                s.scalars(
                    select(Destination)
                    .where(Destination.organization_id == organization_id)
                    .where(Destination.is_active.is_(True))
                    .where(
                        or_(Destination.session_id == session_id, Destination.session_id.is_(None))
                    )
                    .order_by(Destination.created_at, Destination.id)
                )
            )
        return [d for d in rows if d.transport in STREAM_TRANSPORTS]

    # -------------------------------------------------------------------------
    # Delivery attempts
    # -------------------------------------------------------------------------
    def add_delivery_attempt(self, **fields: Any) -> DeliveryAttempt:
        obj = DeliveryAttempt(**fields)
        with self._tx() as s:
            DeliveryAttemptRepository(s).add(obj)
        return obj

    def list_delivery_attempts(
        self, destination_id: str, event_id: str | None = None, *, limit: int = 50
    ) -> list[DeliveryAttempt]:
        with self._tx() as s:
            repo = DeliveryAttemptRepository(s)
            if event_id is not None:
                return repo.list_for_event(destination_id, event_id)
            return repo.list_for_destination(destination_id, limit=limit)

    def delivery_stats(self, organization_id: str) -> DeliveryStats:
        with self._tx() as s:
            dests = list(
                s.scalars(select(Destination).where(Destination.organization_id == organization_id))
            )
            ids = [d.id for d in dests]
            total = succeeded = 0
            if ids:
                base = select(func.count(DeliveryAttempt.id)).where(
                    DeliveryAttempt.destination_id.in_(ids)
                )
                total = int(s.scalar(base) or 0)
                succeeded = int(s.scalar(base.where(DeliveryAttempt.success.is_(True))) or 0)
        return DeliveryStats(
            destinations=len(dests),
            active_destinations=sum(1 for d in dests if d.is_active),
            total=total,
            succeeded=succeeded,
            failed=total - succeeded,
        )
