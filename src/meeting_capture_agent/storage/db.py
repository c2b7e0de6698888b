"""
Инициализация базы данных и сессий SQLAlchemy.

Назначение:
- Создание engine (лениво, по DATABASE_DSN или явному DSN)
- Контекстный менеджер для сессий
- Единая точка доступа к БД для воркеров
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from meeting_capture_agent.common.config import get_settings

from .models import Base

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
def build_engine(dsn: str) -> Engine:
    if dsn.startswith("sqlite"):
        # SQLite: воркеры пишут из разных потоков, даём время на блокировки файла
        return create_engine(dsn, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(dsn, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_dsn)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


def create_all(engine: Engine | None = None) -> None:
    """Создание таблиц (dev/тесты; в prod схема приходит миграциями)."""
    Base.metadata.create_all(engine or get_engine())


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

