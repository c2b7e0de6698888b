"""
Генерация идентификаторов.

Назначение:
- job_id / event_id (он же ключ идемпотентности доставки)
- id записей Artifact / DeliveryAttempt
"""

from __future__ import annotations

import secrets
import uuid
from datetime import UTC, datetime


def new_uuid() -> str:
    """UUIDv4 строкой."""
    return str(uuid.uuid4())


def new_event_id(prefix: str = "evt") -> str:
    """
    Идентификатор события (лог/очереди/X-Event-Id).
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(6)
    return f"{prefix}_{ts}_{rnd}"


def new_job_id(kind: str) -> str:
    """
    Идентификатор задачи очереди.
    Формат: job_<kind>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    return new_event_id(f"job_{kind}")


def new_lease_token() -> str:
    return secrets.token_hex(16)


def participant_id_from_name(name: str) -> str:
    """
    Id участника выводится из отображаемого имени: "Jane  Doe" -> "jane-doe".
    """
    return "-".join(name.lower().split())
