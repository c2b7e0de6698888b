"""
Диспетчер очередей.

Назначение:
- Единые имена очередей
- Выбор Job Store по QUEUE_MODE (redis | inline)
- enqueue_capture / enqueue_transcode с валидацией payload до постановки
"""

from __future__ import annotations

from typing import Any

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.ids import new_job_id
from meeting_capture_agent.common.logging import get_project_logger
from meeting_capture_agent.contracts.queue_events import CapturePayload, TranscodePayload
from meeting_capture_agent.domain.enums import JobKind

from .store import InMemoryJobStore, Job, JobStore

log = get_project_logger()

# =============================================================================
# ИМЕНА ОЧЕРЕДЕЙ
# =============================================================================
Q_CAPTURE = "q:capture"
Q_TRANSCODE = "q:transcode"

ALL_QUEUES = (Q_CAPTURE, Q_TRANSCODE)

_store: JobStore | None = None


def get_job_store() -> JobStore:
    """
    Singleton Job Store процесса.
    """
    global _store
    if _store is None:
        s = get_settings()
        if (s.queue_mode or "").strip().lower() == "inline":
            _store = InMemoryJobStore(retention_sec=s.job_retention_sec)
        else:
            from .redis import RedisJobStore

            _store = RedisJobStore(retention_sec=s.job_retention_sec)
    return _store


def set_job_store(store: JobStore | None) -> None:
    """Подмена store (тесты, inline-прогоны)."""
    global _store
    _store = store


def transcode_job_id(artifact_id: str) -> str:
    """
    Детерминированный id: повторная постановка для того же Artifact — no-op.
    """
    return f"job_transcode_{artifact_id}"


class JobDispatcher:
    """
    Постановка задач в конкретный Job Store с политиками из настроек.
    """

    def __init__(self, store: JobStore | None = None) -> None:
        self._store = store

    @property
    def store(self) -> JobStore:
        return self._store if self._store is not None else get_job_store()

    def _put(self, job: Job, *, log_ctx: dict[str, Any]) -> str:
        created = self.store.enqueue(job)
        log.info(
            "job_enqueued" if created else "job_enqueue_deduplicated",
            extra={"payload": {"job_id": job.id, "queue": job.queue, **log_ctx}},
        )
        return job.id

    def enqueue_capture(self, payload: CapturePayload | dict[str, Any]) -> str:
        """
        Поставить задачу захвата для уже созданной Session (PENDING).
        """
        p = (
            payload
            if isinstance(payload, CapturePayload)
            else CapturePayload.model_validate(payload)
        )
        s = get_settings()
        job = Job(
            id=new_job_id(JobKind.capture.value),
            kind=JobKind.capture.value,
            queue=Q_CAPTURE,
            payload=p.to_payload(),
            max_attempts=s.capture_max_attempts,
            backoff_base_sec=s.capture_backoff_base_sec,
        )
        return self._put(job, log_ctx={"session_id": p.session_id})

    def enqueue_transcode(self, payload: TranscodePayload | dict[str, Any]) -> str:
        """
        Поставить задачу перекодирования. Дедуп по id задачи (artifact_id).
        """
        p = (
            payload
            if isinstance(payload, TranscodePayload)
            else TranscodePayload.model_validate(payload)
        )
        s = get_settings()
        job = Job(
            id=transcode_job_id(p.artifact_id),
            kind=JobKind.transcode.value,
            queue=Q_TRANSCODE,
            payload=p.to_payload(),
            max_attempts=s.transcode_max_attempts,
            backoff_base_sec=s.transcode_backoff_base_sec,
        )
        return self._put(job, log_ctx={"artifact_id": p.artifact_id})


def enqueue_capture(payload: CapturePayload | dict[str, Any]) -> str:
    return JobDispatcher().enqueue_capture(payload)


def enqueue_transcode(payload: TranscodePayload | dict[str, Any]) -> str:
    return JobDispatcher().enqueue_transcode(payload)
