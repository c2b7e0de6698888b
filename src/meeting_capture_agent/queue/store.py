"""
Job Store — контракт брокера задач.

Операции:
- enqueue: поставить задачу (дедуп по явному job.id)
- lease: взять задачу в работу на lease_ttl (attempts += 1)
- extend_lease: heartbeat воркера
- ack: успех (терминально)
- retry: вернуть в очередь с задержкой
- fail: терминальная ошибка → DLQ
- set_progress: прогресс 0..100
- expired_dead_letters / resolve_expired: задачи, ушедшие в DLQ по истечению lease,
  ждут, пока воркер-пул не отдаст их обработчику (on_dead_letter)

Правила:
- воркеры не трогают служебные поля Job напрямую, только через store
- все мутации взятой задачи проверяют lease_token: после истечения lease
  и повторной выдачи старый воркер уже ничего не может подтвердить
- просроченный lease возвращает задачу в очередь, а при исчерпанных
  попытках — в DLQ
- терминальные задачи живут JOB_RETENTION_SEC и затем удаляются

Реализации:
- InMemoryJobStore: QUEUE_MODE=inline и тесты
- RedisJobStore: queue/redis.py
"""

from __future__ import annotations

import json
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from meeting_capture_agent.common.ids import new_lease_token
from meeting_capture_agent.common.time import Clock, wall_clock
from meeting_capture_agent.domain.enums import JobState

LEASE_EXPIRED_ERROR = "lease_expired"


# =============================================================================
# МОДЕЛЬ ЗАДАЧИ
# =============================================================================
@dataclass
class Job:
    id: str
    kind: str
    queue: str
    payload: dict[str, Any]
    max_attempts: int = 3
    backoff_base_sec: float = 5.0
    attempts: int = 0
    state: JobState = JobState.queued
    lease_token: str | None = None
    lease_expires_at: float | None = None
    available_at: float = 0.0
    progress: int = 0
    last_error: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.succeeded, JobState.failed)

    def to_json(self) -> str:
        data = asdict(self)
        data["state"] = JobState(self.state).value
        return json.dumps(data, ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, raw: str | bytes) -> Job:
        data = json.loads(raw)
        data["state"] = JobState(data.get("state") or JobState.queued.value)
        return cls(**data)


@dataclass
class JobStats:
    ready: int = 0
    delayed: int = 0
    leased: int = 0
    dead: int = 0


class JobStore(Protocol):
    def enqueue(self, job: Job) -> bool: ...

    def lease(self, queue: str, lease_ttl_sec: float) -> Job | None: ...

    def extend_lease(self, job_id: str, lease_token: str, lease_ttl_sec: float) -> bool: ...

    def ack(self, job_id: str, lease_token: str) -> bool: ...

    def retry(self, job_id: str, lease_token: str, delay_sec: float, error: str) -> bool: ...

    def fail(self, job_id: str, lease_token: str, error: str) -> bool: ...

    def set_progress(self, job_id: str, lease_token: str, progress: int) -> bool: ...

    def get(self, job_id: str) -> Job | None: ...

    def stats(self, queue: str) -> JobStats: ...

    def dead_letters(self, queue: str, limit: int = 100) -> list[Job]: ...

    def expired_dead_letters(self, queue: str, limit: int = 100) -> list[Job]: ...

    def resolve_expired(self, queue: str, job_id: str) -> bool: ...


def clamp_progress(progress: int) -> int:
    return max(0, min(100, int(progress)))


# =============================================================================
# IN-MEMORY
# =============================================================================
@dataclass
class _QueueState:
    ready: deque[str] = field(default_factory=deque)
    delayed: dict[str, float] = field(default_factory=dict)
    leased: dict[str, float] = field(default_factory=dict)
    dead: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)


class InMemoryJobStore:
    """
    Job Store в памяти процесса (один lock на всё хранилище).
    """

    def __init__(self, *, retention_sec: float = 86400.0, clock: Clock = wall_clock) -> None:
        self._retention_sec = float(retention_sec)
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._expires: dict[str, float] = {}
        self._queues: dict[str, _QueueState] = {}

    def _q(self, queue: str) -> _QueueState:
        st = self._queues.get(queue)
        if st is None:
            st = _QueueState()
            self._queues[queue] = st
        return st

    def _prune(self, now: float) -> None:
        for job_id, exp in list(self._expires.items()):
            if exp > now:
                continue
            self._expires.pop(job_id, None)
            job = self._jobs.pop(job_id, None)
            if job is not None:
                st = self._q(job.queue)
                if job_id in st.dead:
                    st.dead.remove(job_id)
                if job_id in st.expired:
                    st.expired.remove(job_id)

    def _finish(self, job: Job, state: JobState, now: float) -> None:
        st = self._q(job.queue)
        st.leased.pop(job.id, None)
        job.state = state
        job.lease_token = None
        job.lease_expires_at = None
        job.updated_at = now
        self._expires[job.id] = now + self._retention_sec
        if state == JobState.failed:
            st.dead.append(job.id)

    def _owned(self, job_id: str, lease_token: str) -> Job | None:
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.leased or job.lease_token != lease_token:
            return None
        return job

    def enqueue(self, job: Job) -> bool:
        with self._lock:
            now = self._clock()
            self._prune(now)
            if job.id in self._jobs:
                return False
            job.state = JobState.queued
            job.created_at = job.created_at or now
            job.updated_at = now
            self._jobs[job.id] = job
            st = self._q(job.queue)
            if job.available_at > now:
                st.delayed[job.id] = job.available_at
            else:
                st.ready.append(job.id)
            return True

    def _promote_and_reclaim(self, st: _QueueState, now: float) -> None:
        for job_id, ready_at in list(st.delayed.items()):
            if ready_at <= now:
                st.delayed.pop(job_id, None)
                st.ready.append(job_id)

        for job_id, expires in list(st.leased.items()):
            if expires > now:
                continue
            job = self._jobs.get(job_id)
            if job is None:
                st.leased.pop(job_id, None)
                continue
            job.last_error = LEASE_EXPIRED_ERROR
            if job.attempts >= job.max_attempts:
                self._finish(job, JobState.failed, now)
                st.expired.append(job_id)
                continue
            st.leased.pop(job_id, None)
            job.state = JobState.queued
            job.lease_token = None
            job.lease_expires_at = None
            job.available_at = now
            job.updated_at = now
            st.ready.append(job_id)

    def lease(self, queue: str, lease_ttl_sec: float) -> Job | None:
        with self._lock:
            now = self._clock()
            st = self._q(queue)
            self._promote_and_reclaim(st, now)
            while st.ready:
                job_id = st.ready.popleft()
                job = self._jobs.get(job_id)
                if job is None or job.state != JobState.queued:
                    continue
                job.attempts += 1
                job.state = JobState.leased
                job.lease_token = new_lease_token()
                job.lease_expires_at = now + float(lease_ttl_sec)
                job.updated_at = now
                st.leased[job_id] = job.lease_expires_at
                return _copy(job)
            return None

    def extend_lease(self, job_id: str, lease_token: str, lease_ttl_sec: float) -> bool:
        with self._lock:
            job = self._owned(job_id, lease_token)
            if job is None:
                return False
            now = self._clock()
            job.lease_expires_at = now + float(lease_ttl_sec)
            job.updated_at = now
            self._q(job.queue).leased[job_id] = job.lease_expires_at
            return True

    def ack(self, job_id: str, lease_token: str) -> bool:
        with self._lock:
            job = self._owned(job_id, lease_token)
            if job is None:
                return False
            job.progress = 100
            job.last_error = None
            self._finish(job, JobState.succeeded, self._clock())
            return True

    def retry(self, job_id: str, lease_token: str, delay_sec: float, error: str) -> bool:
        with self._lock:
            job = self._owned(job_id, lease_token)
            if job is None:
                return False
            now = self._clock()
            job.last_error = error
            if job.attempts >= job.max_attempts:
                self._finish(job, JobState.failed, now)
                return True
            st = self._q(job.queue)
            st.leased.pop(job_id, None)
            job.state = JobState.queued
            job.lease_token = None
            job.lease_expires_at = None
            job.available_at = now + max(0.0, float(delay_sec))
            job.updated_at = now
            if job.available_at > now:
                st.delayed[job_id] = job.available_at
            else:
                st.ready.append(job_id)
            return True

    def fail(self, job_id: str, lease_token: str, error: str) -> bool:
        with self._lock:
            job = self._owned(job_id, lease_token)
            if job is None:
                return False
            job.last_error = error
            self._finish(job, JobState.failed, self._clock())
            return True

    def set_progress(self, job_id: str, lease_token: str, progress: int) -> bool:
        with self._lock:
            job = self._owned(job_id, lease_token)
            if job is None:
                return False
            job.progress = clamp_progress(progress)
            job.updated_at = self._clock()
            return True

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            self._prune(self._clock())
            job = self._jobs.get(job_id)
            return _copy(job) if job is not None else None

    def stats(self, queue: str) -> JobStats:
        with self._lock:
            st = self._q(queue)
            return JobStats(
                ready=len(st.ready),
                delayed=len(st.delayed),
                leased=len(st.leased),
                dead=len(st.dead),
            )

    def dead_letters(self, queue: str, limit: int = 100) -> list[Job]:
        with self._lock:
            ids = self._q(queue).dead[: max(0, limit)]
            return [_copy(self._jobs[i]) for i in ids if i in self._jobs]

    def expired_dead_letters(self, queue: str, limit: int = 100) -> list[Job]:
        with self._lock:
            ids = self._q(queue).expired[: max(0, limit)]
            return [_copy(self._jobs[i]) for i in ids if i in self._jobs]

    def resolve_expired(self, queue: str, job_id: str) -> bool:
        with self._lock:
            expired = self._q(queue).expired
            if job_id not in expired:
                return False
            expired.remove(job_id)
            return True


def _copy(job: Job) -> Job:
    return Job.from_json(job.to_json())
