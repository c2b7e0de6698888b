"""
Redis-клиент и Job Store поверх Redis.

Назначение:
- Единая точка подключения к Redis
- RedisJobStore: очереди задач для воркеров capture/transcode

Ключи (prefix = "jobs"):
- jobs:job:<id>: JSON задачи (терминальные — с TTL retention)
- jobs:<queue>:ready: список готовых id (LPUSH / RPOP)
- jobs:<queue>:delayed: zset, score = available_at
- jobs:<queue>:leased: zset, score = lease_expires_at
- jobs:<queue>:dlq: список id в DLQ
- jobs:<queue>:expired: id из DLQ по истечению lease, ещё не переданные on_dead_letter

Атомарность (каждый переход: WATCH/MULTI, одна транзакция):
- выдача задачи: снятие id с хвоста ready + JSON leased + ZADD leased
- возврат просроченного lease: ZREM leased + JSON + LPUSH ready (или DLQ)
- перенос delayed → ready: ZREM delayed + LPUSH ready
- постановка: JSON + индекс очереди
  Падение процесса между чтением и EXEC ничего не меняет: id остаётся на месте.
- мутации JSON задачи проверяют lease_token
"""

from __future__ import annotations

from collections.abc import Callable

import redis

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.ids import new_lease_token
from meeting_capture_agent.common.logging import get_project_logger
from meeting_capture_agent.common.time import Clock, wall_clock
from meeting_capture_agent.domain.enums import JobState

from .store import LEASE_EXPIRED_ERROR, Job, JobStats, clamp_progress

log = get_project_logger()
_STALE = object()
_client: redis.Redis | None = None


def redis_client() -> redis.Redis:
    """
    Singleton Redis client.
    """
    global _client
    if _client is None:
        _client = redis.Redis.from_url(get_settings().redis_url, decode_responses=True)
    return _client


class RedisJobStore:
    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        prefix: str = "jobs",
        retention_sec: float = 86400.0,
        clock: Clock = wall_clock,
    ) -> None:
        self._r = client if client is not None else redis_client()
        self._prefix = prefix
        self._retention_sec = max(1, int(retention_sec))
        self._clock = clock

    # -------------------------------------------------------------------------
    # Ключи
    # -------------------------------------------------------------------------
    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _ready_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:ready"

    def _delayed_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:delayed"

    def _leased_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:leased"

    def _dlq_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:dlq"

    def _expired_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:expired"

    def _load(self, job_id: str) -> Job | None:
        raw = self._r.get(self._job_key(job_id))
        if raw is None:
            return None
        return Job.from_json(raw)

    # -------------------------------------------------------------------------
    # CAS-обновление задачи
    # -------------------------------------------------------------------------
    def _transact(self, keys: list[str], body: Callable[[redis.client.Pipeline], object]):
        """
        body читает данные под WATCH; если есть что менять, вызывает pipe.multi(),
        ставит команды в очередь и возвращает не None. При WatchError повторяем.
        """
        with self._r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(*keys)
                    result = body(pipe)
                    if result is None:
                        pipe.unwatch()
                        return None
                    pipe.execute()
                    return result
                except redis.WatchError:
                    continue

    def _update(
        self,
        job_id: str,
        check: Callable[[Job], bool],
        apply: Callable[[Job, redis.client.Pipeline], None],
    ) -> Job | None:
        key = self._job_key(job_id)

        def body(pipe) -> Job | None:
            raw = pipe.get(key)
            if raw is None:
                return None
            job = Job.from_json(raw)
            if not check(job):
                return None
            pipe.multi()
            apply(job, pipe)
            return job

        return self._transact([key], body)

    def _owned_check(self, lease_token: str) -> Callable[[Job], bool]:
        def check(job: Job) -> bool:
            return job.state == JobState.leased and job.lease_token == lease_token

        return check

    def _write_terminal(self, job: Job, pipe, state: JobState, now: float) -> None:
        job.state = state
        job.lease_token = None
        job.lease_expires_at = None
        job.updated_at = now
        pipe.set(self._job_key(job.id), job.to_json(), ex=self._retention_sec)
        pipe.zrem(self._leased_key(job.queue), job.id)
        if state == JobState.failed:
            pipe.lpush(self._dlq_key(job.queue), job.id)

    # -------------------------------------------------------------------------
    # Операции
    # -------------------------------------------------------------------------
    def enqueue(self, job: Job) -> bool:
        now = self._clock()
        job.state = JobState.queued
        job.created_at = job.created_at or now
        job.updated_at = now
        key = self._job_key(job.id)

        def body(pipe) -> bool | None:
            if pipe.get(key) is not None:
                return None
            pipe.multi()
            pipe.set(key, job.to_json())
            if job.available_at > now:
                pipe.zadd(self._delayed_key(job.queue), {job.id: job.available_at})
            else:
                pipe.lpush(self._ready_key(job.queue), job.id)
            return True

        return self._transact([key], body) is not None

    def _promote_due(self, queue: str, now: float) -> None:
        delayed = self._delayed_key(queue)
        for job_id in self._r.zrangebyscore(delayed, 0, now):

            def body(pipe, job_id=job_id) -> bool | None:
                score = pipe.zscore(delayed, job_id)
                if score is None or score > now:
                    return None
                pipe.multi()
                pipe.zrem(delayed, job_id)
                pipe.lpush(self._ready_key(queue), job_id)
                return True

            self._transact([delayed], body)

    def _reclaim_expired(self, queue: str, now: float) -> None:
        leased = self._leased_key(queue)
        for job_id in self._r.zrangebyscore(leased, 0, now):
            key = self._job_key(job_id)

            def body(pipe, job_id=job_id, key=key):
                score = pipe.zscore(leased, job_id)
                if score is None or score > now:
                    return None
                raw = pipe.get(key)
                job = Job.from_json(raw) if raw is not None else None
                if job is not None and (job.lease_expires_at or 0) > now:
                    return None
                pipe.multi()
                pipe.zrem(leased, job_id)
                if job is None or job.state != JobState.leased:
                    return _STALE
                job.last_error = LEASE_EXPIRED_ERROR
                if job.attempts >= job.max_attempts:
                    self._write_terminal(job, pipe, JobState.failed, now)
                    pipe.lpush(self._expired_key(queue), job_id)
                    return job
                job.state = JobState.queued
                job.lease_token = None
                job.lease_expires_at = None
                job.available_at = now
                job.updated_at = now
                pipe.set(key, job.to_json())
                pipe.lpush(self._ready_key(queue), job_id)
                return job

            job = self._transact([leased, key], body)
            if job is None or job is _STALE:
                continue
            log.warning(
                "job_lease_expired",
                extra={
                    "payload": {
                        "job_id": job_id,
                        "queue": queue,
                        "attempts": job.attempts,
                        "state": job.state.value,
                    }
                },
            )

    def lease(self, queue: str, lease_ttl_sec: float) -> Job | None:
        now = self._clock()
        self._promote_due(queue, now)
        self._reclaim_expired(queue, now)
        ready = self._ready_key(queue)
        leased = self._leased_key(queue)
        expires = now + float(lease_ttl_sec)

        def body(pipe):
            job_id = pipe.lindex(ready, -1)
            if job_id is None:
                return None
            key = self._job_key(job_id)
            pipe.watch(key)
            raw = pipe.get(key)
            job = Job.from_json(raw) if raw is not None else None
            pipe.multi()
            pipe.rpop(ready)
            if job is None or job.state != JobState.queued:
                return _STALE
            job.attempts += 1
            job.state = JobState.leased
            job.lease_token = new_lease_token()
            job.lease_expires_at = expires
            job.updated_at = now
            pipe.set(key, job.to_json())
            pipe.zadd(leased, {job.id: expires})
            return job

        while True:
            job = self._transact([ready], body)
            if job is not _STALE:
                return job

    def extend_lease(self, job_id: str, lease_token: str, lease_ttl_sec: float) -> bool:
        now = self._clock()

        def apply(job: Job, pipe) -> None:
            job.lease_expires_at = now + float(lease_ttl_sec)
            job.updated_at = now
            pipe.set(self._job_key(job.id), job.to_json())
            pipe.zadd(self._leased_key(job.queue), {job.id: job.lease_expires_at})

        return self._update(job_id, self._owned_check(lease_token), apply) is not None

    def ack(self, job_id: str, lease_token: str) -> bool:
        now = self._clock()

        def apply(job: Job, pipe) -> None:
            job.progress = 100
            job.last_error = None
            self._write_terminal(job, pipe, JobState.succeeded, now)

        return self._update(job_id, self._owned_check(lease_token), apply) is not None

    def retry(self, job_id: str, lease_token: str, delay_sec: float, error: str) -> bool:
        now = self._clock()

        def apply(job: Job, pipe) -> None:
            job.last_error = error
            if job.attempts >= job.max_attempts:
                self._write_terminal(job, pipe, JobState.failed, now)
                return
            job.state = JobState.queued
            job.lease_token = None
            job.lease_expires_at = None
            job.available_at = now + max(0.0, float(delay_sec))
            job.updated_at = now
            pipe.set(self._job_key(job.id), job.to_json())
            pipe.zrem(self._leased_key(job.queue), job.id)
            if job.available_at > now:
                pipe.zadd(self._delayed_key(job.queue), {job.id: job.available_at})
            else:
                pipe.lpush(self._ready_key(job.queue), job.id)

        return self._update(job_id, self._owned_check(lease_token), apply) is not None

    def fail(self, job_id: str, lease_token: str, error: str) -> bool:
        now = self._clock()

        def apply(job: Job, pipe) -> None:
            job.last_error = error
            self._write_terminal(job, pipe, JobState.failed, now)

        return self._update(job_id, self._owned_check(lease_token), apply) is not None

    def set_progress(self, job_id: str, lease_token: str, progress: int) -> bool:
        now = self._clock()

        def apply(job: Job, pipe) -> None:
            job.progress = clamp_progress(progress)
            job.updated_at = now
            pipe.set(self._job_key(job.id), job.to_json())

        return self._update(job_id, self._owned_check(lease_token), apply) is not None

    def get(self, job_id: str) -> Job | None:
        return self._load(job_id)

    def stats(self, queue: str) -> JobStats:
        return JobStats(
            ready=int(self._r.llen(self._ready_key(queue))),
            delayed=int(self._r.zcard(self._delayed_key(queue))),
            leased=int(self._r.zcard(self._leased_key(queue))),
            dead=int(self._r.llen(self._dlq_key(queue))),
        )

    def dead_letters(self, queue: str, limit: int = 100) -> list[Job]:
        out: list[Job] = []
        for job_id in self._r.lrange(self._dlq_key(queue), 0, max(0, limit) - 1):
            job = self._load(job_id)
            if job is not None:
                out.append(job)
        return out

    def expired_dead_letters(self, queue: str, limit: int = 100) -> list[Job]:
        key = self._expired_key(queue)
        out: list[Job] = []
        for job_id in self._r.lrange(key, 0, max(0, limit) - 1):
            job = self._load(job_id)
            if job is None:
                # удалена по retention: обрабатывать уже нечего
                self._r.lrem(key, 0, job_id)
                continue
            out.append(job)
        return out

    def resolve_expired(self, queue: str, job_id: str) -> bool:
        return int(self._r.lrem(self._expired_key(queue), 0, job_id)) > 0
