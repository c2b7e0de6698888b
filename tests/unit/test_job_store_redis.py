from __future__ import annotations

import pytest
import redis

from meeting_capture_agent.domain.enums import JobState
from meeting_capture_agent.queue.redis import RedisJobStore
from meeting_capture_agent.queue.store import Job


class _FakePipeline:
    def __init__(self, r: _FakeRedis) -> None:
        self._r = r
        self._buffer: list | None = None

    def __enter__(self) -> _FakePipeline:
        return self

    def __exit__(self, *exc) -> None:
        self._buffer = None

    def watch(self, *_keys) -> None:
        self._buffer = None

    def unwatch(self) -> None:
        self._buffer = None

    def multi(self) -> None:
        self._buffer = []

    def execute(self) -> list:
        if self._r.broken_exec > 0:
            self._r.broken_exec -= 1
            self._buffer = None
            raise redis.ConnectionError("connection lost before EXEC")
        if self._r.conflicts > 0:
            self._r.conflicts -= 1
            self._buffer = None
            raise redis.WatchError("watched key changed")
        ops, self._buffer = self._buffer or [], None
        return [getattr(self._r, name)(*a, **kw) for name, a, kw in ops]

    def __getattr__(self, name):
        target = getattr(self._r, name)

        def call(*a, **kw):
            if self._buffer is None:
                return target(*a, **kw)
            self._buffer.append((name, a, kw))
            return self

        return call


class _FakeRedis:
    def __init__(self) -> None:
        self.kv: dict[str, str] = {}
        self.ttl: dict[str, int] = {}
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.conflicts = 0
        self.broken_exec = 0

    def pipeline(self) -> _FakePipeline:
        return _FakePipeline(self)

    def get(self, key):
        return self.kv.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.kv:
            return None
        self.kv[key] = value
        if ex is not None:
            self.ttl[key] = ex
        else:
            self.ttl.pop(key, None)
        return True

    def lpush(self, key, *values):
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    def rpop(self, key):
        lst = self.lists.get(key) or []
        return lst.pop() if lst else None

    def lindex(self, key, index):
        lst = self.lists.get(key) or []
        try:
            return lst[index]
        except IndexError:
            return None

    def llen(self, key):
        return len(self.lists.get(key) or [])

    def lrange(self, key, start, end):
        lst = self.lists.get(key) or []
        return lst[start : None if end == -1 else end + 1]

    def lrem(self, key, count, value):
        lst = self.lists.get(key) or []
        kept = [v for v in lst if v != value]
        removed = len(lst) - len(kept)
        self.lists[key] = kept
        return removed

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zrem(self, key, member):
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    def zrangebyscore(self, key, lo, hi):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1])
        return [m for m, score in items if lo <= score <= hi]

    def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)

    def zcard(self, key):
        return len(self.zsets.get(key, {}))


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _store(clock: _Clock | None = None) -> tuple[RedisJobStore, _FakeRedis]:
    r = _FakeRedis()
    return RedisJobStore(r, retention_sec=3600, clock=clock or _Clock()), r


def _job(job_id: str = "job-1", max_attempts: int = 3) -> Job:
    return Job(
        id=job_id, kind="transcode", queue="q:test", payload={}, max_attempts=max_attempts
    )


def test_enqueue_is_deduplicated_by_id() -> None:
    store, r = _store()
    assert store.enqueue(_job()) is True
    assert store.enqueue(_job()) is False
    assert r.llen("jobs:q:test:ready") == 1


def test_lease_then_ack_keeps_terminal_job_with_ttl() -> None:
    store, r = _store()
    store.enqueue(_job())
    job = store.lease("q:test", 30)

    assert job.attempts == 1
    assert store.stats("q:test").leased == 1
    assert store.ack(job.id, "other") is False
    assert store.ack(job.id, job.lease_token) is True

    got = store.get(job.id)
    assert got.state == JobState.succeeded
    assert r.ttl["jobs:job:job-1"] == 3600
    assert store.stats("q:test").leased == 0


def test_retry_moves_job_to_delayed_set() -> None:
    clock = _Clock()
    store, r = _store(clock)
    store.enqueue(_job())
    job = store.lease("q:test", 30)

    assert store.retry(job.id, job.lease_token, 20, "boom") is True
    assert r.zsets["jobs:q:test:delayed"] == {"job-1": 1020.0}
    assert store.lease("q:test", 30) is None

    clock.now = 1020.0
    again = store.lease("q:test", 30)
    assert again.attempts == 2
    assert again.last_error == "boom"


def test_fail_pushes_to_dlq() -> None:
    store, _ = _store()
    store.enqueue(_job())
    job = store.lease("q:test", 30)

    assert store.fail(job.id, job.lease_token, "fatal") is True
    dead = store.dead_letters("q:test")
    assert [j.id for j in dead] == ["job-1"]
    assert dead[0].last_error == "fatal"
    assert store.stats("q:test").dead == 1


def test_expired_lease_is_requeued_once() -> None:
    clock = _Clock()
    store, _ = _store(clock)
    store.enqueue(_job())
    first = store.lease("q:test", 30)

    clock.now += 31
    second = store.lease("q:test", 30)
    assert second is not None
    assert second.attempts == 2
    assert store.set_progress(first.id, first.lease_token, 50) is False
    assert store.set_progress(second.id, second.lease_token, 50) is True


def test_expired_lease_without_attempts_left_is_dead_lettered() -> None:
    clock = _Clock()
    store, _ = _store(clock)
    store.enqueue(_job(max_attempts=1))
    store.lease("q:test", 30)

    clock.now += 31
    assert store.lease("q:test", 30) is None
    assert store.get("job-1").state == JobState.failed
    assert store.stats("q:test").dead == 1


def test_watch_conflict_is_retried() -> None:
    store, r = _store()
    store.enqueue(_job())
    job = store.lease("q:test", 30)

    r.conflicts = 2
    assert store.extend_lease(job.id, job.lease_token, 60) is True
    assert store.get(job.id).lease_expires_at == 1060.0


def test_interrupted_lease_leaves_job_ready() -> None:
    store, r = _store()
    store.enqueue(_job())

    r.broken_exec = 1
    with pytest.raises(redis.ConnectionError):
        store.lease("q:test", 30)

    assert r.lists["jobs:q:test:ready"] == ["job-1"]
    assert store.get("job-1").state == JobState.queued
    assert store.stats("q:test").leased == 0

    job = store.lease("q:test", 30)
    assert job.id == "job-1"
    assert job.attempts == 1


def test_interrupted_reclaim_keeps_job_in_leased_set() -> None:
    clock = _Clock()
    store, r = _store(clock)
    store.enqueue(_job())
    first = store.lease("q:test", 30)

    clock.now += 31
    r.broken_exec = 1
    with pytest.raises(redis.ConnectionError):
        store.lease("q:test", 30)

    assert r.zsets["jobs:q:test:leased"] == {"job-1": first.lease_expires_at}
    assert store.get("job-1").state == JobState.leased

    second = store.lease("q:test", 30)
    assert second.attempts == 2
    assert second.lease_token != first.lease_token


def test_interrupted_promotion_keeps_job_delayed() -> None:
    clock = _Clock()
    store, r = _store(clock)
    store.enqueue(_job())
    job = store.lease("q:test", 30)
    store.retry(job.id, job.lease_token, 10, "boom")

    clock.now += 10
    r.broken_exec = 1
    with pytest.raises(redis.ConnectionError):
        store.lease("q:test", 30)

    assert r.zsets["jobs:q:test:delayed"] == {"job-1": 1010.0}
    assert r.llen("jobs:q:test:ready") == 0
    assert store.lease("q:test", 30).attempts == 2


def test_lease_conflict_is_retried_without_losing_job() -> None:
    store, r = _store()
    store.enqueue(_job())

    r.conflicts = 1
    job = store.lease("q:test", 30)

    assert job.attempts == 1
    assert r.llen("jobs:q:test:ready") == 0
    assert store.stats("q:test").leased == 1


def test_stale_ready_id_is_dropped() -> None:
    store, r = _store()
    r.lpush("jobs:q:test:ready", "ghost")
    store.enqueue(_job())

    job = store.lease("q:test", 30)
    assert job.id == "job-1"
    assert r.llen("jobs:q:test:ready") == 0


def test_lease_expiry_dead_letter_is_listed_until_resolved() -> None:
    clock = _Clock()
    store, r = _store(clock)
    store.enqueue(_job(max_attempts=1))
    store.lease("q:test", 30)

    clock.now += 31
    assert store.lease("q:test", 30) is None

    expired = store.expired_dead_letters("q:test")
    assert [j.id for j in expired] == ["job-1"]
    assert expired[0].last_error == "lease_expired"

    assert store.resolve_expired("q:test", "job-1") is True
    assert store.resolve_expired("q:test", "job-1") is False
    assert store.expired_dead_letters("q:test") == []
    # в общем DLQ задача остаётся
    assert [j.id for j in store.dead_letters("q:test")] == ["job-1"]


def test_explicit_fail_is_not_listed_as_expired() -> None:
    store, _ = _store()
    store.enqueue(_job())
    job = store.lease("q:test", 30)

    store.fail(job.id, job.lease_token, "fatal")
    assert store.expired_dead_letters("q:test") == []


def test_expired_entry_without_job_record_is_dropped() -> None:
    store, r = _store()
    r.lpush("jobs:q:test:expired", "gone")
    assert store.expired_dead_letters("q:test") == []
    assert r.llen("jobs:q:test:expired") == 0
