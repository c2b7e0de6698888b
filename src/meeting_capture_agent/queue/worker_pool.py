"""
Worker Pool Runtime.

Алгоритм:
- держим до `concurrency` задач одновременно (пул потоков)
- lease → handler(job, progress) → JobResult
- ok                                  → ack
- retryable и попытки остались        → retry с backoff base*2^(n-1) (cap)
- иначе                               → fail (DLQ)
- пока handler работает, heartbeat продлевает lease
- задачи, ушедшие в DLQ по истечению lease (воркер упал), периодически отдаются
  handler.on_dead_letter(job): обработчик сам закрывает Session/Artifact как FAILED

Исключение из handler считается временной ошибкой, кроме AppError(retryable=False).
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, TypeVar

from meeting_capture_agent.common.errors import ErrCode, TransientError, is_retryable
from meeting_capture_agent.common.logging import get_project_logger, job_logger
from meeting_capture_agent.common.metrics import (
    ACTIVE_JOBS,
    JOB_DURATION_SEC,
    JOBS_FINISHED_TOTAL,
    JOBS_STARTED_TOTAL,
)

from .retry import RetryPolicy
from .store import Job, JobStore

log = get_project_logger()

T = TypeVar("T")


# =============================================================================
# РЕЗУЛЬТАТ ОБРАБОТЧИКА
# =============================================================================
@dataclass
class JobResult:
    ok: bool
    retryable: bool = False
    error: str | None = None

    @classmethod
    def success(cls) -> JobResult:
        return cls(ok=True)

    @classmethod
    def transient(cls, error: str) -> JobResult:
        return cls(ok=False, retryable=True, error=error)

    @classmethod
    def terminal(cls, error: str) -> JobResult:
        return cls(ok=False, retryable=False, error=error)


ProgressFn = Callable[[int], None]
JobHandler = Callable[[Job, ProgressFn], JobResult]


# =============================================================================
# ОГРАНИЧЕНИЕ ПО ВРЕМЕНИ
# =============================================================================
def call_with_timeout(fn: Callable[..., T], timeout_sec: float, *args: Any, **kwargs: Any) -> T:
    """
    Выполнить fn с потолком по времени. По таймауту — TransientError(timeout);
    сам поток не прерывается, поэтому fn должна сама уважать свой лимит.
    """
    box: dict[str, Any] = {}

    def target() -> None:
        try:
            box["value"] = fn(*args, **kwargs)
        except Exception as e:
            box["error"] = e

    t = threading.Thread(target=target, name="bounded-call", daemon=True)
    t.start()
    t.join(timeout_sec)
    if t.is_alive():
        raise TransientError(
            "Превышено время выполнения",
            details={"timeout_sec": timeout_sec},
            code=ErrCode.TIMEOUT,
        )
    if "error" in box:
        raise box["error"]
    return box["value"]


# =============================================================================
# HEARTBEAT
# =============================================================================
class _LeaseHeartbeat:
    def __init__(self, store: JobStore, job: Job, lease_ttl_sec: float, interval_sec: float):
        self._store = store
        self._job = job
        self._ttl = lease_ttl_sec
        self._interval = max(0.05, interval_sec)
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"lease-heartbeat-{job.id}", daemon=True
        )
        self.lost = False

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=self._interval * 2)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                ok = self._store.extend_lease(self._job.id, self._job.lease_token or "", self._ttl)
            except Exception as e:
                log.warning(
                    "job_lease_extend_error",
                    extra={"payload": {"job_id": self._job.id, "err": str(e)[:200]}},
                )
                continue
            if not ok:
                self.lost = True
                log.warning("job_lease_lost", extra={"payload": {"job_id": self._job.id}})
                return


# =============================================================================
# ПУЛ
# =============================================================================
class WorkerPool:
    def __init__(
        self,
        store: JobStore,
        *,
        lease_ttl_sec: float = 60.0,
        poll_interval_sec: float = 1.0,
        backoff_cap_sec: float = 300.0,
        heartbeat_interval_sec: float | None = None,
        dead_letter_sweep_sec: float = 30.0,
    ) -> None:
        self.store = store
        self.lease_ttl_sec = float(lease_ttl_sec)
        self.poll_interval_sec = float(poll_interval_sec)
        self.backoff_cap_sec = float(backoff_cap_sec)
        self.heartbeat_interval_sec = (
            float(heartbeat_interval_sec)
            if heartbeat_interval_sec is not None
            else self.lease_ttl_sec / 3
        )
        self.dead_letter_sweep_sec = max(0.0, float(dead_letter_sweep_sec))
        self._stop = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """
        Прекратить выдачу новых задач; run() вернётся после завершения текущих.
        """
        if not self._stop.is_set():
            log.info("worker_pool_stopping")
        self._stop.set()

    def run(self, queue_name: str, concurrency: int, handler: JobHandler) -> None:
        """
        Блокирующий цикл до stop().
        """
        slots = threading.Semaphore(max(1, int(concurrency)))
        log.info(
            "worker_pool_started",
            extra={"payload": {"queue": queue_name, "concurrency": concurrency}},
        )
        with ThreadPoolExecutor(
            max_workers=max(1, int(concurrency)), thread_name_prefix=f"worker-{queue_name}"
        ) as executor:
            last_sweep = float("-inf")
            while not self._stop.is_set():
                if time.monotonic() - last_sweep >= self.dead_letter_sweep_sec:
                    self.sweep_expired(queue_name, handler)
                    last_sweep = time.monotonic()
                if not slots.acquire(timeout=self.poll_interval_sec):
                    continue
                try:
                    job = self.store.lease(queue_name, self.lease_ttl_sec)
                except Exception as e:
                    slots.release()
                    log.error(
                        "worker_pool_lease_error",
                        extra={"payload": {"queue": queue_name, "err": str(e)[:200]}},
                    )
                    self._stop.wait(self.poll_interval_sec)
                    continue
                if job is None:
                    slots.release()
                    self._stop.wait(self.poll_interval_sec)
                    continue

                future = executor.submit(self.process, queue_name, job, handler)
                future.add_done_callback(lambda _f: slots.release())
        log.info("worker_pool_stopped", extra={"payload": {"queue": queue_name}})

    def run_once(self, queue_name: str, handler: JobHandler) -> str | None:
        """
        Взять и обработать одну задачу синхронно. Возвращает исход или None (пусто).
        """
        job = self.store.lease(queue_name, self.lease_ttl_sec)
        if job is None:
            return None
        return self.process(queue_name, job, handler)

    def drain(self, queue_name: str, handler: JobHandler, *, max_jobs: int = 1000) -> list[str]:
        outcomes: list[str] = []
        for _ in range(max_jobs):
            outcome = self.run_once(queue_name, handler)
            if outcome is None:
                break
            outcomes.append(outcome)
        self.sweep_expired(queue_name, handler)
        return outcomes

    def sweep_expired(self, queue_name: str, handler: JobHandler) -> int:
        """
        Передать обработчику задачи, попавшие в DLQ по истечению lease.
        Запись снимается только после успешного on_dead_letter (at-least-once).
        """
        try:
            jobs = self.store.expired_dead_letters(queue_name)
        except Exception as e:
            log.error(
                "worker_pool_dead_letter_sweep_error",
                extra={"payload": {"queue": queue_name, "err": str(e)[:200]}},
            )
            return 0

        hook = getattr(handler, "on_dead_letter", None)
        resolved = 0
        for job in jobs:
            jlog = job_logger(job.id, queue=queue_name, kind=job.kind, attempt=job.attempts)
            if hook is not None:
                try:
                    hook(job)
                except Exception as e:
                    jlog.error(
                        "job_dead_letter_hook_error",
                        exc_info=True,
                        extra={"payload": {"err": str(e)[:300]}},
                    )
                    continue
            try:
                if not self.store.resolve_expired(queue_name, job.id):
                    continue
            except Exception as e:
                jlog.error(
                    "job_dead_letter_resolve_error", extra={"payload": {"err": str(e)[:200]}}
                )
                continue
            resolved += 1
            jlog.error("job_dead_lettered", extra={"payload": {"err": job.last_error}})
        return resolved

    # -------------------------------------------------------------------------
    # Обработка одной задачи
    # -------------------------------------------------------------------------
    def process(self, queue_name: str, job: Job, handler: JobHandler) -> str:
        jlog = job_logger(job.id, queue=queue_name, kind=job.kind, attempt=job.attempts)
        JOBS_STARTED_TOTAL.labels(queue=queue_name).inc()
        ACTIVE_JOBS.labels(queue=queue_name).inc()
        jlog.info("job_started")

        def progress(value: int) -> None:
            try:
                self.store.set_progress(job.id, job.lease_token or "", value)
            except Exception as e:
                jlog.warning("job_progress_error", extra={"payload": {"err": str(e)[:200]}})

        heartbeat = _LeaseHeartbeat(
            self.store, job, self.lease_ttl_sec, self.heartbeat_interval_sec
        )
        started = time.perf_counter()
        heartbeat.start()
        try:
            try:
                result = handler(job, progress)
            except Exception as e:
                jlog.error(
                    "job_handler_error",
                    exc_info=True,
                    extra={"payload": {"err": str(e)[:300]}},
                )
                result = JobResult(ok=False, retryable=is_retryable(e), error=str(e)[:1000])
        finally:
            heartbeat.stop()
            ACTIVE_JOBS.labels(queue=queue_name).dec()
            JOB_DURATION_SEC.labels(queue=queue_name).observe(time.perf_counter() - started)

        outcome = self._settle(job, result, jlog)
        JOBS_FINISHED_TOTAL.labels(queue=queue_name, outcome=outcome).inc()
        return outcome

    def _settle(self, job: Job, result: JobResult, jlog) -> str:
        token = job.lease_token or ""
        if result.ok:
            if self.store.ack(job.id, token):
                jlog.info("job_succeeded")
                return "succeeded"
            jlog.warning("job_ack_lease_lost")
            return "lease_lost"

        error = result.error or "unknown error"
        policy = RetryPolicy(job.max_attempts, job.backoff_base_sec, self.backoff_cap_sec)
        if policy.should_retry(attempt=job.attempts, retryable=result.retryable):
            delay = policy.delay_for(job.attempts)
            if self.store.retry(job.id, token, delay, error):
                jlog.warning(
                    "job_retry_scheduled",
                    extra={"payload": {"delay_sec": delay, "err": error[:300]}},
                )
                return "retry"
            jlog.warning("job_retry_lease_lost")
            return "lease_lost"

        if self.store.fail(job.id, token, error):
            jlog.error(
                "job_failed",
                extra={"payload": {"err": error[:300], "retryable": result.retryable}},
            )
            return "failed"
        jlog.warning("job_fail_lease_lost")
        return "lease_lost"
