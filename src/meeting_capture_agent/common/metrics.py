"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics (ops gateway)
- Счётчики и гистограммы воркер-пула, доставки и трекера участников
- Используется воркерами capture/transcode и fan-out сервисом
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

REQUESTS_TOTAL = Counter(
    "capture_requests_total",
    "Общее количество HTTP запросов к ops gateway",
    ["route", "method", "status"],
)

# Воркер-пул
JOBS_STARTED_TOTAL = Counter(
    "capture_jobs_started_total",
    "Количество взятых в работу задач",
    ["queue"],
)

JOBS_FINISHED_TOTAL = Counter(
    "capture_jobs_finished_total",
    "Количество завершённых попыток задач по исходу",
    ["queue", "outcome"],  # outcome=succeeded|retry|failed
)

JOB_DURATION_SEC = Histogram(
    "capture_job_duration_seconds",
    "Длительность выполнения задачи (сек)",
    ["queue"],
    buckets=(1, 5, 10, 30, 60, 300, 600, 1800, 3600, 7200),
)

ACTIVE_JOBS = Gauge(
    "capture_active_jobs",
    "Количество задач, выполняемых прямо сейчас",
    ["queue"],
)

QUEUE_DEPTH = Gauge(
    "capture_queue_depth",
    "Глубина очереди (готовые + отложенные задачи)",
    ["queue"],
)

DLQ_DEPTH = Gauge(
    "capture_dlq_depth",
    "Глубина DLQ очереди",
    ["queue"],
)

# Стадии state machine
PIPELINE_STAGE_LATENCY_MS = Histogram(
    "capture_stage_latency_ms",
    "Задержка выполнения стадий (мс)",
    ["service", "stage"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 60000),
)

# Доставка
DELIVERY_ATTEMPTS_TOTAL = Counter(
    "capture_delivery_attempts_total",
    "Попытки доставки событий по транспорту и результату",
    ["transport", "result"],  # result=success|retry|exhausted|abandoned|error
)

DELIVERY_LATENCY_MS = Histogram(
    "capture_delivery_latency_ms",
    "Задержка одной попытки доставки (мс)",
    ["transport"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

DELIVERIES_PENDING = Gauge(
    "capture_deliveries_pending",
    "Количество доставок, ожидающих ретрая в планировщике",
)

STREAM_CHUNKS_TOTAL = Counter(
    "capture_stream_chunks_total",
    "Отправленные чанки стрима",
    ["transport", "result"],
)

STREAM_BYTES_TOTAL = Counter(
    "capture_stream_bytes_total",
    "Отправленные байты стрима",
    ["transport"],
)

PARTICIPANT_EVENTS_TOTAL = Counter(
    "capture_participant_events_total",
    "События трекера участников",
    ["type"],
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "capture_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)


@contextmanager
def track_stage_latency(service: str, stage: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        PIPELINE_STAGE_LATENCY_MS.labels(service=service, stage=stage).observe(elapsed_ms)


def record_delivery_attempt(*, transport: str, result: str, duration_ms: float | None) -> None:
    DELIVERY_ATTEMPTS_TOTAL.labels(transport=transport, result=result).inc()
    if duration_ms is not None:
        DELIVERY_LATENCY_MS.labels(transport=transport).observe(max(0.0, duration_ms))


def record_stream_chunk(*, transport: str, ok: bool, size: int) -> None:
    STREAM_CHUNKS_TOTAL.labels(transport=transport, result="success" if ok else "error").inc()
    if ok:
        STREAM_BYTES_TOTAL.labels(transport=transport).inc(max(0, size))


def refresh_queue_metrics() -> None:
    try:
        from meeting_capture_agent.queue.dispatcher import ALL_QUEUES, get_job_store

        store = get_job_store()
        for queue in ALL_QUEUES:
            stats = store.stats(queue)
            QUEUE_DEPTH.labels(queue=queue).set(stats.ready + stats.delayed)
            DLQ_DEPTH.labels(queue=queue).set(stats.dead)
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="queue_metrics").inc()


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        response = await call_next(request)
        REQUESTS_TOTAL.labels(
            route=request.url.path,
            method=request.method,
            status=str(response.status_code),
        ).inc()
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        refresh_queue_metrics()
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
