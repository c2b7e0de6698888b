"""
Observability bootstrap.

Назначение:
- централизованно включить логирование на старте процесса (ops/воркеры)
- для воркеров без HTTP — поднять отдельный порт /metrics (prometheus_client)
"""

from __future__ import annotations

from prometheus_client import start_http_server

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.logging import get_project_logger, setup_logging

log = get_project_logger()


def setup_observability(*, metrics_port: int | None = None) -> None:
    """
    Вызывается на старте процесса (ops/worker).
    metrics_port: если задан и METRICS_ENABLED — отдельный HTTP-экспортёр метрик.
    """
    setup_logging()
    s = get_settings()
    if metrics_port and s.metrics_enabled:
        start_http_server(metrics_port)
        log.info("metrics_exporter_started", extra={"payload": {"port": metrics_port}})
    log.info("observability_ready")
