"""
Ops Gateway (FastAPI).

Функции:
- /health: процесс жив
- /ready: readiness checks (БД, Redis, хранилище, prod-политики)
- /metrics: Prometheus (вкл. глубину очередей и DLQ)
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.logging import get_project_logger
from meeting_capture_agent.common.metrics import setup_metrics_endpoint
from meeting_capture_agent.common.observability import setup_observability
from meeting_capture_agent.services.readiness_service import evaluate_readiness

log = get_project_logger()


def _create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Meeting Capture Agent Ops", version="0.1.0")

    if settings.metrics_enabled:
        setup_metrics_endpoint(app)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "service": settings.service_name}

    @app.get("/ready")
    def ready() -> JSONResponse:
        state = evaluate_readiness()
        body = {"ready": state.ready, "issues": [asdict(i) for i in state.issues]}
        return JSONResponse(body, status_code=200 if state.ready else 503)

    return app


setup_observability()
log.info("ops_gateway_ready")

app = _create_app()


def main() -> None:
    import uvicorn

    s = get_settings()
    uvicorn.run(app, host=s.ops_host, port=s.ops_port)


if __name__ == "__main__":
    main()
