"""
Логирование проекта.

- логирование в stdout (Docker-friendly), JSON или текст (LOG_FORMAT)
- контекст события кладём в extra={"payload": {...}}
- job_logger() — адаптер, который добавляет job_id/session_id в каждый payload
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any

from meeting_capture_agent.common.config import get_settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict):
            payload["payload"] = extra_payload
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _build_formatter() -> logging.Formatter:
    s = get_settings()
    if (s.log_format or "").lower() == "text":
        return logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    return JsonFormatter()


def setup_logging() -> None:
    s = get_settings()
    root = logging.getLogger()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # Не плодим хэндлеры при повторном вызове
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)
    # websockets слишком болтлив на DEBUG
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))


def get_project_logger(name: str = "meeting-capture-agent") -> logging.Logger:
    return logging.getLogger(name)


def get_delivery_logger() -> logging.Logger:
    """
    Отдельный логгер для fan-out (callback/stream), удобно фильтровать.
    """
    return logging.getLogger("meeting-capture-agent.delivery")


class JobLogAdapter(logging.LoggerAdapter):
    """
    Корреляция логов задачи: контекст адаптера подмешивается в payload.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        payload = dict(self.extra or {})
        own = extra.get("payload")
        if isinstance(own, dict):
            payload.update(own)
        extra["payload"] = payload
        kwargs["extra"] = extra
        return msg, kwargs


def job_logger(job_id: str, **context: Any) -> JobLogAdapter:
    return JobLogAdapter(get_project_logger(), {"job_id": job_id, **context})
