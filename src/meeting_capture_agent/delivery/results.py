"""
Утилиты для работы с результатами доставки.

Назначение:
- Нормализация ошибок (HTTP-статус / исключение → строка)
- Единое представление статусов для БД/логов/метрик
"""

from __future__ import annotations

from .base import DeliveryResult


def ok_result(
    transport: str,
    destination_id: str,
    *,
    status_code: int | None = None,
    duration_ms: int | None = None,
    meta: dict | None = None,
) -> DeliveryResult:
    return DeliveryResult(
        ok=True,
        transport=transport,
        destination_id=destination_id,
        status_code=status_code,
        duration_ms=duration_ms,
        meta=meta,
    )


def fail_result(
    transport: str,
    destination_id: str,
    error: str,
    *,
    status_code: int | None = None,
    duration_ms: int | None = None,
    meta: dict | None = None,
) -> DeliveryResult:
    return DeliveryResult(
        ok=False,
        transport=transport,
        destination_id=destination_id,
        status_code=status_code,
        error=error[:1000],
        duration_ms=duration_ms,
        meta=meta,
    )


def http_error(status_code: int, body: str = "") -> str:
    text = (body or "").strip()[:200]
    return f"HTTP {status_code}: {text}" if text else f"HTTP {status_code}"


def is_success_status(status_code: int) -> bool:
    return 200 <= int(status_code) < 300
