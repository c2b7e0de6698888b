"""
Утилиты времени.

Назначение:
- единый формат времени (ISO UTC) для envelope/чанков/событий
- часы как зависимость (Clock), чтобы планировщик и трекер тестировались без sleep
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], float]


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """
    Текущее время в UTC в ISO формате.
    """
    return utc_now().isoformat()


def utc_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def monotonic_clock() -> float:
    return time.monotonic()


def wall_clock() -> float:
    return time.time()
