"""
Общие утилиты проекта.

Правила:
- сюда кладём только реально общие функции
- без бизнес-логики
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any


def b64_encode(data: bytes) -> str:
    """
    base64(bytes) -> str
    """
    return base64.b64encode(data).decode("utf-8")


def b64_decode(data_b64: str) -> bytes:
    return base64.b64decode(data_b64.encode("utf-8"))


def canonical_json(payload: dict[str, Any]) -> str:
    """
    Канонический JSON: ключи отсортированы, без лишних пробелов.
    Подпись считается именно по этой строке, её же отправляем телом.
    """
    return json.dumps(
        payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str
    )


def hmac_sha256_hex(body: str | bytes, secret: str) -> str:
    raw = body.encode("utf-8") if isinstance(body, str) else body
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def verify_signature(body: str | bytes, secret: str, header_value: str) -> bool:
    """
    Проверка заголовка вида "sha256=<hex>" (для получателей и тестов).
    """
    expected = f"sha256={hmac_sha256_hex(body, secret)}"
    return hmac.compare_digest(expected, (header_value or "").strip())

