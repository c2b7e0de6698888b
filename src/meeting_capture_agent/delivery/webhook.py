"""
Callback (webhook) доставка.

Назначение:
- envelope {event, timestamp, data} в каноническом JSON
- подпись HMAC-SHA256 тела секретом получателя
- одна HTTP-попытка (ретраи — в DeliveryScheduler)

Заголовки:
- X-Event-Signature: sha256=<hex>
- X-Event-Type
- X-Event-Timestamp
- X-Event-Id: ключ идемпотентности, одинаковый во всех ретраях
"""

from __future__ import annotations

import time
from typing import Any

import requests

from meeting_capture_agent.common.time import utc_now_iso
from meeting_capture_agent.common.utils import canonical_json, hmac_sha256_hex
from meeting_capture_agent.domain.enums import DestinationTransport

from .base import DeliveryResult, DestinationSpec
from .results import fail_result, http_error, is_success_status, ok_result

HEADER_SIGNATURE = "X-Event-Signature"
HEADER_EVENT_TYPE = "X-Event-Type"
HEADER_TIMESTAMP = "X-Event-Timestamp"
HEADER_EVENT_ID = "X-Event-Id"

_TRANSPORT = DestinationTransport.callback.value


def build_envelope(
    event_type: str, data: dict[str, Any], *, timestamp: str | None = None
) -> dict[str, Any]:
    return {"event": str(event_type), "timestamp": timestamp or utc_now_iso(), "data": data}


def encode_envelope(envelope: dict[str, Any]) -> bytes:
    return canonical_json(envelope).encode("utf-8")


def build_headers(
    *,
    body: bytes,
    secret: str | None,
    event_type: str,
    timestamp: str,
    event_id: str,
    extra: dict[str, str] | None = None,
) -> dict[str, str]:
    # заголовки получателя не могут перекрыть служебные
    headers: dict[str, str] = dict(extra or {})
    headers["Content-Type"] = "application/json"
    headers[HEADER_EVENT_TYPE] = str(event_type)
    headers[HEADER_TIMESTAMP] = timestamp
    headers[HEADER_EVENT_ID] = event_id
    if secret:
        headers[HEADER_SIGNATURE] = f"sha256={hmac_sha256_hex(body, secret)}"
    return headers


class WebhookSender:
    def __init__(self, session: requests.Session | None = None) -> None:
        self._http = session or requests.Session()

    def send(
        self, destination: DestinationSpec, body: bytes, headers: dict[str, str]
    ) -> DeliveryResult:
        started = time.perf_counter()
        try:
            resp = self._http.post(
                destination.url,
                data=body,
                headers=headers,
                timeout=destination.timeout_sec,
            )
        except requests.RequestException as e:
            return fail_result(
                _TRANSPORT,
                destination.id,
                f"{type(e).__name__}: {e}",
                duration_ms=_elapsed_ms(started),
            )

        duration_ms = _elapsed_ms(started)
        if is_success_status(resp.status_code):
            return ok_result(
                _TRANSPORT, destination.id, status_code=resp.status_code, duration_ms=duration_ms
            )
        return fail_result(
            _TRANSPORT,
            destination.id,
            http_error(resp.status_code, resp.text),
            status_code=resp.status_code,
            duration_ms=duration_ms,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
