"""
Stream HTTP транспорт.

Назначение:
- POST чанка (base64 диапазон байт или JSON метаданных)
- служебные уведомления stream_start / stream_end

Заголовки чанка:
- X-Stream-Chunk-Index
- X-Stream-Session-Id
- X-Stream-Timestamp
- X-Stream-Signature (если у получателя задан secret)
"""

from __future__ import annotations

import time
from typing import Any

import requests

from meeting_capture_agent.common.time import utc_now_iso
from meeting_capture_agent.common.utils import canonical_json, hmac_sha256_hex
from meeting_capture_agent.domain.enums import DestinationTransport

from .base import DeliveryResult, DestinationSpec, StreamChunk
from .results import fail_result, http_error, is_success_status, ok_result

HEADER_CHUNK_INDEX = "X-Stream-Chunk-Index"
HEADER_SESSION_ID = "X-Stream-Session-Id"
HEADER_TIMESTAMP = "X-Stream-Timestamp"
HEADER_SIGNATURE = "X-Stream-Signature"

_TRANSPORT = DestinationTransport.stream_http.value


def chunk_headers(destination: DestinationSpec, chunk: StreamChunk, body: bytes) -> dict[str, str]:
    headers: dict[str, str] = dict(destination.headers)
    headers["Content-Type"] = "application/json"
    headers[HEADER_CHUNK_INDEX] = str(chunk.chunk_index)
    headers[HEADER_SESSION_ID] = chunk.session_id
    headers[HEADER_TIMESTAMP] = chunk.timestamp
    if destination.secret:
        headers[HEADER_SIGNATURE] = f"sha256={hmac_sha256_hex(body, destination.secret)}"
    return headers


def control_message(kind: str, *, session_id: str, organization_id: str) -> dict[str, Any]:
    return {
        "type": kind,
        "sessionId": session_id,
        "organizationId": organization_id,
        "timestamp": utc_now_iso(),
    }


class HttpStreamSender:
    def __init__(self, session: requests.Session | None = None) -> None:
        self._http = session or requests.Session()

    def _post(
        self, destination: DestinationSpec, body: bytes, headers: dict[str, str]
    ) -> DeliveryResult:
        started = time.perf_counter()
        try:
            resp = self._http.post(
                destination.url, data=body, headers=headers, timeout=destination.timeout_sec
            )
        except requests.RequestException as e:
            return fail_result(
                _TRANSPORT,
                destination.id,
                f"{type(e).__name__}: {e}",
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
        duration_ms = int((time.perf_counter() - started) * 1000)
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

    def send_chunk(self, destination: DestinationSpec, chunk: StreamChunk) -> DeliveryResult:
        body = canonical_json(chunk.to_body()).encode("utf-8")
        return self._post(destination, body, chunk_headers(destination, chunk, body))

    def send_control(
        self, destination: DestinationSpec, kind: str, *, session_id: str, organization_id: str
    ) -> DeliveryResult:
        body = canonical_json(
            control_message(kind, session_id=session_id, organization_id=organization_id)
        ).encode("utf-8")
        headers = dict(destination.headers)
        headers["Content-Type"] = "application/json"
        return self._post(destination, body, headers)
