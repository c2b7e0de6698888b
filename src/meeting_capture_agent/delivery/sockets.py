"""
Stream socket транспорт (WebSocket).

Протокол кадров (JSON text frames):
- {"type": "auth", "secret": ...}        — первым кадром, если задан secret
- {"type": "chunk", ...тело чанка...}
- {"type": "stream_end", "sessionId", "timestamp"}

Правила:
- соединение открывается лениво при первом чанке
- одно соединение на Destination; реестр принадлежит экземпляру fan-out
- создание соединения под per-destination lock (без гонок при параллельных чанках)
- при ошибке отправки соединение закрывается и удаляется из реестра
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from websockets.sync.client import connect as ws_connect

from meeting_capture_agent.common.logging import get_delivery_logger
from meeting_capture_agent.common.time import utc_now_iso
from meeting_capture_agent.contracts.versions import STREAM_PROTOCOL_VERSION
from meeting_capture_agent.domain.enums import DestinationTransport

from .base import DeliveryResult, DestinationSpec, StreamChunk
from .results import fail_result, ok_result

log = get_delivery_logger()

_TRANSPORT = DestinationTransport.stream_socket.value


class SocketConnection(Protocol):
    def send(self, message: str) -> None: ...

    def close(self) -> None: ...


Connector = Callable[[DestinationSpec, float], SocketConnection]


def default_connector(destination: DestinationSpec, open_timeout_sec: float) -> SocketConnection:
    return ws_connect(
        destination.url,
        open_timeout=open_timeout_sec,
        additional_headers=destination.headers or None,
    )


def _dumps(frame: dict[str, Any]) -> str:
    return json.dumps(frame, ensure_ascii=False, separators=(",", ":"), default=str)


class SocketRegistry:
    def __init__(
        self,
        *,
        connector: Connector | None = None,
        open_timeout_sec: float = 10.0,
    ) -> None:
        self._connector = connector or default_connector
        self._open_timeout_sec = float(open_timeout_sec)
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._conns: dict[str, SocketConnection] = {}

    def _lock_for(self, destination_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(destination_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[destination_id] = lock
            return lock

    def is_open(self, destination_id: str) -> bool:
        return destination_id in self._conns

    def _ensure(self, destination: DestinationSpec) -> SocketConnection:
        conn = self._conns.get(destination.id)
        if conn is not None:
            return conn
        conn = self._connector(destination, self._open_timeout_sec)
        if destination.secret:
            conn.send(
                _dumps(
                    {
                        "type": "auth",
                        "secret": destination.secret,
                        "version": STREAM_PROTOCOL_VERSION,
                    }
                )
            )
        self._conns[destination.id] = conn
        log.info("stream_socket_opened", extra={"payload": {"destination_id": destination.id}})
        return conn

    def _drop(self, destination_id: str) -> None:
        conn = self._conns.pop(destination_id, None)
        if conn is None:
            return
        try:
            conn.close()
        except Exception as e:
            log.debug(
                "stream_socket_close_error",
                extra={"payload": {"destination_id": destination_id, "err": str(e)[:200]}},
            )

    def send_chunk(self, destination: DestinationSpec, chunk: StreamChunk) -> DeliveryResult:
        frame = {"type": "chunk", **chunk.to_body()}
        started = time.perf_counter()
        with self._lock_for(destination.id):
            try:
                self._ensure(destination).send(_dumps(frame))
            except Exception as e:
                self._drop(destination.id)
                log.warning(
                    "stream_socket_send_failed",
                    extra={
                        "payload": {
                            "destination_id": destination.id,
                            "chunk_index": chunk.chunk_index,
                            "err": str(e)[:200],
                        }
                    },
                )
                return fail_result(
                    _TRANSPORT,
                    destination.id,
                    f"{type(e).__name__}: {e}",
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )
        return ok_result(
            _TRANSPORT, destination.id, duration_ms=int((time.perf_counter() - started) * 1000)
        )

    def send_end(self, destination: DestinationSpec, session_id: str) -> DeliveryResult | None:
        """
        stream_end и закрытие. Если соединение не открывалось — ничего не шлём (None).
        """
        with self._lock_for(destination.id):
            conn = self._conns.get(destination.id)
            if conn is None:
                return None
            try:
                frame = {"type": "stream_end", "sessionId": session_id, "timestamp": utc_now_iso()}
                conn.send(_dumps(frame))
                result = ok_result(_TRANSPORT, destination.id)
            except Exception as e:
                result = fail_result(_TRANSPORT, destination.id, f"{type(e).__name__}: {e}")
            self._drop(destination.id)
        log.info("stream_socket_closed", extra={"payload": {"destination_id": destination.id}})
        return result

    def close(self, destination_id: str) -> None:
        with self._lock_for(destination_id):
            self._drop(destination_id)

    def close_all(self) -> None:
        with self._guard:
            ids = list(self._conns)
        for destination_id in ids:
            self.close(destination_id)
