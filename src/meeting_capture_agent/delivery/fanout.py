"""
Event Fan-out Service.

Назначение:
- publish(): событие → все активные callback-получатели организации, подписанные на него
- relay() / deliver_chunk(): чанки стрима → stream-получатели (сессия + дефолты орг.)
- relay_metadata(): события участников → получатели формата metadata
- stream_start / stream_end уведомления, test(), история и статистика доставок

Гарантии:
- at-least-once: X-Event-Id одинаков во всех ретраях
- изоляция: ошибка одного получателя не влияет на других и не всплывает в job
- publish ждёт первые попытки не дольше одного таймаута; ретраи — в планировщике
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any

import requests

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.ids import new_event_id
from meeting_capture_agent.common.logging import get_delivery_logger
from meeting_capture_agent.common.metrics import record_delivery_attempt, record_stream_chunk
from meeting_capture_agent.common.time import utc_now_iso
from meeting_capture_agent.common.utils import canonical_json
from meeting_capture_agent.domain.enums import (
    DestinationTransport,
    EventType,
    StreamFormat,
)
from meeting_capture_agent.storage.blob import ObjectStore, stream_chunk_key
from meeting_capture_agent.storage.repositories import RecordStore

from .base import DeliveryResult, DestinationSpec, StreamChunk
from .results import fail_result, ok_result
from .scheduler import Delivery, DeliveryScheduler
from .sockets import SocketRegistry
from .stream import HttpStreamSender
from .webhook import WebhookSender, build_envelope, build_headers, encode_envelope

log = get_delivery_logger()

METADATA_CHUNK_INDEX = -1


class EventFanout:
    def __init__(
        self,
        records: RecordStore,
        *,
        object_store: ObjectStore | None = None,
        http: requests.Session | None = None,
        sockets: SocketRegistry | None = None,
        scheduler: DeliveryScheduler | None = None,
        start_scheduler: bool = True,
    ) -> None:
        s = get_settings()
        self.records = records
        self.object_store = object_store
        session = http or requests.Session()
        self.webhooks = WebhookSender(session)
        self.stream_http = HttpStreamSender(session)
        self.sockets = sockets or SocketRegistry(open_timeout_sec=s.stream_socket_open_timeout_sec)
        self.scheduler = scheduler or DeliveryScheduler(
            self._send_delivery,
            record=self._record_delivery,
            backoff_base_sec=s.delivery_backoff_base_sec,
            max_workers=s.delivery_max_workers,
            tick_sec=s.delivery_scheduler_tick_sec,
        )
        self._stream_pool = ThreadPoolExecutor(
            max_workers=max(1, s.delivery_max_workers), thread_name_prefix="stream-relay"
        )
        self._closed = threading.Event()
        if start_scheduler:
            self.scheduler.start()

    # =========================================================================
    # CALLBACKS
    # =========================================================================
    def _send_delivery(self, delivery: Delivery) -> DeliveryResult:
        return self.webhooks.send(delivery.destination, delivery.body, delivery.headers)

    def _record_delivery(self, delivery: Delivery, result: DeliveryResult, terminal: bool) -> None:
        self.records.add_delivery_attempt(
            destination_id=delivery.destination.id,
            event_id=delivery.event_id,
            event_type=delivery.event_type,
            attempt=delivery.attempt,
            success=result.ok,
            terminal=terminal,
            status_code=result.status_code,
            error=result.error,
            duration_ms=result.duration_ms,
        )

    def _deliveries_for(
        self,
        destinations: list[DestinationSpec],
        event_type: str,
        data: dict[str, Any],
    ) -> list[Delivery]:
        event_id = new_event_id("evt")
        envelope = build_envelope(event_type, data)
        body = encode_envelope(envelope)
        out: list[Delivery] = []
        for dest in destinations:
            headers = build_headers(
                body=body,
                secret=dest.secret,
                event_type=event_type,
                timestamp=envelope["timestamp"],
                event_id=event_id,
                extra=dest.headers,
            )
            out.append(
                Delivery(
                    event_id=event_id,
                    event_type=str(event_type),
                    destination=dest,
                    body=body,
                    headers=headers,
                )
            )
        return out

    def _dispatch(self, deliveries: list[Delivery]) -> list[DeliveryResult]:
        if not deliveries:
            return []
        futures = [self.scheduler.submit(d) for d in deliveries]
        timeout = max(d.destination.timeout_sec for d in deliveries)
        done, _ = wait(futures, timeout=timeout + 1.0)
        results: list[DeliveryResult] = []
        for d, f in zip(deliveries, futures, strict=True):
            if f in done and f.exception() is None:
                results.append(f.result())
            else:
                results.append(
                    fail_result(
                        d.destination.transport.value,
                        d.destination.id,
                        "first attempt still in flight",
                    )
                )
        return results

    def publish(
        self, organization_id: str, event_type: EventType | str, data: dict[str, Any]
    ) -> list[DeliveryResult]:
        """
        Разослать событие подписанным callback-получателям.
        Никогда не бросает: ошибки доставки фиксируются в DeliveryAttempt.
        """
        etype = EventType(event_type).value
        try:
            rows = self.records.list_callback_destinations(organization_id, etype)
        except Exception as e:
            log.error(
                "fanout_destinations_lookup_failed",
                extra={
                    "payload": {
                        "organization_id": organization_id,
                        "event": etype,
                        "err": str(e)[:200],
                    }
                },
            )
            return []
        destinations = [DestinationSpec.from_model(d) for d in rows]
        if not destinations:
            log.debug(
                "fanout_no_destinations",
                extra={"payload": {"organization_id": organization_id, "event": etype}},
            )
            return []

        results = self._dispatch(self._deliveries_for(destinations, etype, data))
        log.info(
            "fanout_published",
            extra={
                "payload": {
                    "organization_id": organization_id,
                    "event": etype,
                    "total": len(results),
                    "success": sum(1 for r in results if r.ok),
                }
            },
        )
        return results

    def test(self, destination_id: str) -> DeliveryResult:
        """
        Отправить тестовый envelope одному получателю (одна попытка, без ретраев).
        """
        row = self.records.get_destination(destination_id)
        if row is None:
            return fail_result("callback", destination_id, "destination not found")
        dest = DestinationSpec.from_model(row)
        event_type = dest.events[0] if dest.events else EventType.session_started.value
        data = {"test": True, "message": "This is a test event delivery"}
        [delivery] = self._deliveries_for([dest], event_type, data)
        result = self.webhooks.send(dest, delivery.body, delivery.headers)
        delivery.attempt = 1
        try:
            self._record_delivery(delivery, result, True)
        except Exception as e:
            log.error(
                "delivery_attempt_record_failed",
                extra={"payload": {"delivery_id": delivery.id, "err": str(e)[:200]}},
            )
        return result

    def history(self, destination_id: str, *, limit: int = 50):
        return self.records.list_delivery_attempts(destination_id, limit=limit)

    def stats(self, organization_id: str):
        return self.records.delivery_stats(organization_id)

    # =========================================================================
    # STREAM RELAY
    # =========================================================================
    def stream_destinations(self, organization_id: str, session_id: str) -> list[DestinationSpec]:
        try:
            rows = self.records.list_stream_destinations(organization_id, session_id)
        except Exception as e:
            log.error(
                "stream_destinations_lookup_failed",
                extra={"payload": {"session_id": session_id, "err": str(e)[:200]}},
            )
            return []
        return [DestinationSpec.from_model(d) for d in rows]

    def deliver_chunk(self, destination: DestinationSpec, chunk: StreamChunk) -> DeliveryResult:
        """
        Один чанк одному stream-получателю. Не бросает.
        """
        transport = destination.transport
        started = time.perf_counter()
        try:
            if transport == DestinationTransport.stream_http:
                result = self.stream_http.send_chunk(destination, chunk)
            elif transport == DestinationTransport.stream_socket:
                result = self.sockets.send_chunk(destination, chunk)
            elif transport == DestinationTransport.stream_storage:
                result = self._notify_storage_chunk(destination, chunk)
            else:
                result = fail_result(
                    transport.value,
                    destination.id,
                    f"unsupported stream transport: {transport.value}",
                )
        except Exception as e:
            result = fail_result(transport.value, destination.id, f"{type(e).__name__}: {e}")

        record_stream_chunk(transport=transport.value, ok=result.ok, size=chunk.size)
        record_delivery_attempt(
            transport=transport.value,
            result="success" if result.ok else "error",
            duration_ms=result.duration_ms
            if result.duration_ms is not None
            else (time.perf_counter() - started) * 1000,
        )
        if not result.ok:
            log.warning(
                "stream_chunk_failed",
                extra={
                    "payload": {
                        "destination_id": destination.id,
                        "session_id": chunk.session_id,
                        "chunk_index": chunk.chunk_index,
                        "err": result.error,
                    }
                },
            )
        return result

    def _notify_storage_chunk(
        self, destination: DestinationSpec, chunk: StreamChunk
    ) -> DeliveryResult:
        data: dict[str, Any] = {
            "sessionId": chunk.session_id,
            "chunkUrl": destination.url,
            "chunkIndex": chunk.chunk_index,
            **(chunk.metadata or {}),
        }
        if self.object_store is not None and isinstance(chunk.data, bytes):
            key = stream_chunk_key(chunk.organization_id, chunk.session_id, chunk.chunk_index)
            self.object_store.put_bytes(key, chunk.data)
            data["storageKey"] = key
            data["location"] = self.object_store.location(key)
        self.publish(chunk.organization_id, EventType.stream_chunk_ready, data)
        return ok_result(DestinationTransport.stream_storage.value, destination.id)

    def _broadcast(
        self, destinations: list[DestinationSpec], chunk: StreamChunk
    ) -> list[DeliveryResult]:
        if not destinations:
            return []
        futures = [self._stream_pool.submit(self.deliver_chunk, d, chunk) for d in destinations]
        return [f.result() for f in futures]

    def relay(self, session_id: str, chunk: StreamChunk) -> list[DeliveryResult]:
        """
        Один и тот же чанк всем media-получателям сессии.
        """
        dests = [
            d
            for d in self.stream_destinations(chunk.organization_id, session_id)
            if d.stream_format == StreamFormat.media_chunk
        ]
        return self._broadcast(dests, chunk)

    def relay_metadata(
        self, session_id: str, organization_id: str, metadata: dict[str, Any]
    ) -> list[DeliveryResult]:
        """
        Обновление метаданных (участники) → получатели формата metadata (http/socket).
        """
        dests = [
            d
            for d in self.stream_destinations(organization_id, session_id)
            if d.stream_format == StreamFormat.metadata
            and d.transport
            in (DestinationTransport.stream_http, DestinationTransport.stream_socket)
        ]
        chunk = StreamChunk(
            session_id=session_id,
            organization_id=organization_id,
            chunk_index=METADATA_CHUNK_INDEX,
            timestamp=utc_now_iso(),
            data=canonical_json(metadata),
            format=StreamFormat.metadata,
            metadata=metadata,
        )
        return self._broadcast(dests, chunk)

    def notify_stream_start(self, session_id: str, organization_id: str) -> None:
        for dest in self.stream_destinations(organization_id, session_id):
            if dest.transport != DestinationTransport.stream_http:
                continue
            res = self.stream_http.send_control(
                dest, "stream_start", session_id=session_id, organization_id=organization_id
            )
            if not res.ok:
                log.warning(
                    "stream_start_notify_failed",
                    extra={"payload": {"destination_id": dest.id, "err": res.error}},
                )
        log.info("stream_start_notified", extra={"payload": {"session_id": session_id}})

    def notify_stream_end(self, session_id: str, organization_id: str) -> None:
        for dest in self.stream_destinations(organization_id, session_id):
            if dest.transport == DestinationTransport.stream_socket:
                self.sockets.send_end(dest, session_id)
            elif dest.transport == DestinationTransport.stream_http:
                res = self.stream_http.send_control(
                    dest, "stream_end", session_id=session_id, organization_id=organization_id
                )
                if not res.ok:
                    log.warning(
                        "stream_end_notify_failed",
                        extra={"payload": {"destination_id": dest.id, "err": res.error}},
                    )
        log.info("stream_end_notified", extra={"payload": {"session_id": session_id}})

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self.sockets.close_all()
        self.scheduler.close()
        self._stream_pool.shutdown(wait=False, cancel_futures=True)
        log.info("fanout_closed")
