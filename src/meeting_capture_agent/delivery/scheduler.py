"""
Планировщик доставок callback-событий.

Состояния одной доставки (событие × Destination):
    queued → in_flight → succeeded
                       → retrying → in_flight → ...
                       → exhausted (бюджет попыток исчерпан)

Правила:
- попытка n (с 1) неуспешна и n < retry_budget → следующая через 2^n * base сек
- каждая попытка фиксируется через record-callback (DeliveryAttempt)
- время — через Clock (тесты вызывают run_due(now) без sleep)
- доставки разных Destination независимы
- close() не теряет ретраи: неотправленные доставки фиксируются терминальной
  попыткой с ошибкой ABANDONED_ERROR
"""

from __future__ import annotations

import heapq
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

from meeting_capture_agent.common.logging import get_delivery_logger
from meeting_capture_agent.common.metrics import DELIVERIES_PENDING, record_delivery_attempt
from meeting_capture_agent.common.time import Clock, monotonic_clock
from meeting_capture_agent.domain.enums import DeliveryState

from .base import DeliveryResult, DestinationSpec

log = get_delivery_logger()

ABANDONED_ERROR = "abandoned on shutdown"


@dataclass(eq=False)
class Delivery:
    event_id: str
    event_type: str
    destination: DestinationSpec
    body: bytes
    headers: dict[str, str]
    attempt: int = 0
    state: DeliveryState = DeliveryState.queued
    next_attempt_at: float = 0.0
    last_result: DeliveryResult | None = None
    first_attempt_done: threading.Event = field(default_factory=threading.Event)
    finished: threading.Event = field(default_factory=threading.Event)

    @property
    def id(self) -> str:
        return f"{self.event_id}:{self.destination.id}"

    @property
    def budget(self) -> int:
        return max(1, int(self.destination.retry_budget))

    @property
    def is_terminal(self) -> bool:
        return self.state in (DeliveryState.succeeded, DeliveryState.exhausted)


SendFn = Callable[[Delivery], DeliveryResult]
RecordFn = Callable[[Delivery, DeliveryResult, bool], None]


class DeliveryScheduler:
    def __init__(
        self,
        send: SendFn,
        *,
        record: RecordFn | None = None,
        backoff_base_sec: float = 1.0,
        max_workers: int = 16,
        tick_sec: float = 0.5,
        clock: Clock = monotonic_clock,
    ) -> None:
        self._send = send
        self._record = record
        self._backoff_base_sec = float(backoff_base_sec)
        self._tick_sec = max(0.01, float(tick_sec))
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)), thread_name_prefix="delivery"
        )
        self._lock = threading.Lock()
        self._heap: list[tuple[float, int, Delivery]] = []
        self._seq = 0
        self._active: dict[str, Delivery] = {}
        self._finished: deque[Delivery] = deque(maxlen=1000)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Публичный API
    # -------------------------------------------------------------------------
    def backoff_for(self, attempt: int) -> float:
        return (2 ** max(1, int(attempt))) * self._backoff_base_sec

    def submit(self, delivery: Delivery) -> Future:
        """
        Первая попытка — сразу в пуле доставки.
        """
        with self._lock:
            delivery.state = DeliveryState.queued
            self._active[delivery.id] = delivery
        return self._executor.submit(self._attempt, delivery)

    def run_due(self, now: float | None = None) -> list[Future]:
        """
        Запустить все ретраи, чьё время наступило.
        """
        now = self._clock() if now is None else now
        due: list[Delivery] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, d = heapq.heappop(self._heap)
                due.append(d)
            DELIVERIES_PENDING.set(len(self._heap))
        return [self._executor.submit(self._attempt, d) for d in due]

    def get(self, delivery_id: str) -> Delivery | None:
        with self._lock:
            d = self._active.get(delivery_id)
            if d is not None:
                return d
            for f in self._finished:
                if f.id == delivery_id:
                    return f
        return None

    def pending(self) -> int:
        with self._lock:
            return len(self._heap)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="delivery-scheduler", daemon=True)
        self._thread.start()

    def close(self, *, wait: bool = False) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._tick_sec * 2)
            self._thread = None
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        self._abandon_pending()

    # -------------------------------------------------------------------------
    # Внутреннее
    # -------------------------------------------------------------------------
    def _abandon_pending(self) -> None:
        with self._lock:
            abandoned = [
                d
                for d in self._active.values()
                if d.state in (DeliveryState.queued, DeliveryState.retrying)
            ]
            self._heap.clear()
            for d in abandoned:
                d.attempt += 1
                d.state = DeliveryState.exhausted
                d.last_result = DeliveryResult(
                    ok=False,
                    transport=d.destination.transport.value,
                    destination_id=d.destination.id,
                    error=ABANDONED_ERROR,
                )
                self._active.pop(d.id, None)
                self._finished.append(d)
            DELIVERIES_PENDING.set(0)

        for d in abandoned:
            self._record_attempt(d, d.last_result, True)
            record_delivery_attempt(
                transport=d.destination.transport.value, result="abandoned", duration_ms=None
            )
            log.warning(
                "delivery_abandoned",
                extra={
                    "payload": {
                        "delivery_id": d.id,
                        "event_type": d.event_type,
                        "destination_id": d.destination.id,
                        "attempt": d.attempt,
                    }
                },
            )
            d.first_attempt_done.set()
            d.finished.set()

    def _record_attempt(self, delivery: Delivery, result: DeliveryResult, terminal: bool) -> None:
        if self._record is None:
            return
        try:
            self._record(delivery, result, terminal)
        except Exception as e:
            log.error(
                "delivery_attempt_record_failed",
                extra={"payload": {"delivery_id": delivery.id, "err": str(e)[:200]}},
            )

    def _loop(self) -> None:
        while not self._stop.wait(self._tick_sec):
            try:
                self.run_due()
            except RuntimeError:
                # executor уже закрыт
                return

    def _attempt(self, delivery: Delivery) -> DeliveryResult | None:
        with self._lock:
            if delivery.is_terminal:
                # снята при close()
                return delivery.last_result
            delivery.state = DeliveryState.in_flight
            delivery.attempt += 1
        transport = delivery.destination.transport.value

        try:
            result = self._send(delivery)
        except Exception as e:
            result = DeliveryResult(
                ok=False,
                transport=transport,
                destination_id=delivery.destination.id,
                error=f"{type(e).__name__}: {e}"[:1000],
            )

        # после close() ретрай уже некому запускать: эта попытка последняя
        terminal = result.ok or delivery.attempt >= delivery.budget or self._stop.is_set()
        self._record_attempt(delivery, result, terminal)

        ctx = {
            "delivery_id": delivery.id,
            "event_type": delivery.event_type,
            "destination_id": delivery.destination.id,
            "attempt": delivery.attempt,
            "status_code": result.status_code,
        }
        with self._lock:
            delivery.last_result = result
            if result.ok:
                delivery.state = DeliveryState.succeeded
            elif terminal:
                delivery.state = DeliveryState.exhausted
            else:
                delivery.state = DeliveryState.retrying
                delivery.next_attempt_at = self._clock() + self.backoff_for(delivery.attempt)
                self._seq += 1
                heapq.heappush(self._heap, (delivery.next_attempt_at, self._seq, delivery))
            if delivery.is_terminal:
                self._active.pop(delivery.id, None)
                self._finished.append(delivery)
            DELIVERIES_PENDING.set(len(self._heap))

        if result.ok:
            record_delivery_attempt(
                transport=transport, result="success", duration_ms=result.duration_ms
            )
            log.info("delivery_succeeded", extra={"payload": ctx})
        elif terminal:
            record_delivery_attempt(
                transport=transport, result="exhausted", duration_ms=result.duration_ms
            )
            log.error("delivery_exhausted", extra={"payload": {**ctx, "err": result.error}})
        else:
            record_delivery_attempt(
                transport=transport, result="retry", duration_ms=result.duration_ms
            )
            log.warning(
                "delivery_retry_scheduled",
                extra={
                    "payload": {
                        **ctx,
                        "err": result.error,
                        "backoff_sec": self.backoff_for(delivery.attempt),
                    }
                },
            )

        delivery.first_attempt_done.set()
        if delivery.is_terminal:
            delivery.finished.set()
        return result
