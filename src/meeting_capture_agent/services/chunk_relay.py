"""
Chunk relay растущего файла записи.

Назначение:
- пока идёт захват, периодически читать новые байты файла и отдавать их
  stream-получателям (http / socket / storage) через EventFanout
- у каждого получателя свой курсор (смещение в файле) и свой следующий chunkIndex
- курсор и индекс двигаются только после успешной доставки:
  индексы строго растут без пропусков, неудачный диапазон отправляется повторно
- чанк не больше max_chunk_bytes; отставший получатель догоняет несколькими чанками
- после max_consecutive_failures неудач подряд получатель отключается до конца захвата
- finish() останавливает цикл и досылает остаток; isFinal=true у последнего чанка
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from meeting_capture_agent.common.logging import get_project_logger
from meeting_capture_agent.common.time import utc_now_iso
from meeting_capture_agent.delivery.base import DeliveryResult, DestinationSpec, StreamChunk
from meeting_capture_agent.delivery.fanout import EventFanout
from meeting_capture_agent.domain.enums import StreamFormat

log = get_project_logger()

DEFAULT_CHUNK_INTERVAL_MS = 5_000
DEFAULT_MAX_CHUNK_BYTES = 8 * 1024 * 1024
DEFAULT_MAX_CONSECUTIVE_FAILURES = 10


@dataclass
class _Cursor:
    offset: int = 0
    next_index: int = 0
    failures: int = 0
    disabled: bool = False


class ChunkRelay:
    def __init__(
        self,
        fanout: EventFanout,
        *,
        session_id: str,
        organization_id: str,
        platform: str,
        file_path: Path,
        destinations: list[DestinationSpec],
        on_chunk: Callable[[int], None] | None = None,
        clock: Callable[[], str] = utc_now_iso,
        max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
    ) -> None:
        self.fanout = fanout
        self.session_id = session_id
        self.organization_id = organization_id
        self.platform = platform
        self.file_path = Path(file_path)
        self.destinations = [
            d for d in destinations if d.stream_format == StreamFormat.media_chunk
        ]
        self.on_chunk = on_chunk
        self._clock = clock
        self.max_chunk_bytes = max(1, int(max_chunk_bytes))
        self.max_consecutive_failures = max(0, int(max_consecutive_failures))
        self._cursors: dict[str, _Cursor] = {d.id: _Cursor() for d in self.destinations}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._ticks_with_data = 0

    @property
    def interval_sec(self) -> float:
        if not self.destinations:
            return DEFAULT_CHUNK_INTERVAL_MS / 1000.0
        return max(0.01, min(d.chunk_interval_ms for d in self.destinations) / 1000.0)

    @property
    def active(self) -> bool:
        return bool(self.destinations)

    def disabled(self) -> list[str]:
        return [k for k, c in self._cursors.items() if c.disabled]

    def cursor(self, destination_id: str) -> tuple[int, int]:
        """(offset, next_index) для получателя."""
        c = self._cursors[destination_id]
        return c.offset, c.next_index

    # =========================================================================
    # LOOP
    # =========================================================================
    def start(self) -> None:
        if not self.active or self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop, name=f"chunk-relay-{self.session_id}", daemon=True
        )
        self._thread.start()
        log.info(
            "chunk_relay_started",
            extra={
                "payload": {
                    "session_id": self.session_id,
                    "destinations": len(self.destinations),
                    "interval_sec": self.interval_sec,
                }
            },
        )

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_sec):
            try:
                self.tick()
            except Exception as e:
                log.warning(
                    "chunk_relay_tick_failed",
                    extra={"payload": {"session_id": self.session_id, "err": str(e)[:200]}},
                )

    def finish(self, *, flush: bool = True) -> list[DeliveryResult]:
        """
        Остановить цикл и дослать хвост файла как финальный чанк.
        flush=False — только остановка (захват не удался, хвост не нужен).
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if not self.active or not flush:
            return []
        results = self.tick(final=True)
        log.info(
            "chunk_relay_finished",
            extra={
                "payload": {
                    "session_id": self.session_id,
                    "cursors": {k: c.next_index for k, c in self._cursors.items()},
                }
            },
        )
        return results

    # =========================================================================
    # TICK
    # =========================================================================
    def tick(self, *, final: bool = False) -> list[DeliveryResult]:
        """
        Один проход по всем получателям. Получатели без новых байт пропускаются.
        """
        with self._lock:
            try:
                total_size = self.file_path.stat().st_size
            except FileNotFoundError:
                return []

            results: list[DeliveryResult] = []
            for dest in self.destinations:
                results.extend(self._relay_to(dest, total_size, final=final))

            if any(r.ok for r in results):
                self._ticks_with_data += 1
                if self.on_chunk is not None:
                    self.on_chunk(self._ticks_with_data)
            return results

    def _relay_to(
        self, dest: DestinationSpec, total_size: int, *, final: bool
    ) -> list[DeliveryResult]:
        """
        Досылать чанки получателю, пока он не догонит total_size или не случится ошибка.
        """
        cursor = self._cursors[dest.id]
        results: list[DeliveryResult] = []
        while not cursor.disabled and cursor.offset < total_size:
            chunk = self._read_chunk(cursor, total_size, final=final)
            if chunk.size == 0:
                break
            result = self.fanout.deliver_chunk(dest, chunk)
            results.append(result)
            if result.ok:
                cursor.offset += chunk.size
                cursor.next_index += 1
                cursor.failures = 0
                continue
            cursor.failures += 1
            limit = self.max_consecutive_failures
            if limit and cursor.failures >= limit:
                cursor.disabled = True
                log.warning(
                    "chunk_relay_destination_disabled",
                    extra={
                        "payload": {
                            "session_id": self.session_id,
                            "destination_id": dest.id,
                            "failures": cursor.failures,
                            "offset": cursor.offset,
                            "err": result.error,
                        }
                    },
                )
            break
        return results

    def _read_chunk(self, cursor: _Cursor, total_size: int, *, final: bool) -> StreamChunk:
        size = min(total_size - cursor.offset, self.max_chunk_bytes)
        with self.file_path.open("rb") as f:
            f.seek(cursor.offset)
            data = f.read(size)
        metadata: dict[str, object] = {
            "platform": self.platform,
            "totalSize": total_size,
            "chunkSize": len(data),
        }
        if final and cursor.offset + len(data) >= total_size:
            metadata["isFinal"] = True
        return StreamChunk(
            session_id=self.session_id,
            organization_id=self.organization_id,
            chunk_index=cursor.next_index,
            timestamp=self._clock(),
            data=data,
            format=StreamFormat.media_chunk,
            metadata=metadata,
        )
