"""
Трекер участников сессии.

Назначение:
- превратить шумный периодический снимок ростера в упорядоченный журнал событий
- diff(): чистая функция (состояние + снимок → новое состояние + события)
- ParticipantTracker: цикл опроса RosterSource с callback на каждое событие

Порядок событий одного тика:
1) joined: новые участники (в порядке снимка)
2) флаги: speaking / muted / presenting у известных участников
3) left: известные, присутствовавшие и пропавшие из снимка
   (не генерируется для transient-источников: чат, зрители)

Все события тика имеют одинаковый timestamp.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from meeting_capture_agent.common.ids import participant_id_from_name
from meeting_capture_agent.common.logging import get_project_logger
from meeting_capture_agent.common.metrics import PARTICIPANT_EVENTS_TOTAL
from meeting_capture_agent.common.time import utc_now_iso
from meeting_capture_agent.domain.enums import ParticipantEventType as PET

log = get_project_logger()

_SKIP_NAMES = frozenset({"", "unknown"})


# =============================================================================
# МОДЕЛИ
# =============================================================================
@dataclass
class Participant:
    name: str
    id: str = ""
    is_muted: bool = False
    is_video_on: bool = False
    is_presenting: bool = False
    is_speaking: bool = False
    role: str = "attendee"
    joined_at: str | None = None
    left_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "isMuted": self.is_muted,
            "isVideoOn": self.is_video_on,
            "isPresenting": self.is_presenting,
            "isSpeaking": self.is_speaking,
            "role": self.role,
            "joinedAt": self.joined_at,
            "leftAt": self.left_at,
        }


@dataclass
class ParticipantEvent:
    type: PET
    participant: Participant
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": PET(self.type).value,
            "participant": self.participant.to_dict(),
            "timestamp": self.timestamp,
        }


RosterState = dict[str, Participant]


class RosterSource(Protocol):
    """
    Источник снимков ростера.
    transient=True — участники "мимолётны" (чат/зрители), left не генерируем.
    """

    transient: bool

    def poll(self) -> list[Participant]: ...


# =============================================================================
# DIFF (чистая функция)
# =============================================================================
def _normalize(snapshot: list[Participant]) -> list[Participant]:
    seen: set[str] = set()
    out: list[Participant] = []
    for p in snapshot:
        name = (p.name or "").strip()
        if name.lower() in _SKIP_NAMES:
            continue
        pid = p.id or participant_id_from_name(name)
        # дубликаты id внутри снимка схлопываются в первый
        if pid in seen:
            continue
        seen.add(pid)
        out.append(replace(p, id=pid, name=name))
    return out


def diff(
    state: RosterState,
    snapshot: list[Participant],
    now: str,
    transient: bool = False,
) -> tuple[RosterState, list[ParticipantEvent]]:
    """
    Сравнить состояние со снимком. Входное состояние не мутируется.
    """
    new_state: RosterState = {pid: replace(p) for pid, p in state.items()}
    current = _normalize(snapshot)

    joined: list[ParticipantEvent] = []
    flags: list[ParticipantEvent] = []

    for p in current:
        known = new_state.get(p.id)
        if known is None:
            rec = replace(p, joined_at=now, left_at=None)
            new_state[p.id] = rec
            joined.append(ParticipantEvent(PET.joined, replace(rec), now))
            continue

        # вернувшийся после ухода остаётся известным: joined_at и left_at не трогаем
        rec = replace(p, joined_at=known.joined_at, left_at=known.left_at)
        new_state[p.id] = rec
        if known.is_speaking != p.is_speaking:
            t = PET.speaking_start if p.is_speaking else PET.speaking_end
            flags.append(ParticipantEvent(t, replace(rec), now))
        if known.is_muted != p.is_muted:
            t = PET.muted if p.is_muted else PET.unmuted
            flags.append(ParticipantEvent(t, replace(rec), now))
        if known.is_presenting != p.is_presenting:
            t = PET.presenting_start if p.is_presenting else PET.presenting_end
            flags.append(ParticipantEvent(t, replace(rec), now))

    left: list[ParticipantEvent] = []
    if not transient:
        present = {p.id for p in current}
        for pid, rec in new_state.items():
            if pid in present or rec.left_at is not None:
                continue
            rec.left_at = now
            left.append(ParticipantEvent(PET.left, replace(rec), now))

    return new_state, joined + flags + left


# =============================================================================
# ЦИКЛ ОПРОСА
# =============================================================================
EventCallback = Callable[[ParticipantEvent, list[Participant]], None]


@dataclass
class TrackerSummary:
    participants: list[Participant] = field(default_factory=list)
    events: list[ParticipantEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "participants": [p.to_dict() for p in self.participants],
            "participantEvents": [e.to_dict() for e in self.events],
        }


class ParticipantTracker:
    def __init__(
        self,
        source: RosterSource,
        *,
        interval_sec: float = 5.0,
        on_event: EventCallback | None = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._source = source
        self._interval = max(0.01, float(interval_sec))
        self._on_event = on_event
        self._clock = clock
        self._lock = threading.Lock()
        self._state: RosterState = {}
        self._events: list[ParticipantEvent] = []
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def transient(self) -> bool:
        return bool(getattr(self._source, "transient", False))

    def start(self) -> None:
        """
        Первый опрос сразу, дальше — по интервалу в фоне.
        """
        self.poll_once()
        self._thread = threading.Thread(target=self._loop, name="participant-tracker", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.poll_once()

    def poll_once(self) -> list[ParticipantEvent]:
        try:
            snapshot = self._source.poll()
        except Exception as e:
            log.warning("participant_poll_error", extra={"payload": {"err": str(e)[:200]}})
            return []
        with self._lock:
            self._state, events = diff(self._state, snapshot, self._clock(), self.transient)
            self._events.extend(events)
        self._emit(events)
        return events

    def stop(self) -> list[ParticipantEvent]:
        """
        Остановить опрос и закрыть всех ещё присутствующих событием left.
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval * 2)
            self._thread = None
        now = self._clock()
        events: list[ParticipantEvent] = []
        with self._lock:
            for rec in self._state.values():
                if rec.left_at is None:
                    rec.left_at = now
                    events.append(ParticipantEvent(PET.left, replace(rec), now))
            self._events.extend(events)
        self._emit(events)
        return events

    def _emit(self, events: list[ParticipantEvent]) -> None:
        if not events:
            return
        roster = self.participants()
        for ev in events:
            PARTICIPANT_EVENTS_TOTAL.labels(type=PET(ev.type).value).inc()
            if self._on_event is None:
                continue
            try:
                self._on_event(ev, roster)
            except Exception as e:
                log.warning(
                    "participant_event_callback_error",
                    extra={"payload": {"type": PET(ev.type).value, "err": str(e)[:200]}},
                )

    def participants(self) -> list[Participant]:
        with self._lock:
            return [replace(p) for p in self._state.values()]

    def events(self) -> list[ParticipantEvent]:
        with self._lock:
            return list(self._events)

    def summary(self) -> TrackerSummary:
        return TrackerSummary(participants=self.participants(), events=self.events())


# =============================================================================
# ПРОСТЫЕ ИСТОЧНИКИ
# =============================================================================
class StaticRosterSource:
    """
    Проигрывает заранее заданную последовательность снимков; последний повторяется.
    """

    def __init__(self, snapshots: list[list[Participant]], *, transient: bool = False) -> None:
        self._snapshots = [list(s) for s in snapshots]
        self._i = 0
        self.transient = transient

    def poll(self) -> list[Participant]:
        if not self._snapshots:
            return []
        snap = self._snapshots[min(self._i, len(self._snapshots) - 1)]
        self._i += 1
        return [replace(p) for p in snap]
