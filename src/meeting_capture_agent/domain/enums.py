"""
Доменные перечисления (enum).

Используются во всей системе:
- статусы Session / Artifact / Job
- транспорты и форматы Destination
- типы событий fan-out и событий участников
"""

from __future__ import annotations

import enum


class SessionStatus(str, enum.Enum):
    """
    Статус сессии захвата (монотонный).
    """

    pending = "PENDING"
    recording = "RECORDING"
    completed = "COMPLETED"
    failed = "FAILED"


class ArtifactStatus(str, enum.Enum):
    """
    Статус артефакта (сырая запись → перекодированная).
    """

    raw = "RAW"
    encoding = "ENCODING"
    encoded = "ENCODED"
    failed = "FAILED"


class JobKind(str, enum.Enum):
    capture = "capture"
    transcode = "transcode"


class JobState(str, enum.Enum):
    queued = "queued"
    leased = "leased"
    succeeded = "succeeded"
    failed = "failed"


class Platform(str, enum.Enum):
    teams = "TEAMS"
    slack = "SLACK"
    youtube = "YOUTUBE"
    synthetic = "SYNTHETIC"


class DestinationTransport(str, enum.Enum):
    """
    Куда и как доставляем:
    - callback: подписанный POST (webhook)
    - stream_http: периодический POST base64-чанков
    - stream_socket: постоянное socket-соединение (auth → chunk... → stream_end)
    - stream_storage: данные не передаём, шлём callback с адресом в хранилище
    """

    callback = "callback"
    stream_http = "stream_http"
    stream_socket = "stream_socket"
    stream_storage = "stream_storage"


STREAM_TRANSPORTS = frozenset(
    {
        DestinationTransport.stream_http,
        DestinationTransport.stream_socket,
        DestinationTransport.stream_storage,
    }
)


class StreamFormat(str, enum.Enum):
    media_chunk = "media_chunk"
    metadata = "metadata"


class EventType(str, enum.Enum):
    """
    События, на которые подписываются callback-получатели.
    """

    session_started = "session.started"
    session_completed = "session.completed"
    session_failed = "session.failed"
    artifact_ready = "artifact.ready"
    encoding_started = "encoding.started"
    encoding_completed = "encoding.completed"
    encoding_failed = "encoding.failed"
    stream_chunk_ready = "stream.chunk_ready"


class ParticipantEventType(str, enum.Enum):
    joined = "joined"
    left = "left"
    speaking_start = "speaking_start"
    speaking_end = "speaking_end"
    muted = "muted"
    unmuted = "unmuted"
    presenting_start = "presenting_start"
    presenting_end = "presenting_end"


class DeliveryState(str, enum.Enum):
    """
    Состояние доставки одного события одному Destination.
    """

    queued = "queued"
    in_flight = "in_flight"
    retrying = "retrying"
    succeeded = "succeeded"
    exhausted = "exhausted"
