"""
Базовые интерфейсы коннекторов (интеграции с внешними системами).

Назначение:
- CaptureRunner: автоматизация, которая входит на платформу и пишет запись в файл
- Encoder: перекодирование записи (ffmpeg или mock)
- CredentialsResolver: учётные данные захвата по ссылке из payload
- отделить "как подключаемся" от state machine задач
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from meeting_capture_agent.tracking.participants import RosterSource


# =============================================================================
# CAPTURE
# =============================================================================
@dataclass
class CaptureResult:
    """
    Результат захвата. success=True ещё не гарантирует непустой файл:
    это проверяет capture job.
    """

    success: bool
    file_path: Path | None = None
    duration_sec: float | None = None
    log_path: Path | None = None
    error: str | None = None
    meta: dict[str, Any] | None = None


class CaptureRunner(Protocol):
    def roster(self, platform: str, target_url: str) -> RosterSource | None:
        """Источник ростера для трекера участников (None — не поддерживается)."""
        ...

    def capture(
        self,
        *,
        target_url: str,
        platform: str,
        credentials: dict[str, Any],
        output_path: Path,
        max_duration_sec: float,
    ) -> CaptureResult:
        """Блокирующий захват до конца сессии или лимита длительности."""
        ...


# =============================================================================
# ENCODE
# =============================================================================
@dataclass(frozen=True)
class EncodeProfile:
    output_format: str = "webm"
    codec: str = "vp9"
    crf: int = 30
    preset: str = "medium"
    audio_bitrate: str = "128k"
    width: int | None = None
    height: int | None = None


@dataclass
class EncodeProgress:
    frame: int = 0
    fps: float = 0.0
    out_time_sec: float = 0.0
    total_size: int = 0
    speed: str = ""
    percent: float | None = None
    duration_sec: float | None = None


@dataclass
class EncodeResult:
    success: bool
    output_path: Path | None = None
    output_size: int = 0
    error: str | None = None


ProgressCallback = Callable[[EncodeProgress], None]


class Encoder(Protocol):
    def encode(
        self,
        input_path: Path,
        output_path: Path,
        profile: EncodeProfile,
        on_progress: ProgressCallback | None = None,
    ) -> EncodeResult: ...


# =============================================================================
# CREDENTIALS
# =============================================================================
class CredentialsResolver(Protocol):
    def resolve(self, ref: str | None) -> dict[str, Any]: ...
