"""
Синтетический захват для dev/e2e/тестов.

Назначение:
- позволить гонять capture → transcode без реальной платформы
- файл растёт порциями в течение duration_sec (проверка chunk relay)
- сценарий ростера: участники заходят/говорят/выходят
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any

from meeting_capture_agent.common.time import utc_now_iso
from meeting_capture_agent.domain.enums import Platform
from meeting_capture_agent.tracking.participants import (
    Participant,
    RosterSource,
    StaticRosterSource,
)

from .base import CaptureResult


def default_roster_script() -> list[list[Participant]]:
    host = Participant(name="Capture Host", role="host")
    guest = Participant(name="Guest Speaker")
    return [
        [host],
        [host, guest],
        [host, Participant(name="Guest Speaker", is_speaking=True)],
        [Participant(name="Capture Host", role="host", is_muted=True), guest],
        [host],
    ]


class SyntheticCaptureRunner:
    def __init__(
        self,
        *,
        duration_sec: float = 5.0,
        writes: int = 10,
        bytes_per_write: int = 4096,
        fail_with: str | None = None,
        empty_output: bool = False,
        roster_script: list[list[Participant]] | None = None,
    ) -> None:
        self.duration_sec = max(0.0, float(duration_sec))
        self.writes = max(1, int(writes))
        self.bytes_per_write = max(1, int(bytes_per_write))
        self.fail_with = fail_with
        self.empty_output = empty_output
        self.roster_script = roster_script
        self.calls = 0

    def roster(self, platform: str, target_url: str) -> RosterSource | None:
        _ = target_url
        return StaticRosterSource(
            self.roster_script if self.roster_script is not None else default_roster_script(),
            transient=Platform(platform) == Platform.youtube,
        )

    def capture(
        self,
        *,
        target_url: str,
        platform: str,
        credentials: dict[str, Any],
        output_path: Path,
        max_duration_sec: float,
    ) -> CaptureResult:
        _ = credentials
        self.calls += 1
        output_path.parent.mkdir(parents=True, exist_ok=True)
        log_path = output_path.with_suffix(".log")
        duration = min(self.duration_sec, float(max_duration_sec))
        pause = duration / self.writes

        lines = [f"{utc_now_iso()} capture_started platform={platform} url={target_url}"]
        if self.fail_with:
            lines.append(f"{utc_now_iso()} capture_failed error={self.fail_with}")
            log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
            return CaptureResult(success=False, log_path=log_path, error=self.fail_with)

        started = time.monotonic()
        with output_path.open("wb") as f:
            for i in range(self.writes):
                if not self.empty_output:
                    f.write(os.urandom(self.bytes_per_write))
                    f.flush()
                lines.append(f"{utc_now_iso()} capture_segment index={i}")
                if pause > 0:
                    time.sleep(pause)

        lines.append(f"{utc_now_iso()} capture_finished")
        log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return CaptureResult(
            success=True,
            file_path=output_path,
            duration_sec=round(time.monotonic() - started, 3),
            log_path=log_path,
        )


def build_capture_runner(provider: str, *, duration_sec: float = 5.0) -> SyntheticCaptureRunner:
    """
    Раннер захвата по CAPTURE_PROVIDER. Реальные платформенные раннеры
    подключаются отдельными пакетами; из коробки есть только synthetic.
    """
    name = (provider or "").strip().lower()
    if name != "synthetic":
        raise ValueError(f"unsupported CAPTURE_PROVIDER: {provider}")
    return SyntheticCaptureRunner(duration_sec=duration_sec)
