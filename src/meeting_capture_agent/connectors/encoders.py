"""
Энкодеры для transcode job.

- FfmpegEncoder: ffmpeg (VP9/Opus по умолчанию), прогресс через `-progress pipe:1`
- CopyEncoder: mock: копирует вход в выход (dev/тесты без ffmpeg)
"""

from __future__ import annotations

import json
import shutil
import subprocess
import tempfile
import threading
from pathlib import Path

from meeting_capture_agent.common.errors import ErrCode, TransientError

from .base import EncodeProfile, EncodeProgress, EncodeResult, ProgressCallback

# preset → -cpu-used для libvpx-vp9
_VP9_CPU_USED = {
    "ultrafast": "8",
    "superfast": "6",
    "veryfast": "5",
    "faster": "4",
    "fast": "3",
    "medium": "2",
    "slow": "1",
    "slower": "0",
    "veryslow": "0",
}


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def _parse_clock(value: str) -> float:
    """HH:MM:SS.micro → секунды."""
    try:
        h, m, s = value.strip().split(":")
        return int(h) * 3600 + int(m) * 60 + float(s)
    except ValueError:
        return 0.0


class FfmpegEncoder:
    def __init__(
        self,
        *,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        timeout_sec: float = 7200.0,
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.timeout_sec = float(timeout_sec)

    def build_command(
        self, input_path: Path, output_path: Path, profile: EncodeProfile
    ) -> list[str]:
        cmd = [
            self.ffmpeg_bin,
            "-hide_banner",
            "-loglevel",
            "error",
            "-nostats",
            "-progress",
            "pipe:1",
            "-i",
            str(input_path),
            "-c:v",
            f"lib{profile.codec}",
            "-crf",
            str(profile.crf),
            "-b:v",
            "0",
        ]
        if profile.width and profile.height:
            cmd += ["-vf", f"scale={profile.width}:{profile.height}"]
        cmd += ["-c:a", "libopus", "-b:a", profile.audio_bitrate]
        cmd += ["-cpu-used", _VP9_CPU_USED.get(profile.preset, "2")]
        cmd += ["-row-mt", "1", "-threads", "4"]
        cmd += ["-y", str(output_path)]
        return cmd

    def probe_duration(self, path: Path) -> float | None:
        cmd = [
            self.ffprobe_bin,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            str(path),
        ]
        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired):
            return None
        if proc.returncode != 0:
            return None
        try:
            duration = float(json.loads(proc.stdout or "{}").get("format", {}).get("duration"))
        except (TypeError, ValueError):
            return None
        return duration if duration > 0 else None

    def encode(
        self,
        input_path: Path,
        output_path: Path,
        profile: EncodeProfile,
        on_progress: ProgressCallback | None = None,
    ) -> EncodeResult:
        duration = self.probe_duration(input_path)
        cmd = self.build_command(input_path, output_path, profile)
        timed_out = threading.Event()

        with tempfile.TemporaryFile() as stderr_buf:
            try:
                proc = subprocess.Popen(
                    cmd, stdout=subprocess.PIPE, stderr=stderr_buf, text=True
                )
            except OSError as e:
                return EncodeResult(success=False, error=f"Failed to start ffmpeg: {e}")

            def _kill() -> None:
                timed_out.set()
                proc.kill()

            watchdog = threading.Timer(self.timeout_sec, _kill)
            watchdog.daemon = True
            watchdog.start()
            try:
                self._read_progress(proc, duration, on_progress)
                code = proc.wait()
            finally:
                watchdog.cancel()

            if timed_out.is_set():
                raise TransientError(
                    "ffmpeg превысил лимит времени",
                    details={"timeout_sec": self.timeout_sec},
                    code=ErrCode.TIMEOUT,
                )
            if code != 0:
                stderr_buf.seek(0)
                tail = stderr_buf.read().decode("utf-8", errors="replace")[-1000:]
                return EncodeResult(success=False, error=f"ffmpeg exited with code {code}: {tail}")

        if not output_path.exists():
            return EncodeResult(success=False, error="ffmpeg finished without output file")
        return EncodeResult(
            success=True, output_path=output_path, output_size=output_path.stat().st_size
        )

    def _read_progress(
        self,
        proc: subprocess.Popen,
        duration: float | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        assert proc.stdout is not None
        current = EncodeProgress(duration_sec=duration)
        for line in proc.stdout:
            key, sep, value = line.strip().partition("=")
            if not sep:
                continue
            if key == "frame" and value.isdigit():
                current.frame = int(value)
            elif key == "fps":
                current.fps = _parse_float(value)
            elif key == "out_time":
                current.out_time_sec = _parse_clock(value)
            elif key == "total_size" and value.isdigit():
                current.total_size = int(value)
            elif key == "speed":
                current.speed = value
            elif key == "progress":
                # конец блока key=value
                if duration:
                    current.percent = min(100.0, current.out_time_sec / duration * 100)
                if on_progress is not None:
                    on_progress(EncodeProgress(**current.__dict__))


class CopyEncoder:
    """
    Mock-энкодер: копирует файл, сообщает 50% и 100%.
    """

    def encode(
        self,
        input_path: Path,
        output_path: Path,
        profile: EncodeProfile,
        on_progress: ProgressCallback | None = None,
    ) -> EncodeResult:
        _ = profile
        if on_progress is not None:
            on_progress(EncodeProgress(percent=50.0))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(input_path, output_path)
        if on_progress is not None:
            on_progress(EncodeProgress(percent=100.0))
        return EncodeResult(
            success=True, output_path=output_path, output_size=output_path.stat().st_size
        )


def build_encoder(provider: str, *, timeout_sec: float = 7200.0):
    if (provider or "").strip().lower() == "copy":
        return CopyEncoder()
    return FfmpegEncoder(timeout_sec=timeout_sec)


def progress_percent(progress: EncodeProgress) -> int:
    """
    Прогресс энкодера → прогресс задачи [0, 99]; 100 ставит только успешное завершение.
    Процент, если известен; иначе оценка по времени; иначе frame // 100.
    """
    if progress.percent is not None:
        value = progress.percent
    elif progress.duration_sec and progress.out_time_sec:
        value = progress.out_time_sec / progress.duration_sec * 100
    else:
        value = progress.frame // 100
    return max(0, min(99, int(value)))
