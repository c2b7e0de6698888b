from __future__ import annotations

import io
from pathlib import Path

from meeting_capture_agent.connectors.base import EncodeProfile, EncodeProgress
from meeting_capture_agent.connectors.encoders import (
    CopyEncoder,
    FfmpegEncoder,
    build_encoder,
    progress_percent,
)

_PROGRESS_OUTPUT = """\
frame=120
fps=30.0
out_time=00:00:05.000000
total_size=4096
speed=1.5x
progress=continue
frame=N/A
fps=N/A
out_time=00:00:10.000000
total_size=N/A
progress=end
"""


class _FakeProc:
    def __init__(self, text: str) -> None:
        self.stdout = io.StringIO(text)


def test_command_for_vp9_profile() -> None:
    enc = FfmpegEncoder(ffmpeg_bin="/usr/bin/ffmpeg")
    cmd = enc.build_command(
        Path("in.webm"), Path("out.webm"), EncodeProfile(preset="fast", width=1280, height=720)
    )
    assert cmd[0] == "/usr/bin/ffmpeg"
    assert cmd[cmd.index("-progress") + 1] == "pipe:1"
    assert cmd[cmd.index("-c:v") + 1] == "libvp9"
    assert cmd[cmd.index("-crf") + 1] == "30"
    assert cmd[cmd.index("-vf") + 1] == "scale=1280:720"
    assert cmd[cmd.index("-c:a") + 1] == "libopus"
    assert cmd[cmd.index("-cpu-used") + 1] == "3"
    assert cmd[-2:] == ["-y", "out.webm"]


def test_command_without_scale() -> None:
    cmd = FfmpegEncoder().build_command(Path("a"), Path("b"), EncodeProfile())
    assert "-vf" not in cmd


def test_progress_blocks_are_parsed() -> None:
    seen: list[EncodeProgress] = []
    FfmpegEncoder()._read_progress(_FakeProc(_PROGRESS_OUTPUT), 20.0, seen.append)

    assert len(seen) == 2
    assert seen[0].frame == 120
    assert seen[0].fps == 30.0
    assert seen[0].total_size == 4096
    assert seen[0].speed == "1.5x"
    assert seen[0].percent == 25.0
    # N/A не сбрасывает последнее известное значение
    assert seen[1].frame == 120
    assert seen[1].fps == 0.0
    assert seen[1].percent == 50.0


def test_missing_binary_is_reported_not_raised(tmp_path) -> None:
    src = tmp_path / "in.webm"
    src.write_bytes(b"raw")
    enc = FfmpegEncoder(ffmpeg_bin=str(tmp_path / "no-ffmpeg"), ffprobe_bin=str(tmp_path / "no"))
    assert enc.probe_duration(src) is None
    res = enc.encode(src, tmp_path / "out.webm", EncodeProfile())
    assert res.success is False
    assert res.error.startswith("Failed to start ffmpeg")


def test_copy_encoder(tmp_path) -> None:
    src = tmp_path / "in.webm"
    src.write_bytes(b"0123456789")
    seen = []
    res = CopyEncoder().encode(src, tmp_path / "nested" / "out.webm", EncodeProfile(), seen.append)
    assert res.success and res.output_size == 10
    assert [p.percent for p in seen] == [50.0, 100.0]


def test_build_encoder() -> None:
    assert isinstance(build_encoder("copy"), CopyEncoder)
    enc = build_encoder("ffmpeg", timeout_sec=5)
    assert isinstance(enc, FfmpegEncoder)
    assert enc.timeout_sec == 5.0


def test_progress_percent_sources_and_clamp() -> None:
    assert progress_percent(EncodeProgress(percent=42.7)) == 42
    assert progress_percent(EncodeProgress(percent=100.0)) == 99
    assert progress_percent(EncodeProgress(out_time_sec=30, duration_sec=60)) == 50
    assert progress_percent(EncodeProgress(frame=2500)) == 25
    assert progress_percent(EncodeProgress(frame=50_000)) == 99
    assert progress_percent(EncodeProgress()) == 0
