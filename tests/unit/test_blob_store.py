from __future__ import annotations

import pytest

from meeting_capture_agent.common.errors import NotFoundError
from meeting_capture_agent.storage.blob import (
    LocalObjectStore,
    encoded_key,
    recording_key,
    stream_chunk_key,
)


def test_put_get_roundtrip_and_overwrite(tmp_path) -> None:
    store = LocalObjectStore(tmp_path / "objects")
    src = tmp_path / "rec.webm"
    src.write_bytes(b"first")
    key = recording_key("org-1", "s1", "webm")

    assert store.put_file(key, src) == 5
    src.write_bytes(b"second!")
    assert store.put_file(key, src) == 7

    dst = tmp_path / "out" / "copy.webm"
    assert store.get_to_file(key, dst) == 7
    assert dst.read_bytes() == b"second!"
    assert not list((tmp_path / "objects").rglob("*.part"))


def test_missing_object_raises_not_found(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    with pytest.raises(NotFoundError):
        store.get_to_file("recordings/org/none.webm", tmp_path / "x")
    store.delete("recordings/org/none.webm")


@pytest.mark.parametrize("key", ["", "../etc/passwd", "a/../../b", "/"])
def test_path_traversal_rejected(tmp_path, key) -> None:
    with pytest.raises(ValueError):
        LocalObjectStore(tmp_path).put_bytes(key, b"x")


def test_keys_are_deterministic() -> None:
    assert recording_key("o", "s", "webm") == "recordings/o/s.webm"
    assert encoded_key("o", "a", "mp4") == "encoded/o/a.mp4"
    assert stream_chunk_key("o", "s", 12) == "streams/o/s/000012.chunk"


def test_location_is_file_uri(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    store.put_bytes("a/b.bin", b"1")
    assert store.exists("a/b.bin")
    assert store.location("a/b.bin").startswith("file://")
    store.delete("a/b.bin")
    assert not store.exists("a/b.bin")
