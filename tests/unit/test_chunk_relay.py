from __future__ import annotations

from meeting_capture_agent.delivery.base import DestinationSpec
from meeting_capture_agent.delivery.results import fail_result, ok_result
from meeting_capture_agent.domain.enums import DestinationTransport, StreamFormat
from meeting_capture_agent.services.chunk_relay import ChunkRelay


class _FakeFanout:
    def __init__(self) -> None:
        self.sent = []
        self.failing: set[str] = set()

    def deliver_chunk(self, destination, chunk):
        self.sent.append((destination.id, chunk))
        if destination.id in self.failing:
            return fail_result(destination.transport.value, destination.id, "HTTP 503")
        return ok_result(destination.transport.value, destination.id)


def _dest(dest_id: str, *, fmt: StreamFormat = StreamFormat.media_chunk, interval_ms: int = 5000):
    return DestinationSpec(
        id=dest_id,
        organization_id="org-1",
        transport=DestinationTransport.stream_http,
        url=f"http://receiver/{dest_id}",
        stream_format=fmt,
        chunk_interval_ms=interval_ms,
    )


def _relay(tmp_path, fanout, destinations, **kwargs):
    return ChunkRelay(
        fanout,
        session_id="sess-1",
        organization_id="org-1",
        platform="TEAMS",
        file_path=tmp_path / "rec.webm",
        destinations=destinations,
        clock=lambda: "2026-01-01T00:00:00Z",
        **kwargs,
    )


def test_chunks_carry_new_bytes_and_consecutive_indices(tmp_path) -> None:
    fanout = _FakeFanout()
    relay = _relay(tmp_path, fanout, [_dest("d1")])
    path = tmp_path / "rec.webm"

    assert relay.tick() == []  # файла ещё нет
    path.write_bytes(b"aaaa")
    relay.tick()
    relay.tick()  # новых байт нет
    with path.open("ab") as f:
        f.write(b"bb")
    relay.tick()

    chunks = [c for _, c in fanout.sent]
    assert [c.chunk_index for c in chunks] == [0, 1]
    assert [c.data for c in chunks] == [b"aaaa", b"bb"]
    assert chunks[1].metadata == {"platform": "TEAMS", "totalSize": 6, "chunkSize": 2}
    assert relay.cursor("d1") == (6, 2)


def test_failed_range_is_resent_under_same_index(tmp_path) -> None:
    fanout = _FakeFanout()
    relay = _relay(tmp_path, fanout, [_dest("ok"), _dest("flaky")])
    path = tmp_path / "rec.webm"

    fanout.failing.add("flaky")
    path.write_bytes(b"1234")
    relay.tick()
    assert relay.cursor("ok") == (4, 1)
    assert relay.cursor("flaky") == (0, 0)

    fanout.failing.clear()
    with path.open("ab") as f:
        f.write(b"56")
    relay.tick()

    flaky = [c for dest_id, c in fanout.sent if dest_id == "flaky"]
    assert [(c.chunk_index, c.data) for c in flaky] == [(0, b"1234"), (0, b"123456")]
    assert relay.cursor("flaky") == (6, 1)
    assert relay.cursor("ok") == (6, 2)


def test_finish_flushes_tail_as_final_chunk(tmp_path) -> None:
    fanout = _FakeFanout()
    ticks = []
    relay = _relay(tmp_path, fanout, [_dest("d1")], on_chunk=ticks.append)
    path = tmp_path / "rec.webm"
    path.write_bytes(b"head")
    relay.tick()
    with path.open("ab") as f:
        f.write(b"tail")

    results = relay.finish()

    assert len(results) == 1 and results[0].ok
    last = fanout.sent[-1][1]
    assert last.data == b"tail"
    assert last.metadata["isFinal"] is True
    assert ticks == [1, 2]


def test_finish_without_flush_sends_nothing(tmp_path) -> None:
    fanout = _FakeFanout()
    relay = _relay(tmp_path, fanout, [_dest("d1")])
    (tmp_path / "rec.webm").write_bytes(b"partial")
    assert relay.finish(flush=False) == []
    assert fanout.sent == []


def test_only_media_destinations_are_relayed(tmp_path) -> None:
    relay = _relay(
        tmp_path,
        _FakeFanout(),
        [_dest("meta", fmt=StreamFormat.metadata), _dest("a", interval_ms=2000), _dest("b")],
    )
    assert [d.id for d in relay.destinations] == ["a", "b"]
    assert relay.interval_sec == 2.0

    idle = _relay(tmp_path, _FakeFanout(), [_dest("meta", fmt=StreamFormat.metadata)])
    assert idle.active is False
    idle.start()
    assert idle.finish() == []


def test_chunk_size_is_capped_while_destination_keeps_failing(tmp_path) -> None:
    fanout = _FakeFanout()
    fanout.failing.add("down")
    relay = _relay(tmp_path, fanout, [_dest("down")], max_chunk_bytes=1000)
    path = tmp_path / "rec.webm"

    for _ in range(5):
        with path.open("ab") as f:
            f.write(b"x" * 3000)
        relay.tick()

    sizes = [c.size for _, c in fanout.sent]
    assert sizes == [1000] * 5
    assert {c.chunk_index for _, c in fanout.sent} == {0}
    assert relay.cursor("down") == (0, 0)


def test_lagging_destination_catches_up_in_capped_chunks(tmp_path) -> None:
    fanout = _FakeFanout()
    relay = _relay(tmp_path, fanout, [_dest("d1")], max_chunk_bytes=4)
    path = tmp_path / "rec.webm"
    path.write_bytes(b"abcdefghij")

    relay.tick()
    with path.open("ab") as f:
        f.write(b"kl")
    relay.finish()

    chunks = [c for _, c in fanout.sent]
    assert [c.data for c in chunks] == [b"abcd", b"efgh", b"ij", b"kl"]
    assert [c.chunk_index for c in chunks] == [0, 1, 2, 3]
    assert [c.metadata.get("isFinal", False) for c in chunks] == [False, False, False, True]


def test_final_flush_marks_only_last_capped_chunk(tmp_path) -> None:
    fanout = _FakeFanout()
    relay = _relay(tmp_path, fanout, [_dest("d1")], max_chunk_bytes=3)
    (tmp_path / "rec.webm").write_bytes(b"1234567")

    results = relay.finish()

    assert [r.ok for r in results] == [True, True, True]
    chunks = [c for _, c in fanout.sent]
    assert [c.data for c in chunks] == [b"123", b"456", b"7"]
    assert [c.metadata.get("isFinal", False) for c in chunks] == [False, False, True]


def test_destination_disabled_after_consecutive_failures(tmp_path) -> None:
    fanout = _FakeFanout()
    fanout.failing.add("down")
    relay = _relay(tmp_path, fanout, [_dest("down"), _dest("up")], max_consecutive_failures=3)
    path = tmp_path / "rec.webm"

    for _ in range(5):
        with path.open("ab") as f:
            f.write(b"zz")
        relay.tick()
    relay.finish()

    down = [c for dest_id, c in fanout.sent if dest_id == "down"]
    assert len(down) == 3
    assert relay.disabled() == ["down"]
    assert relay.cursor("up") == (10, 5)


def test_failure_counter_resets_after_success(tmp_path) -> None:
    fanout = _FakeFanout()
    relay = _relay(tmp_path, fanout, [_dest("flaky")], max_consecutive_failures=2)
    path = tmp_path / "rec.webm"

    for fail in (True, False, True, False):
        if fail:
            fanout.failing.add("flaky")
        else:
            fanout.failing.discard("flaky")
        with path.open("ab") as f:
            f.write(b"q")
        relay.tick()

    assert relay.disabled() == []
    assert relay.cursor("flaky") == (4, 2)
