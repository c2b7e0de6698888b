from __future__ import annotations

import pytest

from meeting_capture_agent.common.utils import b64_decode, verify_signature
from meeting_capture_agent.delivery.base import StreamChunk
from meeting_capture_agent.delivery.fanout import METADATA_CHUNK_INDEX, EventFanout
from meeting_capture_agent.domain.enums import DestinationTransport, StreamFormat

ORG = "org-1"


@pytest.fixture()
def fanout(records, object_store, fake_http):
    f = EventFanout(records, object_store=object_store, http=fake_http, start_scheduler=False)
    yield f
    f.close()


def _callback(records, url: str, *, events=("session.completed",), **kw):
    return records.add_destination(
        organization_id=ORG,
        transport=DestinationTransport.callback,
        url=url,
        events=list(events),
        **kw,
    )


def _stream(records, url: str, transport=DestinationTransport.stream_http, **kw):
    return records.add_destination(organization_id=ORG, transport=transport, url=url, **kw)


def test_publish_isolates_destination_failures(fanout, records, fake_http) -> None:
    bad = _callback(records, "http://a/hook")
    good = _callback(records, "http://b/hook", secret="k")
    fake_http.statuses["http://a/hook"] = 500

    results = fanout.publish(ORG, "session.completed", {"sessionId": "s1"})

    by_dest = {r.destination_id: r for r in results}
    assert by_dest[bad.id].ok is False
    assert by_dest[good.id].ok is True
    [call] = fake_http.calls_to("http://b/hook")
    assert call.json()["data"] == {"sessionId": "s1"}
    assert verify_signature(call.body, "k", call.headers["X-Event-Signature"])

    # неудачная доставка ждёт ретрая, успешная завершена
    assert fanout.scheduler.pending() == 1
    attempts = records.list_delivery_attempts(bad.id)
    assert [(a.attempt, a.success, a.terminal) for a in attempts] == [(1, False, False)]


def test_publish_only_to_subscribed_active_callbacks(fanout, records, fake_http) -> None:
    _callback(records, "http://subscribed/hook", events=("session.started",))
    _callback(records, "http://other-event/hook", events=("artifact.ready",))
    _callback(records, "http://inactive/hook", events=("session.started",), is_active=False)
    _stream(records, "http://stream/in")

    results = fanout.publish(ORG, "session.started", {"sessionId": "s1"})

    assert len(results) == 1
    assert [c.url for c in fake_http.calls] == ["http://subscribed/hook"]
    assert fanout.publish("org-without-destinations", "session.started", {}) == []


def test_retry_budget_limits_attempts_and_keeps_event_id(fanout, records, fake_http) -> None:
    dest = _callback(records, "http://down/hook", retry_budget=3)
    fake_http.fail_urls.add("http://down/hook")

    fanout.publish(ORG, "session.completed", {"sessionId": "s1"})
    for _ in range(5):
        for f in fanout.scheduler.run_due(now=float("inf")):
            f.result(timeout=5)

    calls = fake_http.calls_to("http://down/hook")
    assert len(calls) == 3
    assert len({c.headers["X-Event-Id"] for c in calls}) == 1
    attempts = records.list_delivery_attempts(dest.id)
    assert sorted(a.attempt for a in attempts) == [1, 2, 3]
    assert [a.terminal for a in sorted(attempts, key=lambda a: a.attempt)] == [False, False, True]

    stats = fanout.stats(ORG)
    assert stats.total == 3 and stats.failed == 3


def test_test_delivery_is_single_attempt(fanout, records, fake_http) -> None:
    dest = _callback(records, "http://down/hook", retry_budget=5)
    fake_http.statuses["http://down/hook"] = 503

    result = fanout.test(dest.id)

    assert result.ok is False
    assert fake_http.calls[0].json()["data"]["test"] is True
    assert fanout.scheduler.pending() == 0
    [attempt] = fanout.history(dest.id)
    assert attempt.terminal is True
    assert fanout.test("missing").error == "destination not found"


def test_relay_sends_to_session_and_org_default_streams(fanout, records, fake_http) -> None:
    _stream(records, "http://session/in", session_id="s1", headers={"X-Stream-Chunk-Index": "x"})
    _stream(records, "http://default/in")
    _stream(records, "http://other-session/in", session_id="s2")

    chunk = StreamChunk(
        session_id="s1", organization_id=ORG, chunk_index=0, timestamp="t", data=b"\x00\x01"
    )
    results = fanout.relay("s1", chunk)

    assert len(results) == 2 and all(r.ok for r in results)
    assert sorted(c.url for c in fake_http.calls) == ["http://default/in", "http://session/in"]
    [call] = fake_http.calls_to("http://session/in")
    assert call.headers["X-Stream-Chunk-Index"] == "0"
    assert b64_decode(call.json()["data"]) == b"\x00\x01"


def test_storage_chunk_is_uploaded_then_announced(fanout, records, fake_http, object_store) -> None:
    storage = _stream(records, "s3://bucket/streams", transport=DestinationTransport.stream_storage)
    _callback(records, "http://hook/in", events=("stream.chunk_ready",))

    chunk = StreamChunk(
        session_id="s1",
        organization_id=ORG,
        chunk_index=3,
        timestamp="t",
        data=b"bytes",
        metadata={"isFinal": True},
    )
    [result] = fanout.relay("s1", chunk)

    assert result.ok and result.destination_id == storage.id
    key = "streams/org-1/s1/000003.chunk"
    assert object_store.get_bytes(key) == b"bytes"
    [call] = fake_http.calls_to("http://hook/in")
    data = call.json()["data"]
    assert data["chunkIndex"] == 3
    assert data["storageKey"] == key
    assert data["isFinal"] is True
    assert call.json()["event"] == "stream.chunk_ready"


def test_relay_metadata_goes_only_to_metadata_streams(fanout, records, fake_http) -> None:
    _stream(records, "http://media/in")
    _stream(records, "http://meta/in", stream_format=StreamFormat.metadata)

    fanout.relay_metadata("s1", ORG, {"participantEvent": {"type": "joined"}})

    [call] = fake_http.calls
    body = call.json()
    assert call.url == "http://meta/in"
    assert body["chunkIndex"] == METADATA_CHUNK_INDEX
    assert body["format"] == "metadata"
    assert body["metadata"] == {"participantEvent": {"type": "joined"}}


def test_stream_control_messages(fanout, records, fake_http) -> None:
    _stream(records, "http://stream/in")
    fake_http.statuses["http://stream/in"] = 500

    fanout.notify_stream_start("s1", ORG)
    fanout.notify_stream_end("s1", ORG)

    assert [c.json()["type"] for c in fake_http.calls] == ["stream_start", "stream_end"]


def test_close_records_pending_retry_as_terminal_attempt(fanout, records, fake_http) -> None:
    dest = _callback(records, "http://down/hook", retry_budget=3)
    fake_http.statuses["http://down/hook"] = 502
    fanout.publish(ORG, "session.completed", {"sessionId": "s1"})
    assert fanout.scheduler.pending() == 1

    fanout.close()

    attempts = sorted(records.list_delivery_attempts(dest.id), key=lambda a: a.attempt)
    assert [(a.attempt, a.success, a.terminal) for a in attempts] == [
        (1, False, False),
        (2, False, True),
    ]
    assert attempts[-1].error == "abandoned on shutdown"
    assert len(fake_http.calls_to("http://down/hook")) == 1
