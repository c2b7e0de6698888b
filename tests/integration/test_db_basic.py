from meeting_capture_agent.domain.enums import (
    DestinationTransport,
    SessionStatus,
    StreamFormat,
)
from meeting_capture_agent.storage.db import session_scope
from meeting_capture_agent.storage.models import CaptureSession


def _session(records, session_id="s1", org="org-1"):
    return records.create_session(
        id=session_id,
        organization_id=org,
        target_url="https://teams.example/meet/1",
        platform="TEAMS",
    )


def test_session_scope_rolls_back_on_error(records):
    try:
        with session_scope(records._factory) as s:
            s.add(
                CaptureSession(
                    id="rolled-back",
                    organization_id="org-1",
                    target_url="u",
                    platform="TEAMS",
                )
            )
            s.flush()
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert records.get_session("rolled-back") is None


def test_session_defaults_and_update(records):
    created = _session(records)
    assert created.status == SessionStatus.pending

    updated = records.update_session("s1", lambda o: setattr(o, "status", SessionStatus.recording))
    assert updated.status == SessionStatus.recording
    assert records.get_session("s1").status == SessionStatus.recording


def test_one_artifact_per_session(records):
    _session(records)
    first, created = records.create_or_get_artifact(
        session_id="s1", organization_id="org-1", storage_key="recordings/org-1/s1.webm"
    )
    again, created_again = records.create_or_get_artifact(
        session_id="s1", organization_id="org-1", storage_key="other"
    )
    assert created is True and created_again is False
    assert again.id == first.id
    assert again.storage_key == "recordings/org-1/s1.webm"


def test_stream_destinations_include_org_defaults(records):
    records.add_destination(
        id="d-session",
        organization_id="org-1",
        session_id="s1",
        transport=DestinationTransport.stream_socket,
        url="ws://x",
    )
    records.add_destination(
        id="d-default",
        organization_id="org-1",
        transport=DestinationTransport.stream_http,
        url="http://y",
        stream_format=StreamFormat.metadata,
    )
    records.add_destination(
        id="d-other",
        organization_id="org-1",
        session_id="s2",
        transport=DestinationTransport.stream_http,
        url="http://z",
    )
    records.add_destination(
        id="d-off",
        organization_id="org-1",
        transport=DestinationTransport.stream_http,
        url="http://off",
        is_active=False,
    )
    records.add_destination(
        id="d-callback",
        organization_id="org-1",
        transport=DestinationTransport.callback,
        url="http://hook",
        events=["session.started"],
    )

    ids = {d.id for d in records.list_stream_destinations("org-1", "s1")}
    assert ids == {"d-session", "d-default"}
    assert [d.id for d in records.list_callback_destinations("org-1", "session.started")] == [
        "d-callback"
    ]


def test_delivery_stats(records):
    dest = records.add_destination(
        organization_id="org-1",
        transport=DestinationTransport.callback,
        url="http://hook",
        events=["session.completed"],
    )
    for attempt, ok in ((1, False), (2, True)):
        records.add_delivery_attempt(
            destination_id=dest.id,
            event_id="evt-1",
            event_type="session.completed",
            attempt=attempt,
            success=ok,
            terminal=ok,
            status_code=200 if ok else 500,
        )

    stats = records.delivery_stats("org-1")
    assert (stats.destinations, stats.total, stats.succeeded, stats.failed) == (1, 2, 1, 1)
    assert stats.success_rate == 50.0
    assert len(records.list_delivery_attempts(dest.id, "evt-1")) == 2
