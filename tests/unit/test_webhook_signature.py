from __future__ import annotations

import json

from meeting_capture_agent.common.utils import verify_signature
from meeting_capture_agent.delivery.base import DestinationSpec
from meeting_capture_agent.delivery.webhook import (
    HEADER_EVENT_ID,
    HEADER_SIGNATURE,
    WebhookSender,
    build_envelope,
    build_headers,
    encode_envelope,
)
from meeting_capture_agent.domain.enums import DestinationTransport


def _dest(url: str = "http://receiver/hook") -> DestinationSpec:
    return DestinationSpec(
        id="dst-1",
        organization_id="org-1",
        transport=DestinationTransport.callback,
        url=url,
        secret="s3cret",
    )


def test_envelope_is_canonical_json() -> None:
    env = build_envelope("session.started", {"b": 1, "a": "é"}, timestamp="2026-01-01T00:00:00Z")
    body = encode_envelope(env)
    assert body == (
        '{"data":{"a":"é","b":1},"event":"session.started","timestamp":"2026-01-01T00:00:00Z"}'
    ).encode("utf-8")


def test_signature_verifies_with_same_secret_only() -> None:
    body = encode_envelope(build_envelope("session.completed", {"sessionId": "s1"}))
    headers = build_headers(
        body=body, secret="s3cret", event_type="session.completed", timestamp="t", event_id="e1"
    )
    assert verify_signature(body, "s3cret", headers[HEADER_SIGNATURE])
    assert not verify_signature(body, "other", headers[HEADER_SIGNATURE])
    assert not verify_signature(body + b" ", "s3cret", headers[HEADER_SIGNATURE])


def test_no_signature_without_secret() -> None:
    headers = build_headers(body=b"{}", secret=None, event_type="x", timestamp="t", event_id="e")
    assert HEADER_SIGNATURE not in headers


def test_destination_headers_cannot_override_service_headers() -> None:
    headers = build_headers(
        body=b"{}",
        secret="k",
        event_type="session.started",
        timestamp="t",
        event_id="evt-real",
        extra={HEADER_EVENT_ID: "evt-fake", "Content-Type": "text/plain", "X-Tenant": "acme"},
    )
    assert headers[HEADER_EVENT_ID] == "evt-real"
    assert headers["Content-Type"] == "application/json"
    assert headers["X-Tenant"] == "acme"


def test_sender_maps_statuses_and_exceptions(fake_http) -> None:
    sender = WebhookSender(fake_http)
    body = b'{"event":"x"}'

    ok = sender.send(_dest(), body, {"X-Event-Id": "e1"})
    assert ok.ok and ok.status_code == 200
    assert json.loads(fake_http.calls[0].body) == {"event": "x"}

    fake_http.statuses["http://receiver/down"] = 502
    bad = sender.send(_dest("http://receiver/down"), body, {})
    assert not bad.ok
    assert bad.status_code == 502
    assert bad.error == "HTTP 502: boom"

    fake_http.fail_urls.add("http://receiver/refused")
    err = sender.send(_dest("http://receiver/refused"), body, {})
    assert not err.ok and err.status_code is None
    assert err.error.startswith("ConnectionError")
