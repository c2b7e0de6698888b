from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from apps.ops_gateway.main import app
from meeting_capture_agent.queue.dispatcher import Q_CAPTURE, set_job_store
from meeting_capture_agent.queue.store import InMemoryJobStore, Job
from meeting_capture_agent.services.readiness_service import ReadinessIssue, ReadinessState


@pytest.fixture()
def client():
    store = InMemoryJobStore()
    store.enqueue(Job(id="job-1", kind="capture", queue=Q_CAPTURE, payload={}))
    set_job_store(store)
    try:
        yield TestClient(app)
    finally:
        set_job_store(None)


def test_health(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_ready_reflects_readiness_state(client, monkeypatch) -> None:
    monkeypatch.setattr(
        "apps.ops_gateway.main.evaluate_readiness",
        lambda: ReadinessState(ready=True, issues=[]),
    )
    resp = client.get("/ready")
    assert resp.status_code == 200
    assert resp.json() == {"ready": True, "issues": []}

    issue = ReadinessIssue(severity="error", code="redis_unavailable", message="REDIS_URL")
    monkeypatch.setattr(
        "apps.ops_gateway.main.evaluate_readiness",
        lambda: ReadinessState(ready=False, issues=[issue]),
    )
    resp = client.get("/ready")
    assert resp.status_code == 503
    assert resp.json()["issues"][0]["code"] == "redis_unavailable"


def test_metrics_exposes_queue_depth(client) -> None:
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert 'capture_queue_depth{queue="q:capture"} 1.0' in resp.text
    assert "capture_requests_total" in resp.text
