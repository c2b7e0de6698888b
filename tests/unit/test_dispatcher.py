from __future__ import annotations

import pydantic
import pytest

from meeting_capture_agent.domain.enums import JobState
from meeting_capture_agent.queue.dispatcher import (
    Q_CAPTURE,
    Q_TRANSCODE,
    JobDispatcher,
    transcode_job_id,
)
from meeting_capture_agent.queue.store import InMemoryJobStore


def _transcode(artifact_id: str = "a1") -> dict:
    return {
        "organizationId": "org-1",
        "artifactId": artifact_id,
        "rawStorageKey": f"recordings/org-1/{artifact_id}.webm",
    }


def test_transcode_enqueue_is_deduplicated_per_artifact() -> None:
    store = InMemoryJobStore()
    dispatcher = JobDispatcher(store)

    first = dispatcher.enqueue_transcode(_transcode())
    second = dispatcher.enqueue_transcode(_transcode())

    assert first == second == transcode_job_id("a1") == "job_transcode_a1"
    assert store.stats(Q_TRANSCODE).ready == 1
    job = store.get(first)
    assert job.kind == "transcode"
    assert job.payload["artifactId"] == "a1"
    assert job.state == JobState.queued


def test_capture_jobs_get_unique_ids_and_settings_policy() -> None:
    store = InMemoryJobStore()
    dispatcher = JobDispatcher(store)
    payload = {
        "organizationId": "org-1",
        "sessionId": "s1",
        "targetUrl": "https://slack.example/huddle",
        "platform": "SLACK",
    }

    a = dispatcher.enqueue_capture(payload)
    b = dispatcher.enqueue_capture(payload)

    assert a != b
    assert a.startswith("job_capture_")
    assert store.stats(Q_CAPTURE).ready == 2
    assert store.get(a).max_attempts == 3
    assert store.get(a).backoff_base_sec == 5.0


def test_invalid_payload_is_rejected_before_enqueue() -> None:
    store = InMemoryJobStore()
    with pytest.raises(pydantic.ValidationError):
        JobDispatcher(store).enqueue_capture({"organizationId": "org-1"})
    assert store.stats(Q_CAPTURE).ready == 0
