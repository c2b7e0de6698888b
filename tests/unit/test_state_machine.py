import pytest

from meeting_capture_agent.common.errors import ConflictError
from meeting_capture_agent.domain.enums import ArtifactStatus, SessionStatus
from meeting_capture_agent.domain.state_machine import (
    artifact_transition,
    require_artifact_transition,
    require_session_transition,
    session_transition,
)


def test_session_happy_path() -> None:
    assert session_transition(SessionStatus.pending, SessionStatus.recording).changed
    assert session_transition(SessionStatus.recording, SessionStatus.completed).changed


def test_session_failure_from_pending_and_recording() -> None:
    assert session_transition(SessionStatus.pending, SessionStatus.failed).ok
    assert session_transition(SessionStatus.recording, SessionStatus.failed).ok


@pytest.mark.parametrize(
    "current,target",
    [
        (SessionStatus.completed, SessionStatus.recording),
        (SessionStatus.failed, SessionStatus.recording),
        (SessionStatus.completed, SessionStatus.failed),
        (SessionStatus.pending, SessionStatus.completed),
    ],
)
def test_session_never_goes_back(current, target) -> None:
    res = session_transition(current, target)
    assert res.ok is False
    assert res.reason == f"{current.value}->{target.value}"
    with pytest.raises(ConflictError):
        require_session_transition(current, target)


def test_same_status_is_idempotent() -> None:
    res = session_transition(SessionStatus.recording, SessionStatus.recording)
    assert res.ok and not res.changed
    assert require_session_transition(SessionStatus.completed, SessionStatus.completed) is False


def test_artifact_transitions() -> None:
    assert require_artifact_transition(ArtifactStatus.raw, ArtifactStatus.encoding) is True
    assert artifact_transition(ArtifactStatus.encoding, ArtifactStatus.encoded).changed
    assert artifact_transition(ArtifactStatus.raw, ArtifactStatus.failed).ok
    assert not artifact_transition(ArtifactStatus.encoded, ArtifactStatus.encoding).ok
    with pytest.raises(ConflictError):
        require_artifact_transition(ArtifactStatus.failed, ArtifactStatus.encoded)


def test_accepts_raw_string_values() -> None:
    assert session_transition("PENDING", "RECORDING").changed
