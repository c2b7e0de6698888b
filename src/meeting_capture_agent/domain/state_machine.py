"""
Машины состояний Session и Artifact.

Назначение:
- Централизованные правила переходов статусов
- Монотонность: назад не ходим (FAILED/COMPLETED/ENCODED — терминальные)
- Повторный вход в то же состояние разрешён (идемпотентный ретрай задачи)
"""

from __future__ import annotations

from dataclasses import dataclass

from meeting_capture_agent.common.errors import ConflictError

from .enums import ArtifactStatus, SessionStatus


# =============================================================================
# РЕЗУЛЬТАТ ПЕРЕХОДА
# =============================================================================
@dataclass
class TransitionResult:
    ok: bool
    changed: bool = False
    reason: str | None = None


# =============================================================================
# РАЗРЕШЁННЫЕ ПЕРЕХОДЫ
# =============================================================================
_SESSION_NEXT: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.pending: frozenset({SessionStatus.recording, SessionStatus.failed}),
    SessionStatus.recording: frozenset({SessionStatus.completed, SessionStatus.failed}),
    SessionStatus.completed: frozenset(),
    SessionStatus.failed: frozenset(),
}

_ARTIFACT_NEXT: dict[ArtifactStatus, frozenset[ArtifactStatus]] = {
    ArtifactStatus.raw: frozenset({ArtifactStatus.encoding, ArtifactStatus.failed}),
    ArtifactStatus.encoding: frozenset({ArtifactStatus.encoded, ArtifactStatus.failed}),
    ArtifactStatus.encoded: frozenset(),
    ArtifactStatus.failed: frozenset(),
}


def _check(current, target, table) -> TransitionResult:
    if current == target:
        return TransitionResult(ok=True, changed=False)
    if target in table.get(current, frozenset()):
        return TransitionResult(ok=True, changed=True)
    return TransitionResult(ok=False, reason=f"{current.value}->{target.value}")


def session_transition(current: SessionStatus, target: SessionStatus) -> TransitionResult:
    """
    PENDING → RECORDING → {COMPLETED, FAILED}; PENDING → FAILED (валидация до старта).
    """
    return _check(SessionStatus(current), SessionStatus(target), _SESSION_NEXT)


def artifact_transition(current: ArtifactStatus, target: ArtifactStatus) -> TransitionResult:
    """
    RAW → ENCODING → {ENCODED, FAILED}; RAW → FAILED.
    """
    return _check(ArtifactStatus(current), ArtifactStatus(target), _ARTIFACT_NEXT)


def require_session_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """
    Бросает ConflictError на запрещённый переход; возвращает True, если статус меняется.
    """
    res = session_transition(current, target)
    if not res.ok:
        raise ConflictError(
            "Недопустимый переход статуса Session",
            details={"transition": res.reason},
        )
    return res.changed


def require_artifact_transition(current: ArtifactStatus, target: ArtifactStatus) -> bool:
    res = artifact_transition(current, target)
    if not res.ok:
        raise ConflictError(
            "Недопустимый переход статуса Artifact",
            details={"transition": res.reason},
        )
    return res.changed
