"""
Runtime readiness checks for production rollout.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import text

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.logging import get_project_logger

log = get_project_logger()


@dataclass
class ReadinessIssue:
    severity: str  # error|warning
    code: str
    message: str


@dataclass
class ReadinessState:
    ready: bool
    issues: list[ReadinessIssue]


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


# =============================================================================
# ПРОБЫ (подменяются в тестах)
# =============================================================================
def _check_database() -> None:
    from meeting_capture_agent.storage.db import get_engine

    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))


def _check_redis() -> None:
    from meeting_capture_agent.queue.redis import redis_client

    redis_client().ping()


def _check_storage_dir(path: str) -> None:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    if not os.access(p, os.W_OK):
        raise PermissionError(f"{p} is not writable")


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def evaluate_readiness(*, require_encoder: bool = False) -> ReadinessState:
    s = get_settings()
    issues: list[ReadinessIssue] = []
    is_prod = _is_prod_env(s.app_env)
    queue_mode = (s.queue_mode or "").strip().lower()

    try:
        _check_database()
    except Exception as e:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="database_unavailable",
                message=f"DATABASE_DSN недоступна: {type(e).__name__}",
            )
        )

    if queue_mode != "inline":
        try:
            _check_redis()
        except Exception as e:
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="redis_unavailable",
                    message=f"REDIS_URL недоступен: {type(e).__name__}",
                )
            )

    for code, path in (
        ("storage_dir_not_writable", s.storage_dir),
        ("staging_dir_not_writable", s.staging_dir),
    ):
        try:
            _check_storage_dir(path)
        except OSError as e:
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code=code,
                    message=f"{path}: {type(e).__name__}",
                )
            )

    encoder = (s.encoder_provider or "").strip().lower()
    if require_encoder and encoder == "ffmpeg" and not _ffmpeg_available():
        issues.append(
            ReadinessIssue(
                severity="error",
                code="ffmpeg_not_found",
                message="ENCODER_PROVIDER=ffmpeg требует ffmpeg и ffprobe в PATH",
            )
        )

    if is_prod:
        if queue_mode == "inline":
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="inline_queue_in_prod",
                    message="QUEUE_MODE=inline запрещен в prod",
                )
            )

        if bool(getattr(s, "storage_require_shared_in_prod", True)) and (
            (s.storage_mode or "").strip().lower() != "shared_fs"
        ):
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="storage_not_shared_fs",
                    message="В prod требуется STORAGE_MODE=shared_fs",
                )
            )

        if (s.capture_provider or "").strip().lower() == "synthetic":
            issues.append(
                ReadinessIssue(
                    severity="warning",
                    code="synthetic_capture_in_prod",
                    message="В prod используется синтетический захват",
                )
            )
        if encoder == "copy":
            issues.append(
                ReadinessIssue(
                    severity="warning",
                    code="copy_encoder_in_prod",
                    message="В prod используется ENCODER_PROVIDER=copy (без перекодирования)",
                )
            )

    ready = all(i.severity != "error" for i in issues)
    return ReadinessState(ready=ready, issues=issues)


def enforce_startup_readiness(
    *, service_name: str, require_encoder: bool = False
) -> ReadinessState:
    s = get_settings()
    state = evaluate_readiness(require_encoder=require_encoder)
    errors = [i for i in state.issues if i.severity == "error"]

    if errors:
        log.error(
            "startup_readiness_failed",
            extra={
                "payload": {
                    "service": service_name,
                    "app_env": s.app_env,
                    "error_codes": [e.code for e in errors],
                }
            },
        )
    else:
        log.info(
            "startup_readiness_ok",
            extra={"payload": {"service": service_name, "app_env": s.app_env}},
        )

    should_fail_fast = _is_prod_env(s.app_env) and bool(
        getattr(s, "readiness_fail_fast_in_prod", True)
    )
    if should_fail_fast and errors:
        msg = ", ".join(e.code for e in errors)
        raise RuntimeError(f"startup readiness failed for {service_name}: {msg}")
    return state
