"""
Transcode job: Artifact RAW → ENCODING → {ENCODED, FAILED}.

Алгоритм:
- Artifact → ENCODING, encoding.started (только при первом переходе)
- скачать RAW в staging (временный каталог внутри STAGING_DIR)
- энкодер с профилем качества; прогресс энкодера → прогресс задачи [0, 99]
- загрузить результат под encoded/{org}/{artifact_id}.{format}
- Artifact → ENCODED, encoding.completed; прогресс 100
- staging удаляется всегда
- FAILED + encoding.failed — только на terminal-ошибке (как у capture)
"""

from __future__ import annotations

import tempfile
from pathlib import Path

import pydantic

from meeting_capture_agent.common.config import Settings, get_settings
from meeting_capture_agent.common.errors import (
    ErrCode,
    NotFoundError,
    ResourceError,
    TransientError,
    ValidationError,
    is_retryable,
)
from meeting_capture_agent.common.logging import job_logger
from meeting_capture_agent.common.metrics import track_stage_latency
from meeting_capture_agent.common.time import utc_now_iso
from meeting_capture_agent.connectors.base import EncodeProfile, EncodeProgress, Encoder
from meeting_capture_agent.connectors.encoders import progress_percent
from meeting_capture_agent.contracts.queue_events import TranscodePayload
from meeting_capture_agent.delivery.fanout import EventFanout
from meeting_capture_agent.domain.enums import ArtifactStatus, EventType, SessionStatus
from meeting_capture_agent.domain.state_machine import require_artifact_transition
from meeting_capture_agent.queue.store import Job
from meeting_capture_agent.queue.worker_pool import JobResult, ProgressFn
from meeting_capture_agent.storage.blob import ObjectStore, encoded_key
from meeting_capture_agent.storage.models import Artifact
from meeting_capture_agent.storage.repositories import RecordStore


def profile_from_settings(s: Settings, output_format: str | None = None) -> EncodeProfile:
    return EncodeProfile(
        output_format=output_format or s.encoder_output_format,
        codec=s.encoder_codec,
        crf=s.encoder_crf,
        preset=s.encoder_preset,
        audio_bitrate=s.encoder_audio_bitrate,
    )


class TranscodeJobHandler:
    def __init__(
        self,
        *,
        records: RecordStore,
        object_store: ObjectStore,
        encoder: Encoder,
        fanout: EventFanout,
        settings: Settings | None = None,
    ) -> None:
        self.records = records
        self.object_store = object_store
        self.encoder = encoder
        self.fanout = fanout
        self.settings = settings or get_settings()

    def __call__(self, job: Job, progress: ProgressFn) -> JobResult:
        try:
            payload = TranscodePayload.model_validate(job.payload)
        except pydantic.ValidationError as e:
            job_logger(job.id).error(
                "transcode_payload_invalid", extra={"payload": {"err": str(e)[:300]}}
            )
            return JobResult.terminal(f"invalid transcode payload: {e}"[:1000])

        jlog = job_logger(
            job.id,
            artifact_id=payload.artifact_id,
            organization_id=payload.organization_id,
            attempt=job.attempts,
        )

        artifact = self.records.get_artifact(payload.artifact_id)
        if artifact is None:
            jlog.error("transcode_artifact_not_found")
            return JobResult.terminal(f"artifact not found: {payload.artifact_id}")
        if artifact.status == ArtifactStatus.encoded:
            jlog.info("transcode_already_encoded")
            return JobResult.success()
        if artifact.status == ArtifactStatus.failed:
            jlog.warning("transcode_artifact_already_failed")
            return JobResult.terminal(artifact.error or "artifact already failed")

        try:
            self._check_session(artifact)
            self._start(payload, artifact, jlog)
            with track_stage_latency("worker-transcode", "encode"):
                self._encode(payload, artifact, progress, jlog)
            progress(100)
            return JobResult.success()
        except Exception as e:
            return self._fail(job, payload, e, jlog)

    def on_dead_letter(self, job: Job) -> None:
        """
        Задача ушла в DLQ по истечению lease: Artifact → FAILED, encoding.failed.
        """
        try:
            payload = TranscodePayload.model_validate(job.payload)
        except pydantic.ValidationError:
            job_logger(job.id).warning("transcode_dead_letter_invalid_payload")
            return

        jlog = job_logger(
            job.id,
            artifact_id=payload.artifact_id,
            organization_id=payload.organization_id,
            attempt=job.attempts,
        )
        artifact = self.records.get_artifact(payload.artifact_id)
        if artifact is None or artifact.status in (ArtifactStatus.encoded, ArtifactStatus.failed):
            jlog.info(
                "transcode_dead_letter_skipped",
                extra={"payload": {"status": artifact.status.value if artifact else None}},
            )
            return

        err = TransientError(
            "Lease истёк: воркер не завершил перекодирование",
            details={"attempts": job.attempts},
            code=ErrCode.LEASE_EXPIRED,
        )
        self._fail(job, payload, err, jlog, force_terminal=True)

    # =========================================================================
    # ШАГИ
    # =========================================================================
    def _check_session(self, artifact: Artifact) -> None:
        session = self.records.get_session(artifact.session_id)
        if session is None or session.status != SessionStatus.completed:
            raise ValidationError(
                "Session артефакта не завершена",
                details={
                    "artifact_id": artifact.id,
                    "session_status": session.status.value if session else None,
                },
            )

    def _start(self, payload: TranscodePayload, artifact: Artifact, jlog) -> None:
        started = {"changed": False}

        def mutate(obj: Artifact) -> None:
            started["changed"] = require_artifact_transition(obj.status, ArtifactStatus.encoding)
            obj.status = ArtifactStatus.encoding

        self.records.update_artifact(artifact.id, mutate)
        if started["changed"]:
            jlog.info("transcode_encoding")
            self.fanout.publish(
                payload.organization_id,
                EventType.encoding_started,
                {
                    "artifactId": artifact.id,
                    "sessionId": artifact.session_id,
                    "outputFormat": payload.output_format,
                    "startedAt": utc_now_iso(),
                },
            )

    def _encode(
        self, payload: TranscodePayload, artifact: Artifact, progress: ProgressFn, jlog
    ) -> None:
        staging_root = Path(self.settings.staging_dir)
        staging_root.mkdir(parents=True, exist_ok=True)
        profile = profile_from_settings(self.settings, payload.output_format)

        last = {"value": -1}

        def on_progress(p: EncodeProgress) -> None:
            value = progress_percent(p)
            if value != last["value"]:
                last["value"] = value
                progress(value)

        with tempfile.TemporaryDirectory(prefix="transcode-", dir=staging_root) as tmp:
            src = Path(tmp) / f"input.{artifact.format or 'bin'}"
            dst = Path(tmp) / f"output.{profile.output_format}"
            with track_stage_latency("worker-transcode", "download"):
                self.object_store.get_to_file(payload.raw_storage_key, src)

            result = self.encoder.encode(src, dst, profile, on_progress)
            if not result.success:
                raise TransientError(
                    result.error or "encode failed",
                    details={"artifact_id": artifact.id},
                    code=ErrCode.ENCODE_FAILED,
                )
            out = result.output_path or dst
            if not out.exists() or out.stat().st_size == 0:
                raise ResourceError(
                    "Энкодер не создал выходной файл",
                    details={"artifact_id": artifact.id},
                    code=ErrCode.EMPTY_OUTPUT,
                )

            key = encoded_key(payload.organization_id, artifact.id, profile.output_format)
            with track_stage_latency("worker-transcode", "upload"):
                size = self.object_store.put_file(key, out)

        def mutate(obj: Artifact) -> None:
            require_artifact_transition(obj.status, ArtifactStatus.encoded)
            obj.status = ArtifactStatus.encoded
            obj.encoded_storage_key = key
            obj.encoded_byte_size = size
            obj.error = None

        self.records.update_artifact(artifact.id, mutate)
        jlog.info("transcode_completed", extra={"payload": {"key": key, "byte_size": size}})
        self.fanout.publish(
            payload.organization_id,
            EventType.encoding_completed,
            {
                "artifactId": artifact.id,
                "sessionId": artifact.session_id,
                "storageKey": key,
                "format": profile.output_format,
                "byteSize": size,
                "originalByteSize": artifact.byte_size,
                "completedAt": utc_now_iso(),
            },
        )

    # =========================================================================
    # ОШИБКИ
    # =========================================================================
    def _fail(
        self,
        job: Job,
        payload: TranscodePayload,
        err: Exception,
        jlog,
        *,
        force_terminal: bool = False,
    ) -> JobResult:
        error = str(err)[:1000] or type(err).__name__
        retryable = is_retryable(err)
        terminal = force_terminal or not retryable or job.attempts >= job.max_attempts

        current = self.records.get_artifact(payload.artifact_id)
        if current is not None and current.status == ArtifactStatus.encoded:
            jlog.warning("transcode_post_commit_error", extra={"payload": {"err": error[:300]}})
            return JobResult.success()

        if not terminal:
            try:
                self.records.update_artifact(
                    payload.artifact_id, lambda obj: setattr(obj, "error", error)
                )
            except NotFoundError:
                pass
            jlog.warning(
                "transcode_attempt_failed",
                extra={"payload": {"err": error[:300], "attempts_left": job.attempts_left}},
            )
            return JobResult.transient(error)

        def mutate(obj: Artifact) -> None:
            require_artifact_transition(obj.status, ArtifactStatus.failed)
            obj.status = ArtifactStatus.failed
            obj.error = error

        try:
            artifact = self.records.update_artifact(payload.artifact_id, mutate)
            session_id = artifact.session_id
        except NotFoundError:
            session_id = None
        jlog.error(
            "transcode_failed", extra={"payload": {"err": error[:300], "retryable": retryable}}
        )
        self.fanout.publish(
            payload.organization_id,
            EventType.encoding_failed,
            {
                "artifactId": payload.artifact_id,
                "sessionId": session_id,
                "error": error,
                "failedAt": utc_now_iso(),
            },
        )
        return JobResult.terminal(error)
