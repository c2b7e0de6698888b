"""
Capture job: PENDING → RECORDING → {COMPLETED, FAILED}.

Алгоритм:
1) Session → RECORDING (actual_start), session.started, stream_start
2) трекер участников + chunk relay на время захвата
3) захват с потолком по времени (max duration + grace)
4) успех: финальный чанк, загрузка записи и лога, Artifact(RAW),
   Session → COMPLETED, transcode job, session.completed + artifact.ready
5) ошибка: если попытки остались и ошибка временная — Session остаётся RECORDING
   (error записан), задача уходит в ретрай; иначе Session → FAILED, session.failed
6) всегда: stream_end получателям, удаление локальных файлов

Повтор задачи для уже COMPLETED Session: transcode ставится повторно (дедуп по id)
и задача подтверждается без повторного захвата.

Задача, ушедшая в DLQ по истечению lease (воркер упал посреди захвата), приходит
в on_dead_letter: Session → FAILED (lease_expired), session.failed, stream_end.
"""

from __future__ import annotations

from contextlib import suppress
from pathlib import Path
from typing import Any

import pydantic

from meeting_capture_agent.common.config import Settings, get_settings
from meeting_capture_agent.common.errors import (
    ErrCode,
    NotFoundError,
    ResourceError,
    TransientError,
    is_retryable,
)
from meeting_capture_agent.common.logging import job_logger
from meeting_capture_agent.common.metrics import track_stage_latency
from meeting_capture_agent.common.time import utc_now, utc_now_iso
from meeting_capture_agent.connectors.base import CaptureRunner, CredentialsResolver
from meeting_capture_agent.contracts.queue_events import CapturePayload, TranscodePayload
from meeting_capture_agent.delivery.fanout import EventFanout
from meeting_capture_agent.domain.enums import EventType, SessionStatus
from meeting_capture_agent.domain.state_machine import require_session_transition
from meeting_capture_agent.queue.dispatcher import JobDispatcher
from meeting_capture_agent.queue.store import Job
from meeting_capture_agent.queue.worker_pool import JobResult, ProgressFn, call_with_timeout
from meeting_capture_agent.storage.blob import ObjectStore, capture_log_key, recording_key
from meeting_capture_agent.storage.models import Artifact, CaptureSession
from meeting_capture_agent.storage.repositories import RecordStore
from meeting_capture_agent.tracking.participants import (
    Participant,
    ParticipantEvent,
    ParticipantTracker,
)

from .chunk_relay import ChunkRelay


def _naive_now():
    return utc_now().replace(tzinfo=None)


def capture_progress(ticks: int) -> int:
    """Прогресс захвата по числу отправленных порций: 10% за порцию, не больше 90."""
    return min(90, max(0, ticks) * 10)


class CaptureJobHandler:
    def __init__(
        self,
        *,
        records: RecordStore,
        object_store: ObjectStore,
        runner: CaptureRunner,
        credentials: CredentialsResolver,
        fanout: EventFanout,
        dispatcher: JobDispatcher,
        settings: Settings | None = None,
    ) -> None:
        self.records = records
        self.object_store = object_store
        self.runner = runner
        self.credentials = credentials
        self.fanout = fanout
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    # =========================================================================
    # ENTRYPOINT
    # =========================================================================
    def __call__(self, job: Job, progress: ProgressFn) -> JobResult:
        try:
            payload = CapturePayload.model_validate(job.payload)
        except pydantic.ValidationError as e:
            job_logger(job.id).error(
                "capture_payload_invalid", extra={"payload": {"err": str(e)[:300]}}
            )
            return JobResult.terminal(f"invalid capture payload: {e}"[:1000])

        jlog = job_logger(
            job.id,
            session_id=payload.session_id,
            organization_id=payload.organization_id,
            attempt=job.attempts,
        )

        session = self.records.get_session(payload.session_id)
        if session is None:
            jlog.error("capture_session_not_found")
            return JobResult.terminal(f"session not found: {payload.session_id}")
        if session.status == SessionStatus.completed:
            return self._replay_completed(payload, jlog)
        if session.status == SessionStatus.failed:
            jlog.warning("capture_session_already_failed")
            return JobResult.terminal(session.error or "session already failed")

        outputs: list[Path] = []
        try:
            self._start(payload, jlog)
            with track_stage_latency("worker-capture", "capture"):
                self._run(job, payload, progress, outputs, jlog)
            progress(100)
            return JobResult.success()
        except Exception as e:
            return self._fail(job, payload, e, jlog)
        finally:
            self.fanout.notify_stream_end(payload.session_id, payload.organization_id)
            for p in outputs:
                with suppress(OSError):
                    p.unlink(missing_ok=True)

    def on_dead_letter(self, job: Job) -> None:
        try:
            payload = CapturePayload.model_validate(job.payload)
        except pydantic.ValidationError:
            job_logger(job.id).warning("capture_dead_letter_invalid_payload")
            return

        jlog = job_logger(
            job.id,
            session_id=payload.session_id,
            organization_id=payload.organization_id,
            attempt=job.attempts,
        )
        session = self.records.get_session(payload.session_id)
        if session is None or session.status in (SessionStatus.completed, SessionStatus.failed):
            jlog.info(
                "capture_dead_letter_skipped",
                extra={"payload": {"status": session.status.value if session else None}},
            )
            return

        err = TransientError(
            "Lease истёк: воркер не завершил захват",
            details={"attempts": job.attempts},
            code=ErrCode.LEASE_EXPIRED,
        )
        self._fail(job, payload, err, jlog, force_terminal=True)
        self.fanout.notify_stream_end(payload.session_id, payload.organization_id)

    # =========================================================================
    # ШАГИ
    # =========================================================================
    def _start(self, payload: CapturePayload, jlog) -> None:
        started = {"changed": False}

        def mutate(obj: CaptureSession) -> None:
            started["changed"] = require_session_transition(obj.status, SessionStatus.recording)
            obj.status = SessionStatus.recording
            if obj.actual_start is None:
                obj.actual_start = _naive_now()

        self.records.update_session(payload.session_id, mutate)
        if started["changed"]:
            jlog.info("capture_session_recording")
            self.fanout.publish(
                payload.organization_id,
                EventType.session_started,
                {
                    "sessionId": payload.session_id,
                    "platform": payload.platform.value,
                    "targetUrl": payload.target_url,
                    "startedAt": utc_now_iso(),
                },
            )
        self.fanout.notify_stream_start(payload.session_id, payload.organization_id)

    def _output_path(self, payload: CapturePayload) -> Path:
        base = Path(self.settings.recordings_dir) / payload.organization_id
        base.mkdir(parents=True, exist_ok=True)
        return base / f"{payload.session_id}.{self.settings.capture_output_format}"

    def _tracker(self, payload: CapturePayload) -> ParticipantTracker | None:
        if not self.settings.participant_tracking_enabled:
            return None
        source = self.runner.roster(payload.platform.value, payload.target_url)
        if source is None:
            return None

        def on_event(ev: ParticipantEvent, roster: list[Participant]) -> None:
            self.fanout.relay_metadata(
                payload.session_id,
                payload.organization_id,
                {
                    "participantEvent": ev.to_dict(),
                    "participants": [p.to_dict() for p in roster],
                },
            )

        return ParticipantTracker(
            source,
            interval_sec=self.settings.participant_poll_interval_sec,
            on_event=on_event,
        )

    def _run(
        self,
        job: Job,
        payload: CapturePayload,
        progress: ProgressFn,
        outputs: list[Path],
        jlog,
    ) -> None:
        creds = self.credentials.resolve(payload.credentials_ref)
        output_path = self._output_path(payload)
        log_path = output_path.with_suffix(".log")
        outputs.extend([output_path, log_path])
        for p in outputs:
            p.unlink(missing_ok=True)

        relay = ChunkRelay(
            self.fanout,
            session_id=payload.session_id,
            organization_id=payload.organization_id,
            platform=payload.platform.value,
            file_path=output_path,
            destinations=self.fanout.stream_destinations(
                payload.organization_id, payload.session_id
            ),
            on_chunk=lambda ticks: progress(capture_progress(ticks)),
            max_chunk_bytes=self.settings.stream_max_chunk_bytes,
            max_consecutive_failures=self.settings.stream_max_consecutive_failures,
        )
        tracker = self._tracker(payload)

        max_duration = float(self.settings.capture_max_duration_sec)
        deadline = max_duration + float(self.settings.capture_timeout_grace_sec)
        jlog.info(
            "capture_started",
            extra={
                "payload": {
                    "platform": payload.platform.value,
                    "stream_destinations": len(relay.destinations),
                    "tracking": tracker is not None,
                }
            },
        )

        result = None
        if tracker is not None:
            tracker.start()
        relay.start()
        try:
            result = call_with_timeout(
                self.runner.capture,
                deadline,
                target_url=payload.target_url,
                platform=payload.platform.value,
                credentials=creds,
                output_path=output_path,
                max_duration_sec=max_duration,
            )
        finally:
            if tracker is not None:
                tracker.stop()
            relay.finish(flush=bool(result is not None and result.success))

        if result.log_path is not None and result.log_path not in outputs:
            outputs.append(result.log_path)
        if not result.success:
            raise TransientError(
                result.error or "capture failed",
                details={"session_id": payload.session_id},
                code=ErrCode.CAPTURE_FAILED,
            )

        file_path = result.file_path or output_path
        if file_path not in outputs:
            outputs.append(file_path)
        if not file_path.exists() or file_path.stat().st_size == 0:
            raise ResourceError(
                "Захват завершился без данных",
                details={"session_id": payload.session_id},
                code=ErrCode.EMPTY_OUTPUT,
            )

        summary = tracker.summary().to_dict() if tracker is not None else {}
        self._complete(job, payload, file_path, result, summary, jlog)

    def _upload_log(self, payload: CapturePayload, log_path: Path | None, jlog) -> str | None:
        if log_path is None or not log_path.exists():
            return None
        key = capture_log_key(payload.organization_id, payload.session_id)
        try:
            self.object_store.put_file(key, log_path)
        except Exception as e:
            jlog.warning("capture_log_upload_failed", extra={"payload": {"err": str(e)[:200]}})
            return None
        return key

    def _complete(
        self,
        job: Job,
        payload: CapturePayload,
        file_path: Path,
        result,
        summary: dict[str, Any],
        jlog,
    ) -> None:
        fmt = self.settings.capture_output_format
        raw_key = recording_key(payload.organization_id, payload.session_id, fmt)
        with track_stage_latency("worker-capture", "upload"):
            size = self.object_store.put_file(raw_key, file_path)
        log_key = self._upload_log(payload, result.log_path, jlog)

        artifact, created = self.records.create_or_get_artifact(
            session_id=payload.session_id,
            organization_id=payload.organization_id,
            storage_key=raw_key,
            byte_size=size,
            duration_sec=result.duration_sec,
            format=fmt,
            capture_log_key=log_key,
            meta={
                "platform": payload.platform.value,
                "recordedAt": utc_now_iso(),
                **(result.meta or {}),
                **summary,
            },
        )

        def mutate(obj: CaptureSession) -> None:
            require_session_transition(obj.status, SessionStatus.completed)
            obj.status = SessionStatus.completed
            obj.actual_end = _naive_now()
            obj.error = None

        self.records.update_session(payload.session_id, mutate)
        jlog.info(
            "capture_completed",
            extra={
                "payload": {
                    "artifact_id": artifact.id,
                    "artifact_created": created,
                    "byte_size": size,
                    "participants": len(summary.get("participants", [])),
                }
            },
        )

        self._enqueue_transcode(payload, artifact)
        self.fanout.publish(
            payload.organization_id,
            EventType.session_completed,
            {
                "sessionId": payload.session_id,
                "artifactId": artifact.id,
                "platform": payload.platform.value,
                "targetUrl": payload.target_url,
                "duration": result.duration_sec,
                "byteSize": size,
                "completedAt": utc_now_iso(),
            },
        )
        self.fanout.publish(
            payload.organization_id,
            EventType.artifact_ready,
            {
                "artifactId": artifact.id,
                "sessionId": payload.session_id,
                "storageKey": raw_key,
                "format": fmt,
                "byteSize": size,
                "duration": result.duration_sec,
            },
        )

    def _enqueue_transcode(self, payload: CapturePayload, artifact: Artifact) -> str:
        return self.dispatcher.enqueue_transcode(
            TranscodePayload(
                organization_id=payload.organization_id,
                artifact_id=artifact.id,
                raw_storage_key=artifact.storage_key,
                output_format=self.settings.encoder_output_format,
            )
        )

    def _replay_completed(self, payload: CapturePayload, jlog) -> JobResult:
        artifact = self.records.find_artifact_by_session(payload.session_id)
        if artifact is None:
            jlog.error("capture_completed_without_artifact")
            return JobResult.terminal("session completed without artifact")
        self._enqueue_transcode(payload, artifact)
        jlog.info("capture_already_completed", extra={"payload": {"artifact_id": artifact.id}})
        return JobResult.success()

    # =========================================================================
    # ОШИБКИ
    # =========================================================================
    def _fail(
        self,
        job: Job,
        payload: CapturePayload,
        err: Exception,
        jlog,
        *,
        force_terminal: bool = False,
    ) -> JobResult:
        error = str(err)[:1000] or type(err).__name__
        retryable = is_retryable(err)
        terminal = force_terminal or not retryable or job.attempts >= job.max_attempts

        current = self.records.get_session(payload.session_id)
        if current is not None and current.status == SessionStatus.completed:
            # упали после коммита: повтор задачи доделает хвост через _replay_completed
            jlog.warning("capture_post_commit_error", extra={"payload": {"err": error[:300]}})
            return JobResult.transient(error)

        if not terminal:
            with suppress(NotFoundError):
                self.records.update_session(
                    payload.session_id, lambda obj: setattr(obj, "error", error)
                )
            jlog.warning(
                "capture_attempt_failed",
                extra={"payload": {"err": error[:300], "attempts_left": job.attempts_left}},
            )
            return JobResult.transient(error)

        def mutate(obj: CaptureSession) -> None:
            require_session_transition(obj.status, SessionStatus.failed)
            obj.status = SessionStatus.failed
            obj.actual_end = _naive_now()
            obj.error = error

        with suppress(NotFoundError):
            self.records.update_session(payload.session_id, mutate)
        jlog.error(
            "capture_failed", extra={"payload": {"err": error[:300], "retryable": retryable}}
        )
        self.fanout.publish(
            payload.organization_id,
            EventType.session_failed,
            {
                "sessionId": payload.session_id,
                "platform": payload.platform.value,
                "targetUrl": payload.target_url,
                "error": error,
                "failedAt": utc_now_iso(),
            },
        )
        return JobResult.terminal(error)
