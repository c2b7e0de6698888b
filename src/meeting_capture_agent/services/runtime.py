"""
Сборка зависимостей воркеров из настроек.

Назначение:
- один набор коллабораторов на процесс (RecordStore, ObjectStore, EventFanout)
- handler-ы capture / transcode для WorkerPool
- корректное закрытие (сокеты + планировщик доставок)
"""

from __future__ import annotations

from dataclasses import dataclass

from meeting_capture_agent.common.config import Settings, get_settings
from meeting_capture_agent.connectors.credentials import build_credentials_resolver
from meeting_capture_agent.connectors.encoders import build_encoder
from meeting_capture_agent.connectors.synthetic import build_capture_runner
from meeting_capture_agent.delivery.fanout import EventFanout
from meeting_capture_agent.queue.dispatcher import JobDispatcher, get_job_store
from meeting_capture_agent.queue.store import JobStore
from meeting_capture_agent.queue.worker_pool import WorkerPool
from meeting_capture_agent.storage.blob import LocalObjectStore
from meeting_capture_agent.storage.repositories import RecordStore

from .capture_job import CaptureJobHandler
from .transcode_job import TranscodeJobHandler


@dataclass
class Runtime:
    settings: Settings
    store: JobStore
    records: RecordStore
    object_store: LocalObjectStore
    fanout: EventFanout

    def worker_pool(self) -> WorkerPool:
        s = self.settings
        return WorkerPool(
            self.store,
            lease_ttl_sec=s.job_lease_ttl_sec,
            poll_interval_sec=s.job_poll_interval_sec,
            backoff_cap_sec=s.job_backoff_cap_sec,
            dead_letter_sweep_sec=s.job_dead_letter_sweep_sec,
        )

    def capture_handler(self) -> CaptureJobHandler:
        s = self.settings
        return CaptureJobHandler(
            records=self.records,
            object_store=self.object_store,
            runner=build_capture_runner(
                s.capture_provider, duration_sec=s.synthetic_capture_duration_sec
            ),
            credentials=build_credentials_resolver(),
            fanout=self.fanout,
            dispatcher=JobDispatcher(self.store),
            settings=s,
        )

    def transcode_handler(self) -> TranscodeJobHandler:
        s = self.settings
        return TranscodeJobHandler(
            records=self.records,
            object_store=self.object_store,
            encoder=build_encoder(s.encoder_provider, timeout_sec=s.encoder_timeout_sec),
            fanout=self.fanout,
            settings=s,
        )

    def close(self) -> None:
        self.fanout.close()


def build_runtime(settings: Settings | None = None) -> Runtime:
    s = settings or get_settings()
    records = RecordStore()
    object_store = LocalObjectStore(s.storage_dir)
    return Runtime(
        settings=s,
        store=get_job_store(),
        records=records,
        object_store=object_store,
        fanout=EventFanout(records, object_store=object_store),
    )
