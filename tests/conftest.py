from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field

import pytest
import requests

from meeting_capture_agent.storage.blob import LocalObjectStore
from meeting_capture_agent.storage.db import build_engine, build_session_factory, create_all
from meeting_capture_agent.storage.repositories import RecordStore


@dataclass
class _Resp:
    status_code: int
    text: str = ""


@dataclass
class _Call:
    url: str
    body: bytes
    headers: dict

    def json(self) -> dict:
        return json.loads(self.body)


@dataclass
class FakeHttp:
    """
    Подмена requests.Session: статус по URL (по умолчанию 200), все вызовы пишутся.
    """

    statuses: dict = field(default_factory=dict)
    fail_urls: set = field(default_factory=set)
    calls: list = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def post(self, url, data=None, headers=None, timeout=None):
        _ = timeout
        with self._lock:
            self.calls.append(_Call(url=url, body=data, headers=dict(headers or {})))
        if url in self.fail_urls:
            raise requests.ConnectionError("connection refused")
        status = self.statuses.get(url, 200)
        if callable(status):
            status = status()
        return _Resp(status_code=status, text="" if status < 400 else "boom")

    def calls_to(self, url: str) -> list:
        with self._lock:
            return [c for c in self.calls if c.url == url]


@pytest.fixture()
def records(tmp_path) -> RecordStore:
    engine = build_engine(f"sqlite:///{tmp_path / 'capture.db'}")
    create_all(engine)
    yield RecordStore(build_session_factory(engine))
    engine.dispose()


@pytest.fixture()
def object_store(tmp_path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture()
def fake_http() -> FakeHttp:
    return FakeHttp()
