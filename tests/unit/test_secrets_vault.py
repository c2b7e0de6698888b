from __future__ import annotations

import os

import pytest

from meeting_capture_agent.common.secrets import (
    VaultConfig,
    maybe_load_external_secrets,
    read_vault_secret,
)


class _FakeResponse:
    def __init__(self, payload: dict, status: int = 200) -> None:
        self._payload = payload
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise RuntimeError("http error")

    def json(self) -> dict:
        return self._payload


def _vault_env(monkeypatch, field_map: str) -> None:
    monkeypatch.setenv("SECRETS_PROVIDER", "vault")
    monkeypatch.setenv("VAULT_ADDR", "https://vault.local")
    monkeypatch.setenv("VAULT_TOKEN", "tkn")
    monkeypatch.setenv("VAULT_KV_MOUNT", "secret")
    monkeypatch.setenv("VAULT_SECRET_PATH", "capture-agent")
    monkeypatch.setenv("VAULT_FIELD_MAP", field_map)


def test_vault_loads_fields(monkeypatch) -> None:
    _vault_env(monkeypatch, "DATABASE_DSN=db_dsn,CAPTURE_CREDENTIALS_JSON=credentials")
    monkeypatch.delenv("DATABASE_DSN", raising=False)
    monkeypatch.delenv("CAPTURE_CREDENTIALS_JSON", raising=False)

    def _fake_get(*_args, **_kwargs):
        return _FakeResponse(
            {"data": {"data": {"db_dsn": "postgresql://x", "credentials": {"bot": {"u": 1}}}}}
        )

    monkeypatch.setattr("meeting_capture_agent.common.secrets.requests.get", _fake_get)
    maybe_load_external_secrets()
    assert os.environ.get("DATABASE_DSN") == "postgresql://x"
    assert os.environ.get("CAPTURE_CREDENTIALS_JSON") == '{"bot": {"u": 1}}'


def test_vault_does_not_override_existing(monkeypatch) -> None:
    _vault_env(monkeypatch, "REDIS_URL=redis_url")
    monkeypatch.setenv("REDIS_URL", "redis://existing:6379/0")

    def _fake_get(*_args, **_kwargs):
        return _FakeResponse({"data": {"data": {"redis_url": "redis://new:6379/0"}}})

    monkeypatch.setattr("meeting_capture_agent.common.secrets.requests.get", _fake_get)
    maybe_load_external_secrets()
    assert os.environ.get("REDIS_URL") == "redis://existing:6379/0"


def test_vault_missing_env_raises(monkeypatch) -> None:
    monkeypatch.setenv("SECRETS_PROVIDER", "vault")
    monkeypatch.delenv("VAULT_ADDR", raising=False)
    monkeypatch.delenv("VAULT_TOKEN", raising=False)
    monkeypatch.delenv("VAULT_SECRET_PATH", raising=False)

    with pytest.raises(RuntimeError):
        maybe_load_external_secrets()


def test_read_secret_kv1_and_namespace(monkeypatch) -> None:
    seen = {}

    def _fake_get(url, headers=None, **_kwargs):
        seen["url"] = url
        seen["headers"] = headers
        return _FakeResponse({"data": {"login": "bot"}})

    monkeypatch.setattr("meeting_capture_agent.common.secrets.requests.get", _fake_get)
    cfg = VaultConfig(
        addr="https://vault.local",
        token="tkn",
        mount="kv",
        namespace="team-a",
        verify=True,
        timeout=5,
        version="1",
    )
    assert read_vault_secret(cfg, "/capture/bot/") == {"login": "bot"}
    assert seen["url"] == "https://vault.local/v1/kv/capture/bot"
    assert seen["headers"]["X-Vault-Namespace"] == "team-a"


def test_unknown_provider_raises(monkeypatch) -> None:
    monkeypatch.setenv("SECRETS_PROVIDER", "aws")
    with pytest.raises(RuntimeError, match="Unsupported SECRETS_PROVIDER"):
        maybe_load_external_secrets()
