"""
Резолверы учётных данных захвата.

- env: JSON-словарь {ref: {...}} из CAPTURE_CREDENTIALS_JSON (или *_FILE)
- vault: KV-секрет <CAPTURE_CREDENTIALS_VAULT_PATH>/<ref>

Пустая ссылка → пустые учётные данные (синтетический захват, публичные трансляции).
Неизвестная ссылка → ValidationError (terminal, без ретраев).
"""

from __future__ import annotations

import json
from typing import Any

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.errors import TransientError, ValidationError
from meeting_capture_agent.common.secrets import (
    VaultConfig,
    read_vault_secret,
    vault_config_from_env,
)


class EnvCredentialsResolver:
    def __init__(self, raw_json: str | None = None) -> None:
        raw = raw_json if raw_json is not None else get_settings().capture_credentials_json
        try:
            data = json.loads(raw or "{}")
        except json.JSONDecodeError as e:
            raise ValidationError(
                "CAPTURE_CREDENTIALS_JSON не является JSON", details={"err": str(e)[:200]}
            ) from e
        if not isinstance(data, dict):
            raise ValidationError("CAPTURE_CREDENTIALS_JSON должен быть объектом")
        self._data: dict[str, Any] = data

    def resolve(self, ref: str | None) -> dict[str, Any]:
        if not ref:
            return {}
        creds = self._data.get(ref)
        if not isinstance(creds, dict):
            raise ValidationError("Учётные данные не найдены", details={"credentials_ref": ref})
        return dict(creds)


class VaultCredentialsResolver:
    def __init__(self, cfg: VaultConfig | None = None, base_path: str | None = None) -> None:
        self._cfg = cfg or vault_config_from_env()
        self._base = (base_path or get_settings().capture_credentials_vault_path).strip("/")

    def resolve(self, ref: str | None) -> dict[str, Any]:
        if not ref:
            return {}
        try:
            data = read_vault_secret(self._cfg, f"{self._base}/{ref}")
        except RuntimeError as e:
            raise TransientError(
                "Vault недоступен", details={"credentials_ref": ref, "err": str(e)[:200]}
            ) from e
        if not data:
            raise ValidationError("Учётные данные не найдены", details={"credentials_ref": ref})
        return data


def build_credentials_resolver():
    provider = (get_settings().capture_credentials_provider or "env").strip().lower()
    if provider == "vault":
        return VaultCredentialsResolver()
    return EnvCredentialsResolver()
