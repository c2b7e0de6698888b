"""
Объектное хранилище (ключ → bytes/файл).

Назначение:
- загрузка записи, лога захвата и перекодированного файла по детерминированному ключу
- повторная загрузка под тем же ключом перезаписывает объект (идемпотентно)

Реализация по умолчанию — локальная/общая ФС (STORAGE_DIR).
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Protocol

from meeting_capture_agent.common.config import get_settings
from meeting_capture_agent.common.errors import NotFoundError


class ObjectStore(Protocol):
    def put_file(self, key: str, src: Path) -> int: ...

    def put_bytes(self, key: str, data: bytes) -> int: ...

    def get_to_file(self, key: str, dst: Path) -> int: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> None: ...

    def location(self, key: str) -> str: ...


class LocalObjectStore:
    def __init__(self, base_dir: str | Path | None = None) -> None:
        root = base_dir if base_dir is not None else get_settings().storage_dir
        self.base_dir = Path(root).resolve()

    def _key_to_path(self, key: str) -> Path:
        # защита от path traversal
        key = key.lstrip("/")
        if not key or ".." in key.split("/"):
            raise ValueError("invalid key")
        return self.base_dir / key

    def put_file(self, key: str, src: Path) -> int:
        """Скопировать файл под ключ, вернуть размер."""
        p = self._key_to_path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(p.name + ".part")
        shutil.copyfile(src, tmp)
        tmp.replace(p)
        return p.stat().st_size

    def put_bytes(self, key: str, data: bytes) -> int:
        p = self._key_to_path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
        return len(data)

    def get_to_file(self, key: str, dst: Path) -> int:
        p = self._key_to_path(key)
        if not p.exists():
            raise NotFoundError("Объект не найден в хранилище", details={"key": key})
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(p, dst)
        return dst.stat().st_size

    def get_bytes(self, key: str) -> bytes:
        p = self._key_to_path(key)
        if not p.exists():
            raise NotFoundError("Объект не найден в хранилище", details={"key": key})
        return p.read_bytes()

    def exists(self, key: str) -> bool:
        return self._key_to_path(key).exists()

    def delete(self, key: str) -> None:
        p = self._key_to_path(key)
        try:
            p.unlink()
        except FileNotFoundError:
            pass

    def location(self, key: str) -> str:
        return self._key_to_path(key).as_uri()


# =============================================================================
# КЛЮЧИ
# =============================================================================
def recording_key(organization_id: str, session_id: str, fmt: str) -> str:
    return f"recordings/{organization_id}/{session_id}.{fmt}"


def capture_log_key(organization_id: str, session_id: str) -> str:
    return f"capture-logs/{organization_id}/{session_id}.log"


def encoded_key(organization_id: str, artifact_id: str, fmt: str) -> str:
    return f"encoded/{organization_id}/{artifact_id}.{fmt}"


def stream_chunk_key(organization_id: str, session_id: str, chunk_index: int) -> str:
    return f"streams/{organization_id}/{session_id}/{chunk_index:06d}.chunk"
