"""
Версии контрактов (очереди / webhook envelope / stream).

Назначение:
- единая точка истинных версий
- удобная проверка совместимости
"""

from __future__ import annotations

QUEUE_SCHEMA_VERSION = "v1"
STREAM_PROTOCOL_VERSION = "v1"
