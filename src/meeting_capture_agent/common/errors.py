"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для очередей/DLQ/записей Session и Artifact
- флаг retryable: воркер-пул решает про ретрай без разбора текста ошибки

Таксономия:
- transient: таймауты, сеть, сбой внешнего захвата → ретрай по политике задачи
- validation: нет Session/Artifact/учётных данных → сразу terminal
- resource: пустой файл, нет места при staging → terminal, с очисткой
- delivery: не-2xx/отказ соединения у Destination → изолировано, в job не всплывает
"""

from __future__ import annotations

from dataclasses import dataclass


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"

    # Исполнение задач
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    LEASE_LOST = "lease_lost"
    LEASE_EXPIRED = "lease_expired"
    CAPTURE_FAILED = "capture_failed"
    ENCODE_FAILED = "encode_failed"

    # Ресурсы
    EMPTY_OUTPUT = "empty_output"
    STORAGE_ERROR = "storage_error"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов)
    - retryable: можно ли повторять задачу
    """

    code: str
    message: str
    details: dict | None = None
    retryable: bool = False

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


class TransientError(AppError):
    def __init__(
        self,
        message: str = "Временная ошибка",
        details: dict | None = None,
        code: str = ErrCode.TRANSIENT,
    ) -> None:
        super().__init__(code, message, details, retryable=True)


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class ConflictError(AppError):
    def __init__(self, message: str = "Конфликт", details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFLICT, message, details)


class ResourceError(AppError):
    def __init__(
        self,
        message: str = "Ошибка ресурса",
        details: dict | None = None,
        code: str = ErrCode.STORAGE_ERROR,
    ) -> None:
        super().__init__(code, message, details)


def is_retryable(err: BaseException) -> bool:
    """
    Исключения вне AppError считаем временными (ретраим),
    AppError — по его флагу.
    """
    if isinstance(err, AppError):
        return bool(err.retryable)
    return True
