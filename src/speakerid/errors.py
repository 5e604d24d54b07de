"""Таксономия ошибок распознавания спикеров.

Структурные ошибки (нет разрешения, устройство недоступно, исчерпаны
повторы чтения) останавливают capture worker. Локальные ошибки (одно
неудачное окно, одно транзиентное чтение) только логируются и
публикуются в канал событий.
"""
from enum import Enum


class ErrorKind(str, Enum):
    """Вид ошибки, переносимый событием ERROR."""

    CAPTURE_PERMISSION_DENIED = "capture_permission_denied"
    DEVICE_UNAVAILABLE = "device_unavailable"
    DEVICE_READ_ERROR = "device_read_error"
    INFERENCE_FAILED = "inference_failed"
    INVALID_NAME = "invalid_name"
    INSUFFICIENT_ENROLLMENT_DATA = "insufficient_enrollment_data"
    PERSISTENCE_FAILURE = "persistence_failure"


class SpeakerIdError(Exception):
    """Базовое исключение пакета."""

    kind: ErrorKind


class CapturePermissionDenied(SpeakerIdError):
    """Платформа не выдала доступ к микрофону."""

    kind = ErrorKind.CAPTURE_PERMISSION_DENIED


class DeviceUnavailable(SpeakerIdError):
    """Устройство записи не открылось или не перешло в режим записи."""

    kind = ErrorKind.DEVICE_UNAVAILABLE


class DeviceReadError(SpeakerIdError):
    """Ошибка чтения с устройства.

    Attributes:
        transient: True, если чтение можно повторить; False, если устройство потеряно.
    """

    kind = ErrorKind.DEVICE_READ_ERROR

    def __init__(self, message: str, transient: bool = True):
        self.transient = transient
        super().__init__(message)


class InferenceFailed(SpeakerIdError):
    """Модель не смогла построить embedding для окна."""

    kind = ErrorKind.INFERENCE_FAILED


class InvalidName(SpeakerIdError, ValueError):
    """Пустое или пробельное имя спикера."""

    kind = ErrorKind.INVALID_NAME


class InsufficientEnrollmentData(SpeakerIdError):
    """Собрано меньше окон, чем нужно для регистрации."""

    kind = ErrorKind.INSUFFICIENT_ENROLLMENT_DATA

    def __init__(self, collected: int, required: int):
        self.collected = collected
        self.required = required
        super().__init__(f"Need at least {required} windows for enrollment, got {collected}")


class PersistenceFailure(SpeakerIdError):
    """Не удалось записать данные в хранилище.

    Изменение в памяти при этом не откатывается.
    """

    kind = ErrorKind.PERSISTENCE_FAILURE


class EmbeddingDimensionMismatch(ValueError):
    """Сравнение embedding'ов разной размерности: ошибка программиста."""


__all__ = [
    "ErrorKind",
    "SpeakerIdError",
    "CapturePermissionDenied",
    "DeviceUnavailable",
    "DeviceReadError",
    "InferenceFailed",
    "InvalidName",
    "InsufficientEnrollmentData",
    "PersistenceFailure",
    "EmbeddingDimensionMismatch",
]
