"""Иерархия исключений подсистемы синхронизации."""

from __future__ import annotations

from typing import Any


class SyncAppError(Exception):
    """Базовое исключение приложения.

    Attributes:
        message: Человекочитаемое описание ошибки.
        code: Машиночитаемый код (например, ``STORAGE``).
        details: Дополнительный контекст.
    """

    default_code = "SYNC_APP"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConnectivityError(SyncAppError):
    """Нет сети или интернет недоступен."""

    default_code = "OFFLINE"


class StorageError(SyncAppError):
    """Ошибка выполнения SQL-запроса в локальной базе."""

    default_code = "STORAGE"


class MediaError(SyncAppError):
    """Ошибка работы с файлом фотографии."""

    default_code = "MEDIA"


class ServerSyncError(SyncAppError):
    """Сервер ответил ошибкой или сетевой вызов не удался."""

    default_code = "SERVER"

    def __init__(self, message: str, *, status: int | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.status = status


class PartialUploadError(SyncAppError):
    """Часть файлов загружена, часть нет."""

    default_code = "PARTIAL_UPLOAD"

    def __init__(self, uploaded: int, errors: list[dict[str, Any]]) -> None:
        super().__init__(
            f"Не удалось загрузить {len(errors)} файл(ов), загружено {uploaded}",
            details={"uploaded": uploaded, "errors": errors},
        )
        self.uploaded = uploaded
        self.errors = errors


__all__ = [
    "SyncAppError",
    "ConnectivityError",
    "StorageError",
    "MediaError",
    "ServerSyncError",
    "PartialUploadError",
]
