"""Работа с фотографиями: локальное хранение, загрузка и скачивание."""

from __future__ import annotations

import base64
import json
import logging
import mimetypes
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from core.app_context import SyncSession
from core.errors import MediaError, PartialUploadError, ServerSyncError, StorageError
from database.models import EntityType, MediaFile
from infrastructure.sync_gateway import SyncGateway
from services.local_store import MediaFileStore, assessment_items, media_files
from utils.time_utils import now_iso, now_ms

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True)
class EntityRef:
    """Типизированная ссылка на владельца фотографии."""

    owner: EntityType
    entity_id: int

    @classmethod
    def of(cls, entity_name: str | EntityType, entity_id: int) -> "EntityRef":
        try:
            owner = EntityType(entity_name)
        except ValueError as exc:
            raise MediaError(
                f"Неизвестный тип владельца фотографии: {entity_name}",
                details={"entity_name": str(entity_name)},
            ) from exc
        return cls(owner=owner, entity_id=int(entity_id))

    @property
    def entity_name(self) -> str:
        return self.owner.value


@dataclass
class UploadResult:
    success: bool
    uploaded: int
    errors: list[dict[str, Any]] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        """Поднять :class:`PartialUploadError`, если хотя бы один файл не ушёл."""
        if self.errors:
            raise PartialUploadError(self.uploaded, self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "uploaded": self.uploaded, "errors": self.errors}


def _source_path(source: str | Path) -> Path:
    text = str(source)
    if text.startswith("file://"):
        return Path(unquote(urlparse(text).path))
    return Path(text)


class MediaService:
    """Связывает снятые фото с каталогом приложения и таблицей ``media_files``."""

    def __init__(
        self,
        session: SyncSession,
        gateway: SyncGateway,
        media_dir: Path,
        store: MediaFileStore = media_files,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._media_dir = Path(media_dir)
        self._store = store

    @property
    def media_dir(self) -> Path:
        return self._media_dir

    def _ensure_media_dir(self) -> Path:
        try:
            self._media_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MediaError(
                f"Не удалось создать каталог {self._media_dir}: {exc}"
            ) from exc
        return self._media_dir

    # ─────────────────────────── локальные операции ──────────────────────

    def save_photo(
        self,
        source: str | Path,
        entity_name: str | EntityType,
        entity_id: int,
        metadata: dict[str, Any] | None = None,
    ) -> MediaFile:
        """Скопировать снимок в каталог приложения и создать запись MediaFile."""

        ref = EntityRef.of(entity_name, entity_id)
        source_path = _source_path(source)
        if not source_path.is_file():
            raise MediaError(
                f"Файл фотографии не найден: {source_path}",
                details={"source": str(source_path)},
            )

        timestamp = now_ms()
        extension = source_path.suffix.lstrip(".") or "jpg"
        media_dir = self._ensure_media_dir()
        file_name = f"{ref.entity_name}_{ref.entity_id}_{timestamp}.{extension}"
        while (media_dir / file_name).exists():
            timestamp += 1
            file_name = f"{ref.entity_name}_{ref.entity_id}_{timestamp}.{extension}"
        local_path = media_dir / file_name

        try:
            shutil.copy2(source_path, local_path)
            file_size = local_path.stat().st_size
        except OSError as exc:
            raise MediaError(f"Не удалось скопировать {source_path}: {exc}") from exc

        mime_type = mimetypes.guess_type(file_name)[0] or DEFAULT_MIME_TYPE
        media_id = self._store.insert_or_replace(
            {
                "file_name": file_name,
                "file_type": mime_type,
                "blob_url": "",
                "entity_name": ref.entity_name,
                "entity_id": ref.entity_id,
                "uploaded_at": now_iso(),
                "uploaded_by": self._session.user_id,
                "is_deleted": 0,
                "metadata": json.dumps(
                    {
                        "originalSize": file_size,
                        "fullQuality": True,
                        "timestamp": timestamp,
                        **(metadata or {}),
                    }
                ),
                "local_path": str(local_path),
                "pending_sync": 1,
            }
        )

        if ref.owner is EntityType.RISK_ASSESSMENT_ITEM:
            item = assessment_items.get_by_id(ref.entity_id)
            if item is not None and not item.hasphoto:
                assessment_items.update_fields(ref.entity_id, hasphoto=1)

        logger.info("📷 Сохранено фото %s (MediaID=%s)", file_name, media_id)
        return self._store.get_by_id(media_id)

    def get_photos_for_entity(
        self,
        entity_name: str | EntityType,
        entity_id: int,
        include_deleted: bool = False,
    ) -> list[MediaFile]:
        ref = EntityRef.of(entity_name, entity_id)
        return self._store.get_by_entity(
            ref.entity_name, ref.entity_id, include_deleted=include_deleted
        )

    def delete_photo(self, media_id: int) -> bool:
        deleted = self._store.delete(media_id)
        if deleted:
            logger.info("🗑 Фото #%s помечено как удалённое", media_id)
        return deleted

    def get_local_photo_path(self, media: MediaFile) -> Path | None:
        if media.local_path and Path(media.local_path).is_file():
            return Path(media.local_path)
        return None

    # ─────────────────────────── сервер ──────────────────────────

    def upload_pending_photos(self) -> UploadResult:
        """Загрузить все фото с ``pending_sync = 1``.

        Ошибка одного файла не прерывает пакет и попадает в ``errors``.
        """

        pending = self._store.get_pending_sync()
        logger.info("☁️ Фото к загрузке: %s", len(pending))

        uploaded = 0
        errors: list[dict[str, Any]] = []
        for media in pending:
            try:
                blob_url = self._upload_one(media)
                self._store.update_fields(media.media_id, blob_url=blob_url, pending_sync=0)
            except (MediaError, ServerSyncError, StorageError) as exc:
                logger.warning("⚠️ Фото %s не загружено: %s", media.file_name, exc)
                errors.append(
                    {
                        "mediaID": media.media_id,
                        "fileName": media.file_name,
                        "error": str(exc),
                    }
                )
                continue

            uploaded += 1
            logger.info("☁️ Загружено: %s", media.file_name)

        return UploadResult(success=not errors, uploaded=uploaded, errors=errors)

    def _upload_one(self, media: MediaFile) -> str:
        if not media.local_path:
            raise MediaError("Не указан локальный путь")
        path = Path(media.local_path)
        if not path.is_file():
            raise MediaError("Локальный файл не найден")
        try:
            encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        except OSError as exc:
            raise MediaError(f"Не удалось прочитать файл: {exc}") from exc

        result = self._gateway.upload_media(
            {
                "fileName": media.file_name,
                "fileType": media.file_type,
                "entityName": media.entity_name,
                "entityID": media.entity_id,
                "base64Data": encoded,
                "metadata": media.metadata,
                "isDeleted": bool(media.is_deleted),
            }
        )
        if not isinstance(result, dict):
            raise ServerSyncError("Unexpected server response")
        data = result.get("data")
        blob_url = data.get("blobUrl") if isinstance(data, dict) else None
        if not result.get("success") or not blob_url:
            raise ServerSyncError(result.get("message") or "Upload failed")
        return blob_url

    def download_photos_for_entity(
        self, entity_name: str | EntityType, entity_id: int
    ) -> list[MediaFile]:
        """Скачать фото владельца с сервера; при ошибке вернуть локальный кэш."""

        ref = EntityRef.of(entity_name, entity_id)
        try:
            response = self._gateway.get_media_for_entity(ref.entity_name, ref.entity_id)
        except ServerSyncError as exc:
            logger.warning("⚠️ Список фото недоступен, используем кэш: %s", exc)
            return self.get_photos_for_entity(ref.owner, ref.entity_id)

        server_files = response.get("data") if response.get("success") else None
        if not server_files:
            logger.info("На сервере нет фото для %s #%s", ref.entity_name, ref.entity_id)
            return self.get_photos_for_entity(ref.owner, ref.entity_id)

        existing = {
            media.file_name: media
            for media in self._store.get_by_entity(
                ref.entity_name, ref.entity_id, include_deleted=True
            )
        }
        result: list[MediaFile] = []
        for server_file in server_files:
            file_name = Path(str(server_file.get("FileName") or "")).name
            if not file_name:
                continue
            local = existing.get(file_name)
            if local is not None and self.get_local_photo_path(local):
                result.append(local)
                continue

            destination = self._ensure_media_dir() / file_name
            try:
                self._gateway.download_file(server_file["BlobURL"], destination)
            except (ServerSyncError, OSError, KeyError) as exc:
                logger.error("❌ Не удалось скачать %s: %s", file_name, exc)
                continue

            metadata = server_file.get("Metadata")
            if metadata is not None and not isinstance(metadata, str):
                metadata = json.dumps(metadata)
            media_id = self._store.insert_or_replace(
                {
                    "media_id": local.media_id if local is not None else None,
                    "file_name": file_name,
                    "file_type": server_file.get("FileType") or DEFAULT_MIME_TYPE,
                    "blob_url": server_file["BlobURL"],
                    "entity_name": ref.entity_name,
                    "entity_id": ref.entity_id,
                    "uploaded_at": server_file.get("UploadedAt"),
                    "uploaded_by": server_file.get("UploadedBy"),
                    "is_deleted": 1 if server_file.get("IsDeleted") else 0,
                    "metadata": metadata,
                    "local_path": str(destination),
                    "pending_sync": 0,
                }
            )
            result.append(self._store.get_by_id(media_id))
            logger.info("⬇️ Скачано: %s", file_name)
        return result

    # ─────────────────────────── обслуживание ──────────────────────────

    def cleanup_old_files(self, days_old: int = 30) -> int:
        """Удалить файлы каталога старше ``days_old`` дней; вернуть их число."""

        cutoff = time.time() - days_old * 86400
        removed = 0
        try:
            if not self._media_dir.is_dir():
                return 0
            for path in self._media_dir.iterdir():
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
                    logger.info("🧹 Удалён старый файл %s", path.name)
        except OSError as exc:
            logger.error("❌ Ошибка очистки каталога фото: %s", exc)
        return removed

    def get_storage_stats(self) -> dict[str, int]:
        total_files = 0
        total_size = 0
        try:
            if self._media_dir.is_dir():
                for path in self._media_dir.iterdir():
                    if path.is_file():
                        total_files += 1
                        total_size += path.stat().st_size
        except OSError as exc:
            logger.error("❌ Ошибка подсчёта объёма фото: %s", exc)
        return {"total_files": total_files, "total_size": total_size}


__all__ = ["MediaService", "EntityRef", "UploadResult"]
