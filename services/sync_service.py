"""Синхронизация локальных изменений с сервером.

Сервис никогда не выбрасывает исключения наружу: любой исход превращается в
:class:`SyncResult`. Одновременно выполняется не более одной синхронизации на
экземпляр сервиса.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from core.app_context import SyncSession
from core.errors import ConnectivityError, ServerSyncError
from database.models import (
    Appointment,
    DeletedEntity,
    RiskAssessmentItem,
    SyncModel,
)
from infrastructure.connectivity import NetworkState
from infrastructure.sync_gateway import SyncGateway
from services import local_store
from services.local_ids import is_local_id
from services.local_store import LocalStore
from services.media_service import MediaService, UploadResult

logger = logging.getLogger(__name__)

# Поля-флаги 0/1, которые сервер ожидает булевыми
BOOLEAN_FIELDS = {"iscomplete", "issynced", "hasphoto"}

APPOINTMENTS_KEY = "appointments"
MASTERS_KEY = "riskAssessmentMasters"
ITEMS_KEY = "riskAssessmentItems"

WIRE_STORES: dict[str, LocalStore] = {
    APPOINTMENTS_KEY: local_store.appointments,
    MASTERS_KEY: local_store.assessment_masters,
    ITEMS_KEY: local_store.assessment_items,
}

OFFLINE_MESSAGE = "No internet connection"
IN_PROGRESS_MESSAGE = "Sync already in progress"


class ConnectivityProbe(Protocol):
    def fetch(self) -> NetworkState: ...


class SyncState(str, Enum):
    IDLE = "idle"
    CHECKING_CONNECTIVITY = "checking_connectivity"
    COLLECTING = "collecting"
    BUILDING_PAYLOAD = "building_payload"
    CALLING_SERVER = "calling_server"
    MARKING_SYNCED = "marking_synced"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class SyncResult:
    success: bool
    offline: bool = False
    in_progress: bool = False
    message: str | None = None
    error: str | None = None
    synced: dict[str, int] = field(default_factory=dict)
    remapped: dict[int, int] = field(default_factory=dict)
    server_response: Any = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.offline:
            result["offline"] = True
        if self.in_progress:
            result["in_progress"] = True
        if self.message:
            result["message"] = self.message
        if self.error:
            result["error"] = self.error
        if self.success:
            result["synced"] = dict(self.synced)
            result["remapped"] = dict(self.remapped)
        if self.server_response is not None:
            result["serverResponse"] = self.server_response
        return result


@dataclass
class PullResult:
    success: bool
    stored: int = 0
    skipped: int = 0
    offline: bool = False
    from_cache: bool = False
    error: str | None = None


@dataclass(frozen=True)
class SyncProgress:
    phase: str
    completed: int
    total: int


@dataclass
class FullSyncResult:
    success: bool
    media: UploadResult | None = None
    data: SyncResult | None = None
    progress: SyncProgress | None = None
    offline: bool = False
    in_progress: bool = False
    error: str | None = None


# ─────────────────────────── преобразование ───────────────────────────


def to_wire(row: SyncModel) -> dict[str, Any]:
    """Строка таблицы → объект протокола (имена колонок, булевы флаги)."""

    payload: dict[str, Any] = {}
    for model_field in row._meta.sorted_fields:
        if model_field.name == "pending_sync":
            continue
        value = getattr(row, model_field.name)
        if model_field.name in BOOLEAN_FIELDS:
            value = bool(value)
        payload[model_field.column_name] = value

    pk_column = row._meta.primary_key.column_name
    local_id = payload[pk_column]
    if is_local_id(local_id):
        payload[pk_column] = None
        payload["_localId"] = local_id
    return payload


def from_wire(model: type[SyncModel], payload: dict[str, Any]) -> dict[str, Any]:
    """Объект сервера → данные для :meth:`LocalStore.insert_or_replace`."""

    by_column = {f.column_name: f.name for f in model._meta.sorted_fields}
    data: dict[str, Any] = {}
    for key, value in payload.items():
        name = by_column.get(key) or (key if key in model._meta.fields else None)
        if name is None or name == "pending_sync":
            continue
        if name in BOOLEAN_FIELDS:
            value = 1 if value else 0
        data[name] = value
    return data


def _tombstone_to_wire(tombstone: DeletedEntity) -> dict[str, Any]:
    return {
        "entityType": tombstone.entity_type,
        "entityId": tombstone.entity_id,
        "deletedAt": (
            tombstone.deleted_at.isoformat()
            if isinstance(tombstone.deleted_at, datetime)
            else tombstone.deleted_at
        ),
    }


def _pk(row: SyncModel) -> int:
    return getattr(row, row._meta.primary_key.name)


def _as_int_set(values: Any) -> set[int]:
    result: set[int] = set()
    for value in values or []:
        try:
            result.add(int(value))
        except (TypeError, ValueError):
            logger.debug("Пропущен некорректный id в подтверждении: %r", value)
    return result


class SyncService:
    """Оркестратор отправки изменений на сервер."""

    def __init__(
        self,
        session: SyncSession,
        gateway: SyncGateway,
        connectivity: ConnectivityProbe,
        media_service: MediaService | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._connectivity = connectivity
        self._media_service = media_service
        self._lock = threading.Lock()
        self.state = SyncState.IDLE

    # ─────────────────────────── публичные методы ───────────────────────────

    def is_connected(self) -> bool:
        """True, только если есть и соединение, и доступ в интернет."""
        try:
            network = self._connectivity.fetch()
        except Exception:  # noqa: BLE001
            logger.exception("Ошибка проверки соединения")
            return False
        return bool(network.is_connected and network.is_internet_reachable)

    def sync_pending_changes(self) -> SyncResult:
        """Отправить все изменённые записи одним пакетом."""

        if not self._lock.acquire(blocking=False):
            logger.info("⏭ Синхронизация уже выполняется, повторный вызов отклонён")
            return SyncResult(success=False, in_progress=True, error=IN_PROGRESS_MESSAGE)
        try:
            return self._sync_pending_changes(check_connectivity=True)
        finally:
            self._lock.release()

    def sync_all(
        self, progress_callback: Callable[[SyncProgress], None] | None = None
    ) -> FullSyncResult:
        """Сначала загрузить фото, затем отправить данные.

        ``progress_callback`` получает счётчик «выполнено / всего» по обеим фазам.
        """

        if not self._lock.acquire(blocking=False):
            return FullSyncResult(success=False, in_progress=True, error=IN_PROGRESS_MESSAGE)
        try:
            try:
                self._require_online()
            except ConnectivityError as exc:
                return FullSyncResult(success=False, offline=True, error=exc.message)

            counts = self.get_pending_changes_count()
            total = counts["total"] + counts["mediaFiles"]
            completed = 0

            def report(phase: str) -> SyncProgress:
                progress = SyncProgress(phase=phase, completed=completed, total=total)
                if progress_callback is not None:
                    try:
                        progress_callback(progress)
                    except Exception:  # noqa: BLE001
                        logger.debug("Ошибка в обработчике прогресса", exc_info=True)
                return progress

            report("start")
            media_result = self._upload_media()
            completed += media_result.uploaded + len(media_result.errors)
            report("media")

            data_result = self._sync_pending_changes(check_connectivity=False)
            completed += sum(data_result.synced.get(key, 0) for key in WIRE_STORES)
            progress = report("data")

            return FullSyncResult(
                success=media_result.success and data_result.success,
                media=media_result,
                data=data_result,
                progress=progress,
            )
        finally:
            self._lock.release()

    def get_pending_changes_count(self) -> dict[str, int]:
        """Количество несинхронизированных записей по типам и их сумма."""

        try:
            counts = {key: store.count_pending() for key, store in WIRE_STORES.items()}
            counts["total"] = sum(counts.values())
            counts["mediaFiles"] = local_store.media_files.count_pending()
        except Exception:  # noqa: BLE001
            logger.exception("Не удалось посчитать несинхронизированные записи")
            counts = {key: 0 for key in WIRE_STORES}
            counts.update(total=0, mediaFiles=0)
        return counts

    def pull_appointments(self) -> PullResult:
        """Загрузить встречи с сервера, не затирая локальные изменения."""

        cache_key = "appointments"
        if not self.is_connected():
            cached = self._session.response_cache.get(cache_key)
            return PullResult(
                success=False,
                offline=True,
                from_cache=cached is not None,
                error=OFFLINE_MESSAGE,
            )
        try:
            response = self._gateway.get_appointments()
            if not response.get("success"):
                return PullResult(success=False, error=response.get("message") or "Pull failed")
            rows = _unwrap_list(response.get("data"))
            self._session.response_cache[cache_key] = rows
            stored, skipped = self._store_server_rows(local_store.appointments, Appointment, rows)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Ошибка загрузки встреч")
            return PullResult(success=False, error=str(exc) or "Pull failed")
        logger.info("⬇️ Встречи: сохранено %s, пропущено %s", stored, skipped)
        return PullResult(success=True, stored=stored, skipped=skipped)

    def prefetch_category_items(self, category_id: int) -> PullResult:
        """Заранее загрузить позиции категории, если их ещё нет локально."""

        try:
            cached = local_store.assessment_items.get_by_category(category_id)
            if cached:
                logger.info("📦 Категория %s уже в кэше (%s позиций)", category_id, len(cached))
                return PullResult(success=True, skipped=len(cached), from_cache=True)
            if not self.is_connected():
                return PullResult(success=False, offline=True, error=OFFLINE_MESSAGE)

            response = self._gateway.get_category_items(category_id)
            if not response.get("success"):
                return PullResult(success=False, error=response.get("message") or "Prefetch failed")
            rows = _unwrap_list(response.get("data"))
            stored, skipped = self._store_server_rows(
                local_store.assessment_items, RiskAssessmentItem, rows
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Ошибка предзагрузки категории %s", category_id)
            return PullResult(success=False, error=str(exc) or "Prefetch failed")
        logger.info("📡 Категория %s: сохранено %s позиций", category_id, stored)
        return PullResult(success=True, stored=stored, skipped=skipped)

    # ─────────────────────────── внутренние методы ──────────────────────────

    def _require_online(self) -> None:
        self.state = SyncState.CHECKING_CONNECTIVITY
        if not self.is_connected():
            self.state = SyncState.FAILED
            logger.info("📴 Нет соединения, синхронизация отменена")
            raise ConnectivityError(OFFLINE_MESSAGE)

    def _upload_media(self) -> UploadResult:
        if self._media_service is None:
            return UploadResult(success=True, uploaded=0)
        try:
            return self._media_service.upload_pending_photos()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Ошибка загрузки фото")
            return UploadResult(success=False, uploaded=0, errors=[{"error": str(exc)}])

    def _sync_pending_changes(self, *, check_connectivity: bool) -> SyncResult:
        try:
            if check_connectivity:
                self._require_online()

            self.state = SyncState.COLLECTING
            pending = {key: store.get_pending_sync() for key, store in WIRE_STORES.items()}
            tombstones = local_store.get_pending_deletions()
            logger.info(
                "Найдены изменения: %s",
                {key: len(rows) for key, rows in pending.items()},
            )

            if not any(pending.values()) and not tombstones:
                self.state = SyncState.SUCCESS
                return SyncResult(
                    success=True,
                    message="No pending changes",
                    synced={key: 0 for key in WIRE_STORES},
                )

            self.state = SyncState.BUILDING_PAYLOAD
            payload = self._build_payload(pending, tombstones)
            logger.debug("Пакет синхронизации: %s", json.dumps(payload, default=str))

            self.state = SyncState.CALLING_SERVER
            response = self._gateway.sync_batch(payload)
            if not response.get("success"):
                self.state = SyncState.FAILED
                message = response.get("message") or "Server sync failed"
                logger.error("❌ Сервер отклонил синхронизацию: %s", message)
                return SyncResult(success=False, error=message, server_response=response)

            self.state = SyncState.MARKING_SYNCED
            data = response.get("data")
            synced = self._mark_confirmed(pending, data)
            remapped = self._apply_id_mappings(data, pending)
            local_store.drain_deletions(t.id for t in tombstones)
        except ConnectivityError as exc:
            return SyncResult(success=False, offline=True, error=exc.message)
        except ServerSyncError as exc:
            self.state = SyncState.FAILED
            logger.error("❌ Ошибка связи с сервером: %s", exc)
            return SyncResult(success=False, error=exc.message or "Sync failed")
        except Exception as exc:  # noqa: BLE001
            self.state = SyncState.FAILED
            logger.exception("Ошибка синхронизации")
            return SyncResult(success=False, error=str(exc) or "Sync failed")

        self.state = SyncState.SUCCESS
        logger.info("✅ Синхронизация завершена: %s", synced)
        return SyncResult(
            success=True,
            synced=synced,
            remapped=remapped,
            server_response=data,
        )

    def _build_payload(
        self,
        pending: dict[str, list[SyncModel]],
        tombstones: list[DeletedEntity],
    ) -> dict[str, Any]:
        return {
            "deviceId": self._session.device_id,
            "userId": self._session.user_id,
            APPOINTMENTS_KEY: [to_wire(row) for row in pending[APPOINTMENTS_KEY]],
            MASTERS_KEY: [to_wire(row) for row in pending[MASTERS_KEY]],
            ITEMS_KEY: [to_wire(row) for row in pending[ITEMS_KEY]],
            "deletedEntities": [_tombstone_to_wire(t) for t in tombstones],
        }

    def _mark_confirmed(
        self, pending: dict[str, list[SyncModel]], data: Any
    ) -> dict[str, int]:
        """Сбросить флаг для подтверждённых строк.

        Если сервер не прислал ``accepted``, подтверждёнными считаются все
        отправленные строки. Строка с локальным id подтверждается только вместе
        с записью в ``idMappings``, иначе она уйдёт повторно с тем же
        ``_localId``. Строки, изменённые во время запроса, остаются в очереди.
        """

        accepted = data.get("accepted") if isinstance(data, dict) else None
        mapped = self._mapped_server_ids(data)
        synced: dict[str, int] = {}
        for key, store in WIRE_STORES.items():
            submitted = {_pk(row): row for row in pending[key]}
            if isinstance(accepted, dict):
                confirmed_ids = _as_int_set(accepted.get(key))
                ids = [
                    record_id
                    for record_id in submitted
                    if record_id in confirmed_ids
                    or mapped.get((key, record_id)) in confirmed_ids
                ]
            else:
                ids = list(submitted)
            unmapped = [i for i in ids if is_local_id(i) and (key, i) not in mapped]
            if unmapped:
                logger.warning(
                    "⚠️ %s: сервер не выдал id для локальных строк %s, они останутся в очереди",
                    key,
                    unmapped,
                )
                ids = [i for i in ids if i not in unmapped]

            cleared = store.mark_synced(ids, submitted)
            left = len(submitted) - cleared
            if left:
                logger.warning(
                    "⚠️ %s: %s строк не подтверждены или изменились во время запроса и останутся в очереди",
                    key,
                    left,
                )
            synced[key] = cleared
        return synced

    @staticmethod
    def _mapped_server_ids(data: Any) -> dict[tuple[str, int], int]:
        mappings = data.get("idMappings") if isinstance(data, dict) else None
        result: dict[tuple[str, int], int] = {}
        for mapping in mappings or []:
            try:
                key = mapping.get("entityType") or ITEMS_KEY
                result[(key, int(mapping["localId"]))] = int(mapping["serverId"])
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.warning("Некорректное сопоставление id: %r", mapping)
        return result

    def _apply_id_mappings(
        self, data: Any, pending: dict[str, list[SyncModel]]
    ) -> dict[int, int]:
        submitted = {(key, _pk(row)) for key, rows in pending.items() for row in rows}
        remapped: dict[int, int] = {}
        for (key, local_id), server_id in self._mapped_server_ids(data).items():
            store = WIRE_STORES.get(key)
            if store is None or not is_local_id(local_id):
                continue
            if store.remap_id(local_id, server_id):
                remapped[local_id] = server_id
            elif (key, local_id) in submitted and store.get_by_id(server_id) is None:
                # строку удалили, пока сервер создавал её копию
                store.record_deletion(server_id)
        return remapped

    def _store_server_rows(
        self, store: LocalStore, model: type[SyncModel], rows: list[dict[str, Any]]
    ) -> tuple[int, int]:
        stored = skipped = 0
        for row in rows:
            data = from_wire(model, row)
            record_id = data.get(store.pk_name)
            if record_id is None:
                skipped += 1
                continue
            current = store.get_by_id(record_id)
            if current is not None and current.pending_sync == 1:
                skipped += 1
                continue
            data["pending_sync"] = 0
            store.insert_or_replace(data)
            stored += 1
        return stored, skipped


def _unwrap_list(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        return data["data"]
    raise ServerSyncError("Неожиданная структура ответа сервера")


__all__ = [
    "SyncService",
    "SyncResult",
    "PullResult",
    "FullSyncResult",
    "SyncProgress",
    "SyncState",
    "to_wire",
    "from_wire",
]
