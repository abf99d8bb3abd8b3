"""Локальное хранилище: CRUD и учёт несинхронизированных изменений.

Каждая таблица обслуживается своим репозиторием с одинаковым набором
операций. Запись выполняется через ``INSERT OR REPLACE``: все колонки
перезаписываются, поэтому частичные изменения делаются только через
:meth:`LocalStore.update_fields`, который сам читает строку, объединяет поля и
записывает её обратно.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from contextlib import contextmanager
from typing import Any

from peewee import PeeweeException
from playhouse.shortcuts import model_to_dict

from core.errors import StorageError
from database.db import db
from database.init import ALL_MODELS
from database.models import (
    Appointment,
    DeletedEntity,
    EntityType,
    MediaFile,
    RiskAssessmentItem,
    RiskAssessmentMaster,
    SyncModel,
)
from services.local_ids import allocate_local_id, is_local_id
from utils.time_utils import now_iso

logger = logging.getLogger(__name__)

Record = Mapping[str, Any] | SyncModel


@contextmanager
def storage_errors(action: str):
    """Превратить любую ошибку peewee в :class:`StorageError`."""
    try:
        yield
    except PeeweeException as exc:
        logger.error("❌ Ошибка локальной базы (%s): %s", action, exc)
        raise StorageError(f"{action}: {exc}", details={"action": action}) from exc


class LocalStore:
    """Репозиторий одной таблицы с флагом ``pending_sync``."""

    model: type[SyncModel]
    entity_type: EntityType | None = None
    # поле, которое обновляется при каждом изменении через update_fields
    touch_field: str | None = None

    @property
    def pk_name(self) -> str:
        return self.model._meta.primary_key.name

    @property
    def table_name(self) -> str:
        return self.model._meta.table_name

    # ─────────────────────────── чтение ───────────────────────────

    def get_all(self) -> list[SyncModel]:
        with storage_errors(f"{self.table_name}.get_all"):
            return list(self.model.select())

    def get_by_id(self, record_id: int) -> SyncModel | None:
        with storage_errors(f"{self.table_name}.get_by_id"):
            return self.model.get_or_none(self.model._meta.primary_key == record_id)

    def get_pending_sync(self) -> list[SyncModel]:
        """Все строки с ``pending_sync = 1``."""
        with storage_errors(f"{self.table_name}.get_pending_sync"):
            return list(self.model.pending().order_by(self.model._meta.primary_key))

    def count_pending(self) -> int:
        with storage_errors(f"{self.table_name}.count_pending"):
            return self.model.pending().count()

    # ─────────────────────────── запись ───────────────────────────

    def _clean(self, record: Record) -> dict[str, Any]:
        if isinstance(record, SyncModel):
            data = model_to_dict(record, recurse=False)
        else:
            data = dict(record)
        fields = self.model._meta.fields
        unknown = set(data) - set(fields)
        if unknown:
            logger.debug("%s: пропущены неизвестные поля %s", self.table_name, sorted(unknown))
        return {key: value for key, value in data.items() if key in fields}

    def insert_or_replace(self, record: Record) -> int:
        """Записать строку целиком; вернуть её первичный ключ.

        ``pending_sync`` становится 1, если явно не передан 0.
        """
        data = self._clean(record)
        data["pending_sync"] = 0 if data.get("pending_sync") in (0, False) else 1

        with storage_errors(f"{self.table_name}.insert_or_replace"):
            if data.get(self.pk_name) is None:
                data.pop(self.pk_name, None)
                if not self.model._meta.auto_increment:
                    data[self.pk_name] = allocate_local_id(self.model)
            result = self.model.replace(**data).execute()
        return data.get(self.pk_name, result)

    def update(self, record: Record) -> int:
        """Синоним :meth:`insert_or_replace` с тем же ключом."""
        return self.insert_or_replace(record)

    def update_fields(self, record_id: int, **fields: Any) -> SyncModel | None:
        """Изменить отдельные поля строки, сохранив остальные.

        Строка помечается как изменённая, если ``pending_sync`` не передан явно.
        Возвращает обновлённую строку или ``None``, если её нет.
        """
        fields.pop(self.pk_name, None)
        with storage_errors(f"{self.table_name}.update_fields"):
            with db.atomic():
                current = self.model.get_or_none(
                    self.model._meta.primary_key == record_id
                )
                if current is None:
                    logger.warning(
                        "⚠️ %s #%s не найдена, изменение пропущено",
                        self.table_name,
                        record_id,
                    )
                    return None
                data = model_to_dict(current, recurse=False)
                data.update(self._clean(fields))
                if "pending_sync" not in fields:
                    data["pending_sync"] = 1
                if self.touch_field and self.touch_field not in fields:
                    data[self.touch_field] = now_iso()
                self.model.replace(**data).execute()
                return self.model.get_by_id(record_id)

    def delete(self, record_id: int) -> bool:
        """Удалить строку физически и оставить tombstone для сервера."""
        with storage_errors(f"{self.table_name}.delete"):
            with db.atomic():
                removed = (
                    self.model.delete()
                    .where(self.model._meta.primary_key == record_id)
                    .execute()
                )
                if removed and not is_local_id(record_id):
                    self._write_tombstone(record_id)
        if removed:
            logger.info("🗑 %s #%s удалена", self.table_name, record_id)
        return bool(removed)

    def _write_tombstone(self, record_id: int) -> None:
        if self.entity_type is not None:
            DeletedEntity.create(entity_type=self.entity_type.value, entity_id=record_id)

    def record_deletion(self, record_id: int) -> None:
        """Поставить в очередь удаление серверной строки, которой нет локально."""
        with storage_errors(f"{self.table_name}.record_deletion"):
            self._write_tombstone(record_id)
        logger.info("🗑 %s #%s будет удалена на сервере", self.table_name, record_id)

    def _synced_values(self) -> dict[str, Any]:
        return {"pending_sync": 0}

    def mark_synced(
        self, ids: Iterable[int], submitted: Mapping[int, SyncModel] | None = None
    ) -> int:
        """Сбросить флаг изменений; по одному запросу на каждый id.

        Если передан ``submitted`` (строки в том виде, в каком ушли на сервер),
        флаг сбрасывается только у строк, которые с тех пор не менялись.
        Повторная отметка уже чистой строки ничего не делает.
        """
        updated = 0
        with storage_errors(f"{self.table_name}.mark_synced"):
            for record_id in ids:
                query = self.model.update(**self._synced_values()).where(
                    self.model._meta.primary_key == record_id
                )
                snapshot = submitted.get(record_id) if submitted else None
                if snapshot is not None:
                    query = query.where(self._unchanged_since(snapshot))
                updated += query.execute()
        logger.debug("%s: отмечено синхронизированными %s строк", self.table_name, updated)
        return updated

    def _unchanged_since(self, snapshot: SyncModel):
        condition = None
        for model_field in self.model._meta.sorted_fields:
            if model_field.primary_key or model_field.name == "pending_sync":
                continue
            value = getattr(snapshot, model_field.name)
            clause = model_field.is_null() if value is None else model_field == value
            condition = clause if condition is None else condition & clause
        return condition

    def remap_id(self, local_id: int, server_id: int) -> bool:
        """Заменить локальный id строки на выданный сервером без дублей."""
        if local_id == server_id:
            return False
        with storage_errors(f"{self.table_name}.remap_id"):
            with db.atomic():
                current = self.model.get_or_none(
                    self.model._meta.primary_key == local_id
                )
                if current is None:
                    return False
                data = model_to_dict(current, recurse=False)
                data[self.pk_name] = server_id
                self.model.replace(**data).execute()
                self.model.delete().where(
                    self.model._meta.primary_key == local_id
                ).execute()
                self._after_remap(local_id, server_id)
        logger.info("🔁 %s: id %s → %s", self.table_name, local_id, server_id)
        return True

    def _after_remap(self, local_id: int, server_id: int) -> None:
        if self.entity_type is None:
            return
        MediaFile.update(entity_id=server_id).where(
            (MediaFile.entity_name == self.entity_type.value)
            & (MediaFile.entity_id == local_id)
        ).execute()


class AppointmentStore(LocalStore):
    model = Appointment
    entity_type = EntityType.APPOINTMENT
    touch_field = "date_modified"

    def _synced_values(self) -> dict[str, Any]:
        return {"pending_sync": 0, "date_modified": now_iso()}

    def get_by_status(self, meeting_status: str) -> list[Appointment]:
        with storage_errors("appointments.get_by_status"):
            return list(
                Appointment.select()
                .where(Appointment.meeting_status == meeting_status)
                .order_by(Appointment.start_time)
            )


class RiskAssessmentMasterStore(LocalStore):
    model = RiskAssessmentMaster
    entity_type = EntityType.RISK_ASSESSMENT_MASTER


class RiskAssessmentItemStore(LocalStore):
    model = RiskAssessmentItem
    entity_type = EntityType.RISK_ASSESSMENT_ITEM
    touch_field = "dateupdated"

    def _synced_values(self) -> dict[str, Any]:
        return {"pending_sync": 0, "issynced": 1, "synctimestamp": now_iso()}

    def get_by_category(self, category_id: int) -> list[RiskAssessmentItem]:
        with storage_errors("risk_assessment_items.get_by_category"):
            return list(
                RiskAssessmentItem.select()
                .where(RiskAssessmentItem.riskassessmentcategoryid == category_id)
                .order_by(RiskAssessmentItem.rank, RiskAssessmentItem.riskassessmentitemid)
            )


class MediaFileStore(LocalStore):
    model = MediaFile

    def delete(self, record_id: int) -> bool:
        """Мягкое удаление: флаг ``IsDeleted`` и повторная отправка."""
        with storage_errors("media_files.delete"):
            updated = (
                MediaFile.update(is_deleted=1, pending_sync=1)
                .where(MediaFile.media_id == record_id)
                .execute()
            )
        return bool(updated)

    def hard_delete(self, record_id: int) -> bool:
        with storage_errors("media_files.hard_delete"):
            removed = MediaFile.delete().where(MediaFile.media_id == record_id).execute()
        return bool(removed)

    def get_by_entity(
        self, entity_name: str, entity_id: int, include_deleted: bool = False
    ) -> list[MediaFile]:
        query = MediaFile.select().where(
            (MediaFile.entity_name == entity_name) & (MediaFile.entity_id == entity_id)
        )
        if not include_deleted:
            query = query.where(MediaFile.is_deleted == 0)
        with storage_errors("media_files.get_by_entity"):
            return list(query.order_by(MediaFile.media_id))


appointments = AppointmentStore()
assessment_masters = RiskAssessmentMasterStore()
assessment_items = RiskAssessmentItemStore()
media_files = MediaFileStore()

STORES: dict[EntityType, LocalStore] = {
    EntityType.APPOINTMENT: appointments,
    EntityType.RISK_ASSESSMENT_MASTER: assessment_masters,
    EntityType.RISK_ASSESSMENT_ITEM: assessment_items,
}


# ─────────────────────────── удалённые записи ───────────────────────────


def get_pending_deletions() -> list[DeletedEntity]:
    with storage_errors("deleted_entities.get_pending"):
        return list(DeletedEntity.select().order_by(DeletedEntity.id))


def drain_deletions(tombstone_ids: Iterable[int]) -> int:
    ids = list(tombstone_ids)
    if not ids:
        return 0
    with storage_errors("deleted_entities.drain"):
        return DeletedEntity.delete().where(DeletedEntity.id.in_(ids)).execute()


# ─────────────────────────── отладка ───────────────────────────


def get_table_stats() -> dict[str, dict[str, int]]:
    """Количество строк и несинхронизированных строк по таблицам."""
    stats: dict[str, dict[str, int]] = {}
    with storage_errors("get_table_stats"):
        for model in ALL_MODELS:
            if issubclass(model, SyncModel):
                total = model.select().count()
                pending = model.pending().count()
            elif model is DeletedEntity:
                total = pending = model.select().count()
            else:
                continue
            stats[model._meta.table_name] = {"total": total, "pending": pending}
    return stats


def clear_all_tables() -> None:
    """Удалить все строки всех таблиц (только для разработки)."""
    with storage_errors("clear_all_tables"):
        with db.atomic():
            for model in ALL_MODELS:
                model.delete().execute()
    logger.warning("🧹 Все локальные таблицы очищены")


def recreate_all_tables() -> None:
    """Пересоздать схему с нуля (только для разработки)."""
    with storage_errors("recreate_all_tables"):
        db.drop_tables(ALL_MODELS, safe=True)
        db.create_tables(ALL_MODELS, safe=True)
    logger.warning("🧱 Локальные таблицы пересозданы")


__all__ = [
    "LocalStore",
    "AppointmentStore",
    "RiskAssessmentMasterStore",
    "RiskAssessmentItemStore",
    "MediaFileStore",
    "appointments",
    "assessment_masters",
    "assessment_items",
    "media_files",
    "STORES",
    "storage_errors",
    "get_pending_deletions",
    "drain_deletions",
    "get_table_stats",
    "clear_all_tables",
    "recreate_all_tables",
]
