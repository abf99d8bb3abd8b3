"""Операции над оценками: шапка (master) и позиции (items)."""

import logging
from collections.abc import Iterable
from typing import Any

from database.db import db
from database.models import RiskAssessmentItem, RiskAssessmentMaster
from services.local_store import assessment_items, assessment_masters
from utils.money import format_money, line_total, total_value
from utils.time_utils import now_iso

logger = logging.getLogger(__name__)

# Поля позиции, которые переносятся при дублировании
ITEM_COPY_FIELDS = (
    "riskassessmentcategoryid",
    "itemprompt",
    "itemtype",
    "rank",
    "commaseparatedlist",
    "selectedanswer",
    "qty",
    "price",
    "description",
    "model",
    "location",
    "assessmentregisterid",
    "assessmentregistertypeid",
    "notes",
)


def start_assessment(
    assessmenttypename: str,
    clientnumber: str | None = None,
    surveydate: str | None = None,
    comments: str | None = None,
    riskassessmentid: int | None = None,
) -> RiskAssessmentMaster:
    """Создать шапку оценки; без id получает локальный отрицательный id."""
    master_id = assessment_masters.insert_or_replace(
        {
            "riskassessmentid": riskassessmentid,
            "assessmenttypename": assessmenttypename,
            "clientnumber": clientnumber,
            "surveydate": surveydate or now_iso(),
            "comments": comments,
            "totalvalue": 0.0,
            "iscomplete": 0,
        }
    )
    logger.info("📝 Создана оценка #%s (%s)", master_id, assessmenttypename)
    return assessment_masters.get_by_id(master_id)


def add_item(
    category_id: int,
    itemprompt: str,
    *,
    user_id: str | None = None,
    device_id: str | None = None,
    **fields: Any,
) -> RiskAssessmentItem:
    """Добавить позицию в категорию с локальным id."""
    timestamp = now_iso()
    data = {
        **fields,
        "riskassessmentitemid": None,
        "riskassessmentcategoryid": category_id,
        "itemprompt": itemprompt,
        "datecreated": timestamp,
        "dateupdated": timestamp,
        "createdbyid": user_id,
        "updatedbyid": user_id,
        "deviceid": device_id,
        "issynced": 0,
        "hasphoto": fields.get("hasphoto", 0),
    }
    item_id = assessment_items.insert_or_replace(data)
    logger.info("➕ Позиция #%s добавлена в категорию %s", item_id, category_id)
    return assessment_items.get_by_id(item_id)


def duplicate_item(item_id: int, *, user_id: str | None = None) -> RiskAssessmentItem | None:
    """Скопировать позицию; копия получает новый локальный id и без фото."""
    source = assessment_items.get_by_id(item_id)
    if source is None:
        logger.warning("⚠️ Позиция #%s не найдена, копирование пропущено", item_id)
        return None
    fields = {name: getattr(source, name) for name in ITEM_COPY_FIELDS}
    category_id = fields.pop("riskassessmentcategoryid")
    prompt = fields.pop("itemprompt")
    return add_item(
        category_id,
        prompt,
        user_id=user_id,
        device_id=source.deviceid,
        **fields,
    )


def update_item_field(
    item_id: int, field: str, value: Any, *, user_id: str | None = None
) -> RiskAssessmentItem | None:
    """Изменить одно поле позиции, не трогая остальные."""
    if field not in RiskAssessmentItem._meta.fields or field == "riskassessmentitemid":
        raise ValueError(f"Недопустимое поле позиции: {field}")
    changes: dict[str, Any] = {field: value}
    if user_id:
        changes["updatedbyid"] = user_id
    return assessment_items.update_fields(item_id, **changes)


def get_item_value(item: RiskAssessmentItem) -> float:
    return float(line_total(item.qty, item.price))


def recalculate_total(master_id: int, item_ids: Iterable[int]) -> float | None:
    """Пересчитать ``totalvalue`` шапки как сумму ``qty * price`` по её позициям.

    Позиции не связаны со шапкой в схеме, поэтому их id передаёт вызывающий код.
    """
    if item_ids is None:
        raise ValueError("Нужен список позиций оценки")
    ids = list(item_ids)
    query = RiskAssessmentItem.select(RiskAssessmentItem.qty, RiskAssessmentItem.price).where(
        RiskAssessmentItem.riskassessmentitemid.in_(ids)
    )
    total = float(total_value((row.qty, row.price) for row in query)) if ids else 0.0
    master = assessment_masters.update_fields(master_id, totalvalue=total)
    if master is None:
        return None
    logger.info("💰 Оценка #%s: итог %s", master_id, format_money(total))
    return total


def complete_assessment(master_id: int, item_ids: Iterable[int]) -> RiskAssessmentMaster | None:
    """Пересчитать итог и отметить оценку завершённой."""
    with db.atomic():
        if recalculate_total(master_id, item_ids) is None:
            return None
        return assessment_masters.update_fields(master_id, iscomplete=1)


def delete_item(item_id: int) -> bool:
    """Удалить позицию; сервер узнает об этом из ``deletedEntities``."""
    return assessment_items.delete(item_id)


__all__ = [
    "start_assessment",
    "add_item",
    "duplicate_item",
    "update_item_field",
    "get_item_value",
    "recalculate_total",
    "complete_assessment",
    "delete_item",
]
