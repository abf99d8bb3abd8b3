"""Выделение локальных идентификаторов для записей, ещё не известных серверу.

Локальные id отрицательные, серверные положительные, поэтому
проверка «запись создана только на устройстве» сводится к сравнению с нулём.
Последний выданный id хранится в ``local_id_sequence``: после удаления или
замены строки её id больше никому не достаётся.
"""

from __future__ import annotations

import threading

from peewee import fn

from database.db import db
from database.models import BaseModel, LocalIdSequence

_lock = threading.Lock()


def is_local_id(value: int | None) -> bool:
    """True, если идентификатор выдан клиентом и ещё не заменён серверным."""
    return value is not None and int(value) < 0


def allocate_local_id(model: type[BaseModel]) -> int:
    """Вернуть новый локальный id для таблицы ``model``, ни разу не выданный ранее."""
    pk = model._meta.primary_key
    table = model._meta.table_name
    with _lock, db.atomic():
        lowest = model.select(fn.MIN(pk)).scalar()
        sequence = LocalIdSequence.get_or_none(LocalIdSequence.table == table)
        issued = sequence.last_id if sequence is not None else 0
        new_id = min(issued, int(lowest or 0), 0) - 1
        LocalIdSequence.replace(table=table, last_id=new_id).execute()
        return new_id


__all__ = ["is_local_id", "allocate_local_id"]
