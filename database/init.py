"""Единое место для инициализации Peewee-Proxy `db`.
Вызывайте :func:`init_from_env` в начале entry-point'а.
"""

from __future__ import annotations

import os
from pathlib import Path

from peewee import SqliteDatabase, TextField
from playhouse.migrate import SqliteMigrator, migrate

from .db import db  # тот самый Proxy
from .models import (
    Appointment,
    DeletedEntity,
    LocalIdSequence,
    MediaFile,
    RiskAssessmentItem,
    RiskAssessmentMaster,
)

ALL_MODELS = [
    Appointment,
    RiskAssessmentMaster,
    RiskAssessmentItem,
    MediaFile,
    DeletedEntity,
    LocalIdSequence,
]

_DEFAULT_ENV = "DATABASE_URL"


def _sqlite_from_url(url: str) -> SqliteDatabase:
    path = url.replace("sqlite:///", "", 1) or ":memory:"
    if path != ":memory:":
        Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return SqliteDatabase(path, pragmas={"journal_mode": "wal"})


def _apply_runtime_migrations(database) -> None:
    """Добавляет колонку ``LocalPath`` в таблицы, созданные старыми сборками."""

    migrator = SqliteMigrator(database)

    with database.connection_context():
        if not database.table_exists(MediaFile._meta.table_name):
            return

        column_names = {
            column.name for column in database.get_columns(MediaFile._meta.table_name)
        }
        if "LocalPath" in column_names:
            return

        with database.atomic():
            migrate(
                migrator.add_column(
                    MediaFile._meta.table_name,
                    "LocalPath",
                    TextField(null=True),
                )
            )


def create_tables() -> None:
    db.create_tables(ALL_MODELS, safe=True)


def init_from_env(database_url: str | None = None, env_var: str = _DEFAULT_ENV) -> None:
    """Инициализирует :data:`db` из переданного URL или переменной окружения.

    Поддерживает строки вида ``sqlite:///absolute/path.db`` или
    ``sqlite:///:memory:``. Повторный вызов безопасен.
    """
    if getattr(db, "obj", None):
        return

    url = database_url or os.getenv(env_var)
    if not url:
        raise RuntimeError(f"{env_var} is not set")
    if not url.startswith("sqlite"):
        raise RuntimeError(f"Поддерживается только SQLite, получено: {url}")

    database = _sqlite_from_url(url)
    db.initialize(database)
    _apply_runtime_migrations(database)
    create_tables()
