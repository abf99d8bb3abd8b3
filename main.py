import argparse
import json
import logging
from collections.abc import Sequence
from dataclasses import asdict

from config import Settings, get_settings
from core.app_context import get_app_context
from database.init import init_from_env
from services import local_store
from utils.logging_config import setup_logging

__all__ = ["main", "build_parser"]

COMMANDS = (
    "sync",
    "sync-all",
    "upload-media",
    "pending",
    "pull",
    "prefetch",
    "stats",
    "clear-tables",
    "recreate-tables",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="valuations-sync",
        description="Консоль синхронизации локальной базы оценок с сервером.",
    )
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument(
        "--category",
        type=int,
        help="id категории для команды prefetch",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="подтвердить очистку/пересоздание таблиц",
    )
    return parser


def _print(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def main(argv: Sequence[str] | None = None, settings: Settings | None = None) -> int:
    """Точка входа консоли синхронизации."""

    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL не задан в .env")

    init_from_env(settings.database_url)
    setup_logging(settings)
    logger = logging.getLogger(__name__)

    context = get_app_context()
    sync_service = context.sync_service

    if args.command == "sync":
        result = sync_service.sync_pending_changes()
        _print(result.to_dict())
        return 0 if result.success else 1

    if args.command == "sync-all":
        result = sync_service.sync_all(
            lambda p: logger.info("⏳ %s: %s/%s", p.phase, p.completed, p.total)
        )
        _print(asdict(result))
        return 0 if result.success else 1

    if args.command == "upload-media":
        result = context.media_service.upload_pending_photos()
        _print(result.to_dict())
        return 0 if result.success else 1

    if args.command == "pending":
        _print(sync_service.get_pending_changes_count())
        return 0

    if args.command == "pull":
        result = sync_service.pull_appointments()
        _print(asdict(result))
        return 0 if result.success else 1

    if args.command == "prefetch":
        if args.category is None:
            logger.error("❌ Для prefetch нужен --category")
            return 2
        result = sync_service.prefetch_category_items(args.category)
        _print(asdict(result))
        return 0 if result.success else 1

    if args.command == "stats":
        _print(local_store.get_table_stats())
        return 0

    if not args.yes:
        logger.error("❌ Команда %s удаляет данные, добавьте --yes", args.command)
        return 2
    if args.command == "clear-tables":
        local_store.clear_all_tables()
    else:
        local_store.recreate_all_tables()
    _print(local_store.get_table_stats())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
