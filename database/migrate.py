"""Подготовка схемы локальной базы: колонки старых сборок и недостающие таблицы."""

import argparse
import logging

from config import get_settings

from .db import db
from .init import ALL_MODELS, create_tables, init_from_env

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--reset", action="store_true", help="удалить и создать таблицы заново"
    )
    args = parser.parse_args(argv)

    init_from_env(get_settings().database_url)
    if args.reset:
        db.drop_tables(ALL_MODELS, safe=True)
        logger.warning("🧱 Таблицы удалены")
    create_tables()
    logger.info("Таблицы: %s", ", ".join(sorted(db.get_tables())))


if __name__ == "__main__":
    main()
