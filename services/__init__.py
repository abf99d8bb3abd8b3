"""Пакет прикладных сервисов синхронизации.

Подмодули не импортируются на уровне пакета: ``sync_service`` и
``media_service`` тянут за собой HTTP-клиент, а ``local_store`` открывает базу.

Импортируйте нужные подмодули напрямую, например:
    from services import local_store as ls
    from services.sync_service import SyncService
"""

__all__: list[str] = []
