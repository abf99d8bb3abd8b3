"""Проверка наличия сети перед синхронизацией."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from urllib.parse import urlparse

from config import Settings
from infrastructure.sync_gateway import SyncGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkState:
    is_connected: bool
    is_internet_reachable: bool

    @property
    def online(self) -> bool:
        return self.is_connected and self.is_internet_reachable


class ConnectivityChecker:
    """Два уровня проверки: TCP-соединение с хостом API и ответ ``/health``."""

    def __init__(self, settings: Settings, gateway: SyncGateway) -> None:
        self._settings = settings
        self._gateway = gateway

    def _api_address(self) -> tuple[str, int]:
        parsed = urlparse(self._settings.api_base_url)
        default_port = 443 if parsed.scheme == "https" else 80
        return parsed.hostname or "localhost", parsed.port or default_port

    def _link_up(self) -> bool:
        host, port = self._api_address()
        try:
            with socket.create_connection(
                (host, port), timeout=self._settings.health_timeout
            ):
                return True
        except OSError as exc:
            logger.debug("Нет соединения с %s:%s: %s", host, port, exc)
            return False

    def fetch(self) -> NetworkState:
        connected = self._link_up()
        reachable = connected and self._gateway.check_health()
        return NetworkState(is_connected=connected, is_internet_reachable=reachable)

    def is_online(self) -> bool:
        try:
            return self.fetch().online
        except Exception:  # noqa: BLE001
            logger.exception("Ошибка проверки соединения")
            return False


__all__ = ["NetworkState", "ConnectivityChecker"]
