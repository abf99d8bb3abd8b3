"""Адаптер HTTP API сервера синхронизации."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import requests

from config import Settings
from core.errors import ServerSyncError

logger = logging.getLogger(__name__)

SYNC_BATCH_PATH = "/sync/batch"
MEDIA_UPLOAD_PATH = "/sync/media/upload"
MEDIA_ENTITY_PATH = "/sync/media/entity/{entity_name}/{entity_id}"
APPOINTMENTS_PATH = "/appointments"
CATEGORY_ITEMS_PATH = "/risk-assessment-items/category/{category_id}"
HEALTH_PATH = "/health"

_UNSET = object()


UNEXPECTED_RESPONSE = "Unexpected server response"


def normalize_response(
    response: requests.Response, *, strict: bool = False
) -> dict[str, Any]:
    """Привести ответ сервера к виду ``{success, data, message, status}``.

    Тело без поля ``success`` считается успешным, только если ``strict`` не
    задан: запись изменений и загрузка фото требуют явного подтверждения.
    """

    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict) and "success" in body:
        return {
            "success": bool(body.get("success")),
            "data": body.get("data"),
            "message": body.get("message"),
            "status": response.status_code,
        }
    if strict:
        logger.warning(
            "⚠️ Ответ %s без поля success: %.200r", response.status_code, response.text
        )
        return {
            "success": False,
            "data": body,
            "message": UNEXPECTED_RESPONSE,
            "status": response.status_code,
        }
    return {
        "success": True,
        "data": body,
        "message": None,
        "status": response.status_code,
    }


@dataclass
class SyncGateway:
    """Ленивая обёртка над REST API сервера синхронизации."""

    settings: Settings
    _session: requests.Session | None = field(default=None, init=False, repr=False)

    @property
    def base_url(self) -> str:
        return self.settings.api_base_url.rstrip("/")

    def _get_session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = requests.Session()
        session.headers.update(
            {"Content-Type": "application/json", "Accept": "application/json"}
        )
        if self.settings.api_token:
            session.headers["Authorization"] = f"Bearer {self.settings.api_token}"
        self._session = session
        return session

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        timeout: Any = _UNSET,
        strict: bool = False,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        if timeout is _UNSET:
            timeout = self.settings.api_timeout
        logger.debug("🚀 %s %s", method, url)
        try:
            response = self._get_session().request(
                method, url, json=json, timeout=timeout
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            message = _error_message(exc.response) or str(exc)
            raise ServerSyncError(message, status=status) from exc
        except requests.exceptions.RequestException as exc:
            raise ServerSyncError(f"Запрос {method} {path} не выполнен: {exc}") from exc
        return normalize_response(response, strict=strict)

    # ─────────────────────────── синхронизация ──────────────────────────

    def sync_batch(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Отправить пакет изменений; таймаут только если он задан в настройках."""

        return self._request(
            "POST",
            SYNC_BATCH_PATH,
            json=payload,
            timeout=self.settings.sync_timeout,
            strict=True,
        )

    # ─────────────────────────── медиафайлы ──────────────────────────

    def upload_media(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Загрузить один файл в base64 и вернуть ответ с ``data.blobUrl``."""

        return self._request("POST", MEDIA_UPLOAD_PATH, json=payload, strict=True)

    def get_media_for_entity(self, entity_name: str, entity_id: int) -> dict[str, Any]:
        path = MEDIA_ENTITY_PATH.format(entity_name=entity_name, entity_id=entity_id)
        return self._request("GET", path)

    def download_file(self, url: str, destination: Path) -> Path:
        """Скачать файл по ``url`` в ``destination``."""

        try:
            with self._get_session().get(
                url, stream=True, timeout=self.settings.api_timeout
            ) as response:
                response.raise_for_status()
                destination.parent.mkdir(parents=True, exist_ok=True)
                with destination.open("wb") as fh:
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            fh.write(chunk)
        except requests.exceptions.RequestException as exc:
            raise ServerSyncError(f"Не удалось скачать {url}: {exc}") from exc
        return destination

    # ─────────────────────────── справочные данные ──────────────────────

    def get_appointments(self) -> dict[str, Any]:
        return self._request("GET", APPOINTMENTS_PATH)

    def get_category_items(self, category_id: int) -> dict[str, Any]:
        return self._request("GET", CATEGORY_ITEMS_PATH.format(category_id=category_id))

    def check_health(self) -> bool:
        """True, если сервер отвечает на ``/health``."""

        try:
            response = self._get_session().get(
                f"{self.base_url}{HEALTH_PATH}", timeout=self.settings.health_timeout
            )
        except requests.exceptions.RequestException as exc:
            logger.debug("Проверка /health не удалась: %s", exc)
            return False
        return response.ok


def _error_message(response: requests.Response | None) -> str | None:
    if response is None:
        return None
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        return body.get("message") or body.get("error")
    return None


__all__ = ["SyncGateway", "normalize_response"]
