from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from appdirs import user_data_dir, user_log_dir
from dotenv import load_dotenv

APP_NAME = "valuations_sync"


def _default_database_url() -> str:
    return f"sqlite:///{Path(user_data_dir(APP_NAME)) / 'valuations.db'}"


def _optional_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


@dataclass
class Settings:
    database_url: str = field(default_factory=_default_database_url)
    media_dir: str = field(
        default_factory=lambda: str(Path(user_data_dir(APP_NAME)) / "media")
    )
    log_dir: str = field(default_factory=lambda: user_log_dir(APP_NAME))
    log_level: str = "INFO"
    detailed_logging: bool = False
    api_base_url: str = "https://localhost:5001/api"
    api_timeout: float = 30.0
    # None: у пакетной синхронизации нет явного таймаута
    sync_timeout: float | None = None
    health_timeout: float = 3.0
    device_id: str = "mobile-tablet-device"
    user_id: str = "current-user-id"
    api_token: str | None = None


@lru_cache()
def get_settings() -> Settings:
    dotenv_path = Path(__file__).resolve().parent / ".env"
    load_dotenv(dotenv_path)

    defaults = Settings()
    return Settings(
        database_url=os.getenv("DATABASE_URL") or defaults.database_url,
        media_dir=os.getenv("MEDIA_DIR") or defaults.media_dir,
        log_dir=os.getenv("LOG_DIR") or defaults.log_dir,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        detailed_logging=os.getenv("DETAILED_LOGGING", "0").lower() in {"1", "true", "yes", "on"},
        api_base_url=os.getenv("API_BASE_URL", defaults.api_base_url).rstrip("/"),
        api_timeout=float(os.getenv("API_TIMEOUT", "30")),
        sync_timeout=_optional_float(os.getenv("SYNC_TIMEOUT")),
        health_timeout=float(os.getenv("HEALTH_TIMEOUT", "3")),
        device_id=os.getenv("DEVICE_ID", defaults.device_id),
        user_id=os.getenv("USER_ID", defaults.user_id),
        api_token=os.getenv("API_TOKEN"),
    )
