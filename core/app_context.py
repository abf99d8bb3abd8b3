"""Контекст приложения и управление зависимостями."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from config import Settings, get_settings
from infrastructure.connectivity import ConnectivityChecker
from infrastructure.sync_gateway import SyncGateway

if TYPE_CHECKING:  # pragma: no cover
    from services.media_service import MediaService
    from services.sync_service import SyncService

DependencyName = str


@dataclass
class SyncSession:
    """Состояние одного пользователя на одном устройстве.

    Передаётся сервисам явно, вместо глобальных переменных модуля.
    """

    device_id: str
    user_id: str
    response_cache: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncSession":
        return cls(device_id=settings.device_id, user_id=settings.user_id)


class AppContext:
    """Контекст приложения с ленивым созданием зависимостей."""

    _DEPENDENCY_NAMES: ClassVar[set[str]] = {
        "session",
        "sync_gateway",
        "connectivity",
        "media_service",
        "sync_service",
    }

    def __init__(
        self,
        settings: Settings,
        *,
        sync_gateway_factory: Callable[[Settings], SyncGateway] = SyncGateway,
        overrides: dict[str, Any] | None = None,
        instances: dict[str, Any] | None = None,
    ) -> None:
        self._settings = settings
        self._sync_gateway_factory = sync_gateway_factory
        self._overrides: dict[str, Any] = dict(overrides or {})
        self._instances: dict[str, Any] = dict(instances or {})

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def session(self) -> SyncSession:
        return self._get_dependency(
            "session", lambda: SyncSession.from_settings(self._settings)
        )

    @property
    def sync_gateway(self) -> SyncGateway:
        return self._get_dependency(
            "sync_gateway",
            lambda: self._sync_gateway_factory(self._settings),
        )

    @property
    def connectivity(self) -> ConnectivityChecker:
        return self._get_dependency(
            "connectivity",
            lambda: ConnectivityChecker(self._settings, self.sync_gateway),
        )

    @property
    def media_service(self) -> "MediaService":
        from services.media_service import MediaService

        return self._get_dependency(
            "media_service",
            lambda: MediaService(
                session=self.session,
                gateway=self.sync_gateway,
                media_dir=Path(self._settings.media_dir).expanduser(),
            ),
        )

    @property
    def sync_service(self) -> "SyncService":
        from services.sync_service import SyncService

        return self._get_dependency(
            "sync_service",
            lambda: SyncService(
                session=self.session,
                gateway=self.sync_gateway,
                connectivity=self.connectivity,
                media_service=self.media_service,
            ),
        )

    def override(self, **deps: Any) -> "AppContext":
        """Создать новый контекст с переопределёнными зависимостями."""

        override_args = dict(deps)
        new_settings = override_args.pop("settings", self._settings)

        unknown = set(override_args) - self._DEPENDENCY_NAMES
        if unknown:
            names = ", ".join(sorted(unknown))
            raise ValueError(f"Неизвестные зависимости для переопределения: {names}")

        overrides = dict(self._overrides)
        overrides.update(override_args)
        if new_settings is self._settings:
            instances = {
                key: value
                for key, value in self._instances.items()
                if key not in override_args
            }
        else:
            instances = {}
        return AppContext(
            settings=new_settings,
            sync_gateway_factory=self._sync_gateway_factory,
            overrides=overrides,
            instances=instances,
        )

    def _get_dependency(
        self, name: DependencyName, factory: Callable[[], Any]
    ) -> Any:
        if name in self._overrides:
            return self._overrides[name]
        if name not in self._instances:
            self._instances[name] = factory()
        return self._instances[name]


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Получить (или создать) синглтон контекста приложения."""

    global _app_context
    if _app_context is None:
        _app_context = AppContext(settings=get_settings())
    return _app_context


__all__ = ["AppContext", "SyncSession", "get_app_context"]
