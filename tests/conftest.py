from types import SimpleNamespace

import pytest

from config import Settings
from core.app_context import SyncSession
from infrastructure.connectivity import NetworkState
from services.media_service import MediaService
from services.sync_service import SyncService


class FakeGateway:
    """Запоминает вызовы и отвечает заранее заданными ответами."""

    def __init__(self):
        self.batches: list[dict] = []
        self.uploads: list[dict] = []
        self.batch_response: dict | Exception = {"success": True, "data": {}, "message": None}
        self.upload_responses: dict[str, dict | Exception] = {}
        self.media_listing: dict | Exception = {"success": True, "data": []}
        self.downloads: list[tuple[str, object]] = []
        self.appointments_response: dict | Exception = {"success": True, "data": []}
        self.category_response: dict | Exception = {"success": True, "data": []}
        self.category_calls: list[int] = []
        self.on_batch = None

    @staticmethod
    def _answer(response):
        if isinstance(response, Exception):
            raise response
        return response

    def sync_batch(self, payload):
        self.batches.append(payload)
        if self.on_batch is not None:
            self.on_batch(payload)
        return self._answer(self.batch_response)

    def upload_media(self, payload):
        self.uploads.append(payload)
        response = self.upload_responses.get(
            payload["fileName"],
            {"success": True, "data": {"blobUrl": f"https://blob/{payload['fileName']}"}},
        )
        return self._answer(response)

    def get_media_for_entity(self, entity_name, entity_id):
        return self._answer(self.media_listing)

    def download_file(self, url, destination):
        self.downloads.append((url, destination))
        destination.write_bytes(b"downloaded")
        return destination

    def get_appointments(self):
        return self._answer(self.appointments_response)

    def get_category_items(self, category_id):
        self.category_calls.append(category_id)
        return self._answer(self.category_response)


class FakeConnectivity:
    def __init__(self, connected: bool = True, reachable: bool = True):
        self.state = NetworkState(is_connected=connected, is_internet_reachable=reachable)
        self.calls = 0

    def fetch(self):
        self.calls += 1
        if isinstance(self.state, Exception):
            raise self.state
        return self.state


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite:///:memory:",
        media_dir=str(tmp_path / "media"),
        log_dir=str(tmp_path / "logs"),
        api_base_url="https://sync.example.test/api",
    )


@pytest.fixture
def session():
    return SyncSession(device_id="tablet-1", user_id="surveyor-7")


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def connectivity():
    return FakeConnectivity()


@pytest.fixture
def media_service(in_memory_db, session, fake_gateway, tmp_path):
    return MediaService(session, fake_gateway, tmp_path / "media")


@pytest.fixture
def sync_service(in_memory_db, session, fake_gateway, connectivity, media_service):
    return SyncService(
        session=session,
        gateway=fake_gateway,
        connectivity=connectivity,
        media_service=media_service,
    )


@pytest.fixture
def photo(tmp_path):
    def _make(name: str = "capture.jpg", content: bytes = b"\xff\xd8jpeg-bytes"):
        path = tmp_path / "camera" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def stub_settings():
    return SimpleNamespace(
        api_base_url="https://sync.example.test:8443/api",
        health_timeout=0.1,
    )
