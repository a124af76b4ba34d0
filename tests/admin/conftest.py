from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

import pytest

from relayhub.admin.config_manager import ConfigSynchronizer
from relayhub.admin.errors import RemoteSnapshotMissing, RemoteStoreError
from relayhub.admin.models import BackupEntry, EndpointCreate, WebDAVCredentials
from relayhub.admin.registry import EndpointRegistry
from relayhub.admin.runtime import ProxyRuntime
from relayhub.admin.storage import SQLiteStorage


class FakeRemoteStore:
    """In-memory snapshot store shared across factory calls."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.modified: Dict[str, datetime] = {}
        self.fail_delete: Set[str] = set()
        self.fail_put = False
        self.credentials: List[WebDAVCredentials] = []
        self.closed = 0
        self.test_result: Dict[str, Any] = {"success": True, "message": "WebDAV connection successful"}

    def factory(self, credentials: WebDAVCredentials) -> "FakeRemoteStore":
        self.credentials.append(credentials)
        return self

    async def put(self, name: str, payload: bytes) -> None:
        if self.fail_put:
            raise RemoteStoreError("upload refused")
        self.files[name] = payload
        self.modified[name] = datetime.now(timezone.utc) + timedelta(seconds=2)

    async def get(self, name: str) -> bytes:
        if name not in self.files:
            raise RemoteSnapshotMissing(name)
        return self.files[name]

    async def list(self) -> List[BackupEntry]:
        return [
            BackupEntry(filename=name, size=len(data), modified=self.modified.get(name))
            for name, data in self.files.items()
        ]

    async def delete(self, name: str) -> None:
        if name in self.fail_delete:
            raise RemoteStoreError(f"delete of {name} refused")
        if name not in self.files:
            raise RemoteSnapshotMissing(name)
        del self.files[name]
        self.modified.pop(name, None)

    async def test(self) -> Dict[str, Any]:
        return self.test_result

    async def close(self) -> None:
        self.closed += 1


class ScriptedProber:
    def __init__(self, probe: Optional[Mapping[str, Any]] = None, models: Optional[Mapping[str, Any]] = None) -> None:
        self.probe = probe if probe is not None else {"success": True, "status": "200", "method": "models", "message": "ok"}
        self.models = models if models is not None else {"success": True, "message": "Found 2 models", "models": ["a", "b"]}
        self.probed: List[tuple] = []
        self.fetched: List[tuple] = []

    async def test_endpoint(self, endpoint, index):
        self.probed.append((endpoint.name, index))
        return self.probe

    async def fetch_models(self, api_url, api_key, transformer):
        self.fetched.append((api_url, api_key, transformer))
        return self.models


def make_endpoint(name: str, **overrides: Any) -> EndpointCreate:
    fields = {
        "name": name,
        "api_url": f"https://{name.lower()}.example.com/",
        "api_key": f"sk-{name.lower()}-12345678",
        "enabled": True,
    }
    fields.update(overrides)
    return EndpointCreate(**fields)


@pytest.fixture
def storage(tmp_path: Path) -> SQLiteStorage:
    store = SQLiteStorage(tmp_path / "relayhub.db")
    store.initialize()
    return store


@pytest.fixture
def runtime() -> ProxyRuntime:
    return ProxyRuntime()


@pytest.fixture
def synchronizer(storage: SQLiteStorage, runtime: ProxyRuntime) -> ConfigSynchronizer:
    return ConfigSynchronizer(storage, runtime)


@pytest.fixture
def registry(storage: SQLiteStorage, synchronizer: ConfigSynchronizer) -> EndpointRegistry:
    return EndpointRegistry(storage, synchronizer)


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def configured_storage(storage: SQLiteStorage) -> SQLiteStorage:
    storage.save_webdav(WebDAVCredentials(url="https://dav.example.com/remote.php/dav", username="me", password="pw"))
    return storage
