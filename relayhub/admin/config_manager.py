from __future__ import annotations

import asyncio
import logging

from .errors import AdminError, InternalError, StorageError
from .models import ProxyConfig, ProxySettings, SettingsUpdate
from .runtime import ProxyRuntime
from .storage import SQLiteStorage, utcnow

logger = logging.getLogger(__name__)


def load_proxy_config(storage: SQLiteStorage) -> ProxyConfig:
    """Build a fresh immutable snapshot from the store."""
    try:
        endpoints = storage.get_endpoints()
        settings = storage.get_settings()
    except StorageError as exc:
        raise InternalError(f"Failed to load configuration: {exc}") from exc
    return ProxyConfig(endpoints=tuple(endpoints), settings=settings, loaded_at=utcnow())


class ConfigSynchronizer:
    """Rebuilds the proxy's live config from storage after every mutation."""

    def __init__(self, storage: SQLiteStorage, runtime: ProxyRuntime) -> None:
        self._storage = storage
        self._runtime = runtime
        self._lock = asyncio.Lock()

    async def startup(self) -> ProxyConfig:
        try:
            self._storage.initialize()
        except StorageError as exc:
            raise InternalError(f"Failed to open store: {exc}") from exc
        return await self.reload()

    async def install(self, config: ProxyConfig) -> None:
        async with self._lock:
            await self._runtime.replace_config(config)

    async def reload(self) -> ProxyConfig:
        async with self._lock:
            config = load_proxy_config(self._storage)
            await self._runtime.replace_config(config)
        logger.debug("installed config with %d endpoints", len(config.endpoints))
        return config

    async def sync_after(self, action: str) -> None:
        """Reload without surfacing failures; storage stays the source of truth."""
        try:
            await self.reload()
        except AdminError as exc:
            logger.error("Failed to reload config after %s: %s", action, exc.message)

    async def update_settings(self, changes: SettingsUpdate) -> ProxySettings:
        async with self._storage.lock:
            try:
                current = self._storage.get_settings()
                updated = current.model_copy(update=changes.model_dump(exclude_none=True))
                self._storage.save_settings(updated)
            except StorageError as exc:
                logger.error("Failed to update settings: %s", exc)
                raise InternalError("Failed to update config") from exc
            await self.sync_after("updating settings")
        return updated
