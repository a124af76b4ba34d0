"""Remote snapshots of the store: backup, listing, bulk delete, restore and conflict checks.

Nothing here holds the proxy runtime. Restore hands the rebuilt config to an
``apply_config`` callback supplied by the caller.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

from .config_manager import load_proxy_config
from .errors import (
    AdminError,
    InternalError,
    InvalidInput,
    NotFound,
    RemoteSnapshotMissing,
    RemoteStoreError,
    StorageError,
)
from .models import (
    RESTORE_CHOICES,
    BackupEntry,
    ConflictReport,
    EndpointDiff,
    ProxyConfig,
    RestoreSummary,
    WebDAVCredentials,
)
from .storage import SQLiteStorage, diff_endpoints

logger = logging.getLogger(__name__)


class RemoteStore(Protocol):
    async def put(self, name: str, payload: bytes) -> None: ...

    async def get(self, name: str) -> bytes: ...

    async def list(self) -> List[BackupEntry]: ...

    async def delete(self, name: str) -> None: ...

    async def test(self) -> Dict[str, Any]: ...

    async def close(self) -> None: ...


RemoteFactory = Callable[[WebDAVCredentials], RemoteStore]
ApplyConfig = Callable[[ProxyConfig], Awaitable[None]]


def default_backup_name(now: Optional[datetime] = None) -> str:
    return "backup-" + (now or datetime.now()).strftime("%Y%m%d-%H%M%S") + ".db"


def _checked_filename(filename: str) -> str:
    name = filename.strip()
    if not name:
        raise InvalidInput("filename is required")
    if "/" in name or "\\" in name or name in (".", ".."):
        raise InvalidInput("invalid filename")
    return name


class _RemoteAccess:
    def __init__(self, storage: SQLiteStorage, remote_factory: RemoteFactory) -> None:
        self._storage = storage
        self._remote_factory = remote_factory

    @asynccontextmanager
    async def _remote(self) -> AsyncIterator[RemoteStore]:
        try:
            credentials = self._storage.get_webdav()
        except StorageError as exc:
            raise InternalError("Failed to read WebDAV config") from exc
        if credentials is None:
            raise InvalidInput("WebDAV is not configured")
        remote = self._remote_factory(credentials)
        try:
            yield remote
        finally:
            await remote.close()

    async def _find(self, remote: RemoteStore, filename: str) -> BackupEntry:
        for entry in await remote.list():
            if entry.filename == filename:
                return entry
        raise NotFound("Backup not found")


class BackupCoordinator(_RemoteAccess):
    async def backup(self, filename: str = "") -> str:
        name = _checked_filename(filename) if filename.strip() else default_backup_name()
        async with self._storage.lock:
            try:
                payload = self._storage.dump()
            except StorageError as exc:
                logger.error("WebDAV backup failed: %s", exc)
                raise InternalError("WebDAV backup failed") from exc
        async with self._remote() as remote:
            try:
                await remote.put(name, payload)
            except RemoteStoreError as exc:
                logger.error("WebDAV backup failed: %s", exc)
                raise InternalError("WebDAV backup failed") from exc
        logger.info("uploaded backup %s (%d bytes)", name, len(payload))
        return name

    async def list(self) -> List[BackupEntry]:
        async with self._remote() as remote:
            try:
                return await remote.list()
            except RemoteStoreError as exc:
                logger.error("Failed to list WebDAV backups: %s", exc)
                raise InternalError("Failed to list WebDAV backups") from exc

    async def delete(self, filenames: List[str]) -> List[str]:
        """Delete every named snapshot or none of them.

        Payloads are fetched first; if a delete fails part-way the snapshots
        already removed are uploaded again before the error is raised.
        """
        if not filenames:
            raise InvalidInput("filenames is required")
        names = list(dict.fromkeys(_checked_filename(name) for name in filenames))

        async with self._remote() as remote:
            try:
                listed = {entry.filename for entry in await remote.list()}
                missing = [name for name in names if name not in listed]
                if missing:
                    raise NotFound(f"Backups not found: {', '.join(missing)}")
                saved: Dict[str, bytes] = {name: await remote.get(name) for name in names}
            except RemoteStoreError as exc:
                logger.error("Failed to delete WebDAV backups: %s", exc)
                raise InternalError("Failed to delete WebDAV backups") from exc

            deleted: List[str] = []
            try:
                for name in names:
                    await remote.delete(name)
                    deleted.append(name)
            except RemoteStoreError as exc:
                logger.error("Failed to delete WebDAV backups: %s", exc)
                for name in deleted:
                    try:
                        await remote.put(name, saved[name])
                    except RemoteStoreError as restore_exc:
                        logger.error("Failed to re-upload %s after partial delete: %s", name, restore_exc)
                raise InternalError("Failed to delete WebDAV backups") from exc
        logger.info("deleted backups: %s", ", ".join(names))
        return names

    async def restore(self, filename: str, choice: str, apply_config: ApplyConfig) -> RestoreSummary:
        name = _checked_filename(filename)
        choice = choice.strip() or "local"
        if choice not in RESTORE_CHOICES:
            raise InvalidInput("choice must be one of: remote, local, keep_local")

        async with self._remote() as remote:
            try:
                payload = await remote.get(name)
            except RemoteSnapshotMissing as exc:
                raise NotFound("Backup not found") from exc
            except RemoteStoreError as exc:
                logger.error("WebDAV restore failed: %s", exc)
                raise InternalError("WebDAV restore failed") from exc

        async with self._storage.lock:
            try:
                summary = self._storage.merge_snapshot(payload, choice, filename=name)
            except StorageError as exc:
                logger.error("WebDAV restore failed: %s", exc)
                raise InternalError("WebDAV restore failed") from exc
            # The merge is committed; a failed reload must not fail the restore.
            try:
                await apply_config(load_proxy_config(self._storage))
            except AdminError as exc:
                logger.error("Failed to apply restored config: %s", exc.message)
        return summary


class ConflictDetector(_RemoteAccess):
    """Flags restores that would discard local changes made after a snapshot."""

    async def detect(self, filename: str) -> ConflictReport:
        name = _checked_filename(filename)
        async with self._remote() as remote:
            try:
                entry = await self._find(remote, name)
                payload = await remote.get(name)
            except RemoteSnapshotMissing as exc:
                raise NotFound("Backup not found") from exc
            except RemoteStoreError as exc:
                logger.error("Failed to detect conflicts: %s", exc)
                raise InternalError("Failed to detect conflicts") from exc

        try:
            local_modified = self._storage.last_modified()
            local_endpoints = {endpoint.name: endpoint for endpoint in self._storage.get_endpoints()}
            remote_endpoints, _ = SQLiteStorage.read_snapshot(payload)
        except StorageError as exc:
            logger.error("Failed to detect conflicts: %s", exc)
            raise InternalError("Failed to detect conflicts") from exc

        conflicts = []
        for remote_endpoint in remote_endpoints:
            local = local_endpoints.get(remote_endpoint.name)
            if local is None:
                continue
            fields = diff_endpoints(local, remote_endpoint)
            if fields:
                conflicts.append(EndpointDiff(name=local.name, fields=fields))

        return ConflictReport(
            filename=name,
            has_conflict=is_conflicting(local_modified, entry.modified),
            local_modified=local_modified,
            remote_modified=entry.modified,
            conflicts=conflicts,
        )


def is_conflicting(local_modified: Optional[datetime], snapshot_time: Optional[datetime]) -> bool:
    """True when the store changed strictly after the snapshot was taken."""
    if local_modified is None:
        return False
    if snapshot_time is None:
        return True
    # Most remote stores report whole seconds; compare at that precision then.
    if snapshot_time.microsecond == 0:
        local_modified = local_modified.replace(microsecond=0)
    return local_modified > snapshot_time
