"""SQLite-backed store for endpoint records, proxy settings and backup metadata.

Every endpoint or proxy-settings write stamps ``meta.last_modified`` so the
conflict check can tell whether the store changed after a snapshot was taken.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from .errors import StorageError
from .models import Endpoint, ProxySettings, RestoreSummary, WebDAVCredentials

logger = logging.getLogger(__name__)

_PROXY_SETTINGS_KEY = "proxy"
_WEBDAV_SETTINGS_KEY = "webdav"
_COMPARED_FIELDS = ("api_url", "api_key", "enabled", "transformer", "model", "remark")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def diff_endpoints(local: Endpoint, remote: Endpoint) -> List[str]:
    """Return the names of user-visible fields that differ between two records."""
    changed: List[str] = []
    for field in _COMPARED_FIELDS:
        left = getattr(local, field)
        right = getattr(remote, field)
        if field == "api_key":
            left, right = left.get_secret_value(), right.get_secret_value()
        if left != right:
            changed.append(field)
    return changed


def _init_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS endpoints (
            name        TEXT PRIMARY KEY,
            api_url     TEXT NOT NULL,
            api_key     TEXT NOT NULL,
            enabled     INTEGER NOT NULL DEFAULT 0,
            transformer TEXT NOT NULL DEFAULT 'claude',
            model       TEXT NOT NULL DEFAULT '',
            remark      TEXT NOT NULL DEFAULT '',
            sort_order  INTEGER NOT NULL DEFAULT 0,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT NOT NULL DEFAULT '{}'
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key   TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_endpoints_sort ON endpoints(sort_order)")


def _row_to_endpoint(row: sqlite3.Row) -> Endpoint:
    return Endpoint(
        name=row["name"],
        api_url=row["api_url"],
        api_key=row["api_key"],
        enabled=bool(row["enabled"]),
        transformer=row["transformer"],
        model=row["model"],
        remark=row["remark"],
        sort_order=row["sort_order"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _endpoint_params(endpoint: Endpoint) -> Dict[str, object]:
    return {
        "name": endpoint.name,
        "api_url": endpoint.api_url,
        "api_key": endpoint.api_key.get_secret_value(),
        "enabled": int(endpoint.enabled),
        "transformer": endpoint.transformer,
        "model": endpoint.model,
        "remark": endpoint.remark,
        "sort_order": endpoint.sort_order,
        "created_at": endpoint.created_at.isoformat(),
        "updated_at": endpoint.updated_at.isoformat(),
    }


def _select_endpoints(conn: sqlite3.Connection) -> List[Endpoint]:
    rows = conn.execute("SELECT * FROM endpoints ORDER BY sort_order, name").fetchall()
    return [_row_to_endpoint(row) for row in rows]


def _read_setting(conn: sqlite3.Connection, key: str) -> Optional[dict]:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if row is None:
        return None
    return json.loads(row["value"])


def _write_setting(conn: sqlite3.Connection, key: str, value: dict) -> None:
    conn.execute(
        "INSERT INTO settings (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, json.dumps(value)),
    )


def _write_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT INTO meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )


def _touch(conn: sqlite3.Connection, when: Optional[datetime] = None) -> None:
    _write_meta(conn, "last_modified", (when or utcnow()).isoformat())


def _proxy_settings(conn: sqlite3.Connection) -> ProxySettings:
    raw = _read_setting(conn, _PROXY_SETTINGS_KEY)
    if raw is None:
        return ProxySettings()
    try:
        return ProxySettings.model_validate(raw)
    except ValidationError:
        logger.warning("Stored proxy settings are invalid, using defaults")
        return ProxySettings()


class SQLiteStorage:
    """Durable store. ``lock`` serializes every read-modify-write sequence."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self.lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def initialize(self) -> None:
        with self._connect():
            pass

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._path), timeout=30)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"cannot open store {self._path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            _init_schema(conn)
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    # Endpoints

    def get_endpoints(self) -> List[Endpoint]:
        with self._connect() as conn:
            return _select_endpoints(conn)

    def get_endpoint(self, name: str) -> Optional[Endpoint]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM endpoints WHERE name = ?", (name,)).fetchone()
            return _row_to_endpoint(row) if row is not None else None

    def save_endpoint(self, endpoint: Endpoint) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO endpoints (name, api_url, api_key, enabled, transformer, model, "
                "remark, sort_order, created_at, updated_at) VALUES (:name, :api_url, :api_key, "
                ":enabled, :transformer, :model, :remark, :sort_order, :created_at, :updated_at)",
                _endpoint_params(endpoint),
            )
            _touch(conn)

    def update_endpoint(self, endpoint: Endpoint, original_name: Optional[str] = None) -> None:
        """Overwrite the record stored under ``original_name`` (defaults to the endpoint's name)."""
        params = _endpoint_params(endpoint)
        params["original_name"] = original_name or endpoint.name
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE endpoints SET name = :name, api_url = :api_url, api_key = :api_key, "
                "enabled = :enabled, transformer = :transformer, model = :model, remark = :remark, "
                "sort_order = :sort_order, created_at = :created_at, updated_at = :updated_at "
                "WHERE name = :original_name",
                params,
            )
            if cursor.rowcount == 0:
                raise StorageError(f"endpoint {params['original_name']} does not exist")
            _touch(conn)

    def delete_endpoint(self, name: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM endpoints WHERE name = ?", (name,))
            if cursor.rowcount:
                _touch(conn)
            return cursor.rowcount > 0

    # Settings

    def get_settings(self) -> ProxySettings:
        with self._connect() as conn:
            return _proxy_settings(conn)

    def save_settings(self, settings: ProxySettings) -> None:
        with self._connect() as conn:
            _write_setting(conn, _PROXY_SETTINGS_KEY, settings.model_dump(mode="json"))
            _touch(conn)

    def get_webdav(self) -> Optional[WebDAVCredentials]:
        with self._connect() as conn:
            raw = _read_setting(conn, _WEBDAV_SETTINGS_KEY)
        if not raw or not raw.get("url"):
            return None
        return WebDAVCredentials.model_validate(raw)

    def save_webdav(self, credentials: WebDAVCredentials) -> None:
        # Credentials are not part of snapshots, so this write does not stamp last_modified.
        value = {
            "url": credentials.url,
            "username": credentials.username,
            "password": credentials.password.get_secret_value(),
        }
        with self._connect() as conn:
            _write_setting(conn, _WEBDAV_SETTINGS_KEY, value)

    # Metadata

    def last_modified(self) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = 'last_modified'").fetchone()
        return datetime.fromisoformat(row["value"]) if row is not None else None

    def last_restore(self) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = 'last_restore'").fetchone()
        return json.loads(row["value"]) if row is not None else None

    # Snapshots

    def dump(self) -> bytes:
        """Serialize the store with the SQLite online-backup API, minus remote credentials."""
        with tempfile.TemporaryDirectory() as tmp:
            target_path = Path(tmp) / "snapshot.db"
            with self._connect() as source:
                target = sqlite3.connect(str(target_path))
                try:
                    source.backup(target)
                    target.execute("DELETE FROM settings WHERE key = ?", (_WEBDAV_SETTINGS_KEY,))
                    target.commit()
                    target.execute("PRAGMA journal_mode=DELETE")
                except sqlite3.Error as exc:
                    raise StorageError(f"snapshot failed: {exc}") from exc
                finally:
                    target.close()
            return target_path.read_bytes()

    @staticmethod
    def read_snapshot(payload: bytes) -> Tuple[List[Endpoint], ProxySettings]:
        with tempfile.TemporaryDirectory() as tmp:
            snapshot_path = Path(tmp) / "restore.db"
            snapshot_path.write_bytes(payload)
            conn = sqlite3.connect(str(snapshot_path))
            conn.row_factory = sqlite3.Row
            try:
                endpoints = _select_endpoints(conn)
                settings = _proxy_settings(conn)
            except (sqlite3.Error, ValidationError, ValueError) as exc:
                raise StorageError(f"invalid snapshot: {exc}") from exc
            finally:
                conn.close()
        return endpoints, settings

    def merge_snapshot(self, payload: bytes, choice: str, filename: str = "") -> RestoreSummary:
        """Merge a snapshot into the store in one transaction.

        Snapshot-only endpoints are appended after the local ones. On a name
        clash ``remote`` takes the snapshot's fields (keeping the local
        position) while ``local``/``keep_local`` keep the local record.
        """
        remote_endpoints, remote_settings = self.read_snapshot(payload)
        summary = RestoreSummary(filename=filename, choice=choice)
        now = utcnow()
        with self._connect() as conn:
            local = {endpoint.name: endpoint for endpoint in _select_endpoints(conn)}
            next_order = max((e.sort_order for e in local.values()), default=-1) + 1
            for remote in remote_endpoints:
                existing = local.get(remote.name)
                if existing is None:
                    added = remote.model_copy(update={"sort_order": next_order, "updated_at": now})
                    conn.execute(
                        "INSERT INTO endpoints (name, api_url, api_key, enabled, transformer, "
                        "model, remark, sort_order, created_at, updated_at) VALUES (:name, "
                        ":api_url, :api_key, :enabled, :transformer, :model, :remark, "
                        ":sort_order, :created_at, :updated_at)",
                        _endpoint_params(added),
                    )
                    next_order += 1
                    summary.added += 1
                elif choice == "remote" and diff_endpoints(existing, remote):
                    replaced = remote.model_copy(
                        update={
                            "sort_order": existing.sort_order,
                            "created_at": existing.created_at,
                            "updated_at": now,
                        }
                    )
                    params = _endpoint_params(replaced)
                    params["original_name"] = existing.name
                    conn.execute(
                        "UPDATE endpoints SET api_url = :api_url, api_key = :api_key, "
                        "enabled = :enabled, transformer = :transformer, model = :model, "
                        "remark = :remark, updated_at = :updated_at WHERE name = :original_name",
                        params,
                    )
                    summary.overwritten += 1
                else:
                    summary.kept += 1

            settings_changed = False
            if choice == "remote" and _proxy_settings(conn) != remote_settings:
                _write_setting(conn, _PROXY_SETTINGS_KEY, remote_settings.model_dump(mode="json"))
                settings_changed = True

            if summary.added or summary.overwritten or settings_changed:
                _touch(conn, now)
            record = summary.model_dump(mode="json")
            record["restored_at"] = now.isoformat()
            _write_meta(conn, "last_restore", json.dumps(record))
        logger.info(
            "restored %s (%s): added=%d overwritten=%d kept=%d",
            filename, choice, summary.added, summary.overwritten, summary.kept,
        )
        return summary
