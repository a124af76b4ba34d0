from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote, urlparse

import httpx

from ..errors import RemoteSnapshotMissing, RemoteStoreError
from ..models import BackupEntry, WebDAVCredentials

BACKUP_COLLECTION = "relayhub"

_PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:getcontentlength/><d:getlastmodified/><d:resourcetype/>"
    "</d:prop></d:propfind>"
)
_DAV = "{DAV:}"


def parse_multistatus(body: bytes) -> List[BackupEntry]:
    """Turn a PROPFIND multistatus body into file entries, skipping collections."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise RemoteStoreError(f"invalid PROPFIND response: {exc}") from exc
    entries: List[BackupEntry] = []
    for response in root.iter(f"{_DAV}response"):
        href = response.findtext(f"{_DAV}href") or ""
        path = unquote(urlparse(href).path)
        if not path or path.endswith("/"):
            continue
        prop = response.find(f"{_DAV}propstat/{_DAV}prop")
        if prop is not None and prop.find(f"{_DAV}resourcetype/{_DAV}collection") is not None:
            continue
        size_text = prop.findtext(f"{_DAV}getcontentlength") if prop is not None else None
        modified_text = prop.findtext(f"{_DAV}getlastmodified") if prop is not None else None
        modified = None
        if modified_text:
            try:
                modified = parsedate_to_datetime(modified_text)
                if modified.tzinfo is None:
                    modified = modified.replace(tzinfo=timezone.utc)
            except (TypeError, ValueError):
                modified = None
        entries.append(
            BackupEntry(
                filename=path.rsplit("/", 1)[-1],
                size=int(size_text) if size_text and size_text.isdigit() else 0,
                modified=modified,
            )
        )
    entries.sort(key=lambda entry: entry.modified.timestamp() if entry.modified else 0, reverse=True)
    return entries


class WebDAVStore:
    """Snapshot store kept in a ``relayhub/`` collection on a WebDAV server."""

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._root = url.strip().rstrip("/") + "/"
        self._collection = f"{self._root}{BACKUP_COLLECTION}/"
        auth = httpx.BasicAuth(username, password) if username else None
        self._client = httpx.AsyncClient(timeout=timeout, auth=auth, transport=transport)
        self._log = logging.getLogger(__name__)

    @classmethod
    def from_credentials(
        cls, credentials: WebDAVCredentials, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "WebDAVStore":
        return cls(
            credentials.url,
            credentials.username,
            credentials.password.get_secret_value(),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "WebDAVStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _url(self, name: str) -> str:
        return f"{self._collection}{quote(name)}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        self._log.debug("%s %s", method, url)
        try:
            resp = await self._client.request(method, url, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise RemoteStoreError(f"{method} {url} failed: {exc}") from exc
        self._log.debug("%s %s -> %s", method, url, resp.status_code)
        return resp

    async def _ensure_collection(self) -> None:
        resp = await self._request("MKCOL", self._collection)
        # 405 means the collection already exists.
        if resp.status_code not in (200, 201, 301, 405):
            raise RemoteStoreError(f"cannot create {self._collection}: HTTP {resp.status_code}")

    async def put(self, name: str, payload: bytes) -> None:
        await self._ensure_collection()
        resp = await self._request(
            "PUT", self._url(name), content=payload, headers={"Content-Type": "application/octet-stream"}
        )
        if resp.status_code not in (200, 201, 204):
            raise RemoteStoreError(f"upload of {name} failed: HTTP {resp.status_code}")

    async def get(self, name: str) -> bytes:
        resp = await self._request("GET", self._url(name))
        if resp.status_code == 404:
            raise RemoteSnapshotMissing(f"{name} does not exist")
        if resp.status_code != 200:
            raise RemoteStoreError(f"download of {name} failed: HTTP {resp.status_code}")
        return resp.content

    async def list(self) -> List[BackupEntry]:
        resp = await self._request(
            "PROPFIND",
            self._collection,
            content=_PROPFIND_BODY,
            headers={"Depth": "1", "Content-Type": "application/xml"},
        )
        if resp.status_code == 404:
            return []
        if resp.status_code not in (200, 207):
            raise RemoteStoreError(f"listing failed: HTTP {resp.status_code}")
        return parse_multistatus(resp.content)

    async def delete(self, name: str) -> None:
        resp = await self._request("DELETE", self._url(name))
        if resp.status_code == 404:
            raise RemoteSnapshotMissing(f"{name} does not exist")
        if resp.status_code not in (200, 204):
            raise RemoteStoreError(f"delete of {name} failed: HTTP {resp.status_code}")

    async def test(self) -> Dict[str, Any]:
        try:
            resp = await self._request(
                "PROPFIND",
                self._root,
                content=_PROPFIND_BODY,
                headers={"Depth": "0", "Content-Type": "application/xml"},
            )
        except RemoteStoreError as exc:
            return {"success": False, "message": str(exc)}
        if resp.status_code in (200, 207):
            return {"success": True, "message": "WebDAV connection successful"}
        if resp.status_code == 401:
            return {"success": False, "message": "Authentication failed"}
        return {"success": False, "message": f"WebDAV server returned HTTP {resp.status_code}"}
