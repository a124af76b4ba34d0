"""Ordered, uniquely-keyed CRUD over endpoint records.

Every mutation runs under ``storage.lock`` and ends with a best-effort reload of
the proxy config. A failed reload is logged; the mutation itself stands.
"""

from __future__ import annotations

import logging
from typing import List

from .config_manager import ConfigSynchronizer
from .errors import Conflict, InternalError, InvalidInput, NotFound, StorageError
from .models import DEFAULT_TRANSFORMER, TRANSFORMERS, Endpoint, EndpointCreate, EndpointUpdate
from .storage import SQLiteStorage, utcnow

logger = logging.getLogger(__name__)


def normalize_api_url(api_url: str) -> str:
    """Strip exactly one trailing slash."""
    if api_url.endswith("/"):
        return api_url[:-1]
    return api_url


def mask_api_key(key: str) -> str:
    if len(key) <= 4:
        return "****"
    return "****" + key[-4:]


def normalize_transformer(transformer: str) -> str:
    transformer = transformer.strip() or DEFAULT_TRANSFORMER
    if transformer not in TRANSFORMERS:
        raise InvalidInput(f"unsupported transformer: {transformer}")
    return transformer


def resolve_transformer(transformer: str, model: str) -> str:
    transformer = normalize_transformer(transformer)
    if transformer != DEFAULT_TRANSFORMER and not model.strip():
        raise InvalidInput("model is required for non-claude transformer")
    return transformer


class EndpointRegistry:
    def __init__(self, storage: SQLiteStorage, synchronizer: ConfigSynchronizer) -> None:
        self._storage = storage
        self._sync = synchronizer

    def _load_all(self) -> List[Endpoint]:
        try:
            return self._storage.get_endpoints()
        except StorageError as exc:
            logger.error("Failed to get endpoints: %s", exc)
            raise InternalError("Failed to get endpoints") from exc

    def _require(self, name: str) -> Endpoint:
        try:
            endpoint = self._storage.get_endpoint(name)
        except StorageError as exc:
            logger.error("Failed to get endpoint %s: %s", name, exc)
            raise InternalError("Failed to get endpoints") from exc
        if endpoint is None:
            raise NotFound("Endpoint not found")
        return endpoint

    def _write(self, endpoint: Endpoint, original_name: str = "") -> None:
        try:
            if original_name:
                self._storage.update_endpoint(endpoint, original_name=original_name)
            else:
                self._storage.save_endpoint(endpoint)
        except StorageError as exc:
            logger.error("Failed to save endpoint %s: %s", endpoint.name, exc)
            raise InternalError("Failed to save endpoint") from exc

    def list(self) -> List[Endpoint]:
        return self._load_all()

    def get(self, name: str) -> Endpoint:
        return self._require(name)

    async def create(self, fields: EndpointCreate) -> Endpoint:
        name = fields.name.strip()
        if not name or not fields.api_url.strip() or not fields.api_key:
            raise InvalidInput("Name, apiUrl, and apiKey are required")
        transformer = resolve_transformer(fields.transformer, fields.model)

        async with self._storage.lock:
            endpoints = self._load_all()
            if any(existing.name == name for existing in endpoints):
                raise Conflict("Endpoint with this name already exists")
            now = utcnow()
            endpoint = Endpoint(
                name=name,
                api_url=normalize_api_url(fields.api_url.strip()),
                api_key=fields.api_key,
                enabled=fields.enabled,
                transformer=transformer,
                model=fields.model,
                remark=fields.remark,
                sort_order=len(endpoints),
                created_at=now,
                updated_at=now,
            )
            self._write(endpoint)
            await self._sync.sync_after(f"creating {name}")
        logger.info("created endpoint %s (sort_order=%d)", name, endpoint.sort_order)
        return endpoint

    async def update(self, name: str, fields: EndpointUpdate) -> Endpoint:
        async with self._storage.lock:
            existing = self._require(name)
            changes = {"remark": fields.remark}
            for field in ("name", "api_key", "transformer", "model"):
                value = getattr(fields, field)
                if value is not None and value.strip():
                    changes[field] = value.strip() if field == "name" else value
            if fields.api_url is not None and fields.api_url.strip():
                changes["api_url"] = normalize_api_url(fields.api_url.strip())
            if fields.enabled is not None:
                changes["enabled"] = fields.enabled

            merged_transformer = changes.get("transformer", existing.transformer)
            merged_model = changes.get("model", existing.model)
            changes["transformer"] = resolve_transformer(merged_transformer, merged_model)

            new_name = changes.get("name", existing.name)
            if new_name != existing.name and self._storage_has(new_name):
                raise Conflict("Endpoint with this name already exists")

            changes["updated_at"] = utcnow()
            updated = existing.model_copy(update=changes)
            self._write(updated, original_name=existing.name)
            await self._sync.sync_after(f"updating {name}")
        return updated

    def _storage_has(self, name: str) -> bool:
        try:
            return self._storage.get_endpoint(name) is not None
        except StorageError as exc:
            raise InternalError("Failed to get endpoints") from exc

    async def delete(self, name: str) -> None:
        async with self._storage.lock:
            try:
                removed = self._storage.delete_endpoint(name)
            except StorageError as exc:
                logger.error("Failed to delete endpoint %s: %s", name, exc)
                raise InternalError("Failed to delete endpoint") from exc
            if not removed:
                raise NotFound("Endpoint not found")
            await self._sync.sync_after(f"deleting {name}")
        logger.info("deleted endpoint %s", name)

    async def toggle(self, name: str, enabled: bool) -> Endpoint:
        async with self._storage.lock:
            existing = self._require(name)
            updated = existing.model_copy(update={"enabled": enabled, "updated_at": utcnow()})
            self._write(updated, original_name=existing.name)
            await self._sync.sync_after(f"toggling {name}")
        return updated

    async def reorder(self, names: List[str]) -> None:
        """Assign ``sort_order = index`` to every endpoint.

        Records are persisted one at a time and a failed write is logged and
        skipped, so a failure part-way leaves a partially reordered set.
        """
        async with self._storage.lock:
            endpoints = self._load_all()
            if len(names) != len(endpoints):
                raise InvalidInput("names array length doesn't match endpoints count")
            if len(set(names)) != len(names):
                raise InvalidInput("duplicate endpoint name in reorder request")
            by_name = {endpoint.name: endpoint for endpoint in endpoints}
            if any(name not in by_name for name in names):
                raise InvalidInput("endpoint not found in reorder request")

            for index, name in enumerate(names):
                endpoint = by_name[name]
                if endpoint.sort_order == index:
                    continue
                moved = endpoint.model_copy(update={"sort_order": index})
                try:
                    self._storage.update_endpoint(moved)
                except StorageError as exc:
                    logger.error("Failed to update endpoint sort order for %s: %s", name, exc)
            await self._sync.sync_after("reordering endpoints")
