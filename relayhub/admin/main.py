from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .backup import BackupCoordinator, ConflictDetector, RemoteFactory
from .config_manager import ConfigSynchronizer
from .errors import AdminError, InternalError, InvalidInput, MethodNotAllowed, StorageError
from .models import (
    BackupRequest,
    DeleteBackupsRequest,
    Endpoint,
    EndpointCreate,
    EndpointUpdate,
    FetchModelsRequest,
    ReorderRequest,
    RestoreRequest,
    SettingsUpdate,
    SwitchRequest,
    ToggleRequest,
    WebDAVConfigUpdate,
    WebDAVCredentials,
)
from .probing import ConnectivityChecker, Prober
from .providers.prober import HttpProber
from .providers.webdav import WebDAVStore
from .registry import EndpointRegistry, mask_api_key
from .runtime import ProxyRuntime
from .selector import ActiveEndpointSelector
from .storage import SQLiteStorage

DB_PATH = Path(os.environ.get("RELAYHUB_DB", "data/relayhub.db"))

logger = logging.getLogger(__name__)


class AdminServices:
    """Wires the store, the live runtime and the components that operate on them."""

    def __init__(
        self,
        db_path: Path,
        prober: Optional[Prober] = None,
        remote_factory: Optional[RemoteFactory] = None,
    ) -> None:
        self.storage = SQLiteStorage(db_path)
        self.runtime = ProxyRuntime()
        self.synchronizer = ConfigSynchronizer(self.storage, self.runtime)
        self.registry = EndpointRegistry(self.storage, self.synchronizer)
        self.selector = ActiveEndpointSelector(self.runtime)
        self.prober = prober or HttpProber()
        self.checker = ConnectivityChecker(self.runtime, self.prober)
        self.remote_factory = remote_factory or WebDAVStore.from_credentials
        self.backups = BackupCoordinator(self.storage, self.remote_factory)
        self.conflicts = ConflictDetector(self.storage, self.remote_factory)
        self._startup_lock = asyncio.Lock()
        self._initialized = False

    async def ensure_startup(self) -> None:
        async with self._startup_lock:
            if not self._initialized:
                await self.synchronizer.startup()
                self._initialized = True

    async def shutdown(self) -> None:
        close = getattr(self.prober, "close", None)
        if close is not None:
            await close()


def _ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _endpoint_payload(endpoint: Endpoint) -> Dict[str, Any]:
    data = endpoint.model_dump(mode="json", by_alias=True)
    data["apiKey"] = mask_api_key(endpoint.api_key.get_secret_value())
    return data


async def get_services(request: Request) -> AdminServices:
    services: AdminServices = request.app.state.services
    await services.ensure_startup()
    return services


router = APIRouter(prefix="/api")


# Endpoints. Fixed paths are registered before "/endpoints/{name}".


@router.get("/endpoints")
async def list_endpoints(services: AdminServices = Depends(get_services)) -> Dict:
    endpoints = services.registry.list()
    return _ok({"endpoints": [_endpoint_payload(endpoint) for endpoint in endpoints]})


@router.post("/endpoints")
async def create_endpoint(payload: EndpointCreate, services: AdminServices = Depends(get_services)) -> Dict:
    endpoint = await services.registry.create(payload)
    return _ok(_endpoint_payload(endpoint))


@router.get("/endpoints/current")
async def current_endpoint(services: AdminServices = Depends(get_services)) -> Dict:
    return _ok({"name": services.selector.current()})


@router.post("/endpoints/switch")
async def switch_endpoint(payload: SwitchRequest, services: AdminServices = Depends(get_services)) -> Dict:
    name = await services.selector.switch(payload.name)
    return _ok({"message": "Endpoint switched successfully", "name": name})


@router.post("/endpoints/reorder")
async def reorder_endpoints(payload: ReorderRequest, services: AdminServices = Depends(get_services)) -> Dict:
    await services.registry.reorder(payload.names)
    return _ok({"message": "Endpoints reordered successfully"})


@router.post("/endpoints/fetch-models")
async def fetch_models(payload: FetchModelsRequest, services: AdminServices = Depends(get_services)) -> Dict:
    result = await services.checker.fetch_models(payload.api_url, payload.api_key, payload.transformer)
    return _ok({"models": result.models, "message": result.message})


@router.get("/endpoints/{name}")
async def get_endpoint(name: str, services: AdminServices = Depends(get_services)) -> Dict:
    return _ok(_endpoint_payload(services.registry.get(name)))


@router.put("/endpoints/{name}")
async def update_endpoint(
    name: str, payload: EndpointUpdate, services: AdminServices = Depends(get_services)
) -> Dict:
    endpoint = await services.registry.update(name, payload)
    return _ok(_endpoint_payload(endpoint))


@router.delete("/endpoints/{name}")
async def delete_endpoint(name: str, services: AdminServices = Depends(get_services)) -> Dict:
    await services.registry.delete(name)
    return _ok({"message": "Endpoint deleted successfully"})


@router.api_route("/endpoints/{name}/toggle", methods=["POST", "PATCH"])
async def toggle_endpoint(
    name: str, payload: ToggleRequest, services: AdminServices = Depends(get_services)
) -> Dict:
    endpoint = await services.registry.toggle(name, payload.enabled)
    return _ok({"enabled": endpoint.enabled})


@router.api_route("/endpoints/{name}/test", methods=["GET", "POST"])
async def test_endpoint(name: str, services: AdminServices = Depends(get_services)) -> Dict:
    # The report carries its own success flag and is returned unwrapped.
    report = await services.checker.test_endpoint(name)
    return report.model_dump(by_alias=True, exclude_none=True)


# Proxy settings


@router.get("/config")
async def read_config(services: AdminServices = Depends(get_services)) -> Dict:
    config = services.runtime.config
    return _ok(
        {
            "port": config.settings.port,
            "logLevel": config.settings.log_level,
            "endpoints": len(config.endpoints),
            "loadedAt": config.loaded_at.isoformat() if config.loaded_at else None,
        }
    )


@router.put("/config")
async def update_config(payload: SettingsUpdate, services: AdminServices = Depends(get_services)) -> Dict:
    settings = await services.synchronizer.update_settings(payload)
    return _ok(settings.model_dump(mode="json", by_alias=True))


# WebDAV


def _stored_webdav(services: AdminServices) -> Optional[WebDAVCredentials]:
    try:
        return services.storage.get_webdav()
    except StorageError as exc:
        logger.error("Failed to read WebDAV config: %s", exc)
        raise InternalError("Failed to read WebDAV config") from exc


@router.get("/webdav/config")
async def read_webdav_config(services: AdminServices = Depends(get_services)) -> Dict:
    credentials = _stored_webdav(services)
    if credentials is None:
        return _ok({"configured": False, "url": "", "username": "", "hasPassword": False})
    return _ok(
        {
            "configured": True,
            "url": credentials.url,
            "username": credentials.username,
            "hasPassword": bool(credentials.password.get_secret_value()),
        }
    )


@router.put("/webdav/config")
async def update_webdav_config(
    payload: WebDAVConfigUpdate, services: AdminServices = Depends(get_services)
) -> Dict:
    url = payload.url.strip()
    if not url:
        raise InvalidInput("url is required")
    password = payload.password
    if not password:
        existing = _stored_webdav(services)
        if existing is not None:
            password = existing.password.get_secret_value()
    credentials = WebDAVCredentials(url=url, username=payload.username.strip(), password=password)
    try:
        services.storage.save_webdav(credentials)
    except StorageError as exc:
        logger.error("Failed to update WebDAV config: %s", exc)
        raise InternalError("Failed to update WebDAV config") from exc
    return _ok({"message": "WebDAV configuration updated successfully"})


@router.post("/webdav/test")
async def test_webdav(payload: WebDAVConfigUpdate, services: AdminServices = Depends(get_services)) -> Dict:
    credentials = WebDAVCredentials(
        url=payload.url.strip(), username=payload.username.strip(), password=payload.password
    )
    remote = services.remote_factory(credentials)
    try:
        result = await remote.test()
    finally:
        await remote.close()
    return _ok(result)


@router.get("/webdav/backups")
async def list_backups(services: AdminServices = Depends(get_services)) -> Dict:
    entries = await services.backups.list()
    return _ok({"backups": [entry.model_dump(mode="json", by_alias=True) for entry in entries]})


@router.delete("/webdav/backups")
async def delete_backups(
    payload: DeleteBackupsRequest, services: AdminServices = Depends(get_services)
) -> Dict:
    await services.backups.delete(payload.filenames)
    return _ok({"message": "Backups deleted successfully"})


@router.post("/webdav/backup")
async def create_backup(
    payload: Optional[BackupRequest] = Body(None), services: AdminServices = Depends(get_services)
) -> Dict:
    filename = await services.backups.backup(payload.filename if payload else "")
    return _ok({"message": "Backup created successfully", "filename": filename})


@router.post("/webdav/restore")
async def restore_backup(payload: RestoreRequest, services: AdminServices = Depends(get_services)) -> Dict:
    summary = await services.backups.restore(
        payload.filename, payload.choice, services.synchronizer.install
    )
    return _ok(
        {
            "message": "Restore completed successfully",
            "summary": summary.model_dump(by_alias=True),
        }
    )


@router.get("/webdav/conflict")
async def detect_conflict(
    filename: str = Query(""), services: AdminServices = Depends(get_services)
) -> Dict:
    report = await services.conflicts.detect(filename)
    return _ok(report.model_dump(mode="json", by_alias=True))


def create_app(
    db_path: Path = DB_PATH,
    prober: Optional[Prober] = None,
    remote_factory: Optional[RemoteFactory] = None,
) -> FastAPI:
    app = FastAPI(title="relayhub admin", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"]
    )
    services = AdminServices(db_path, prober=prober, remote_factory=remote_factory)
    app.state.services = services

    @app.exception_handler(AdminError)
    async def admin_error_handler(request: Request, exc: AdminError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def invalid_body_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.debug("rejected request body on %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request body"})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 405:
            return await admin_error_handler(request, MethodNotAllowed("Method not allowed"))
        message = str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": message})

    @app.on_event("startup")
    async def on_startup() -> None:  # pragma: no cover - executed by ASGI runtime
        await services.ensure_startup()
        logger.info("admin API started with store at %s", db_path)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:  # pragma: no cover
        await services.shutdown()

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    app.include_router(router)
    return app


app = create_app()
