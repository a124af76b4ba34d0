from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..models import Endpoint

ANTHROPIC_VERSION = "2023-06-01"
_PING_MESSAGES = [{"role": "user", "content": "ping"}]


def _base_url(api_url: str) -> str:
    url = api_url.strip().rstrip("/")
    if "://" not in url:
        url = f"https://{url}"
    return url


def _versioned(api_url: str, version: str = "v1") -> str:
    base = _base_url(api_url)
    if base.endswith(f"/{version}"):
        return base
    return f"{base}/{version}"


def _auth_headers(transformer: str, api_key: str) -> Dict[str, str]:
    if transformer == "claude":
        return {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}
    if transformer == "gemini":
        return {"x-goog-api-key": api_key}
    return {"Authorization": f"Bearer {api_key}"}


def _models_url(api_url: str, transformer: str) -> str:
    if transformer == "gemini":
        return f"{_versioned(api_url, 'v1beta')}/models"
    return f"{_versioned(api_url)}/models"


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return f"HTTP {response.status_code}"


def parse_model_list(payload: Any, transformer: str) -> List[str]:
    if not isinstance(payload, dict):
        return []
    if transformer == "gemini":
        names = [item.get("name", "") for item in payload.get("models") or [] if isinstance(item, dict)]
        return [name[len("models/"):] if name.startswith("models/") else name for name in names if name]
    return [str(item["id"]) for item in payload.get("data") or [] if isinstance(item, dict) and item.get("id")]


class HttpProber:
    """Light connectivity checks and model listing against upstream providers."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._log = logging.getLogger(__name__)

    async def close(self) -> None:
        await self._client.aclose()

    async def _list_models(self, api_url: str, api_key: str, transformer: str) -> httpx.Response:
        url = _models_url(api_url, transformer)
        self._log.debug("GET %s", url)
        resp = await self._client.get(url, headers=_auth_headers(transformer, api_key))
        self._log.debug("GET %s -> %s", url, resp.status_code)
        return resp

    async def _complete(self, endpoint: Endpoint, api_key: str) -> httpx.Response:
        transformer = endpoint.transformer
        base = _versioned(endpoint.api_url)
        if transformer == "claude":
            url = f"{base}/messages"
            body: Dict[str, Any] = {
                "model": endpoint.model or "claude-3-5-haiku-latest",
                "max_tokens": 1,
                "messages": _PING_MESSAGES,
            }
        elif transformer == "openai2":
            url = f"{base}/responses"
            body = {"model": endpoint.model, "input": "ping", "max_output_tokens": 16}
        else:
            url = f"{base}/chat/completions"
            body = {"model": endpoint.model, "max_tokens": 1, "messages": _PING_MESSAGES}
        self._log.debug("POST %s", url)
        resp = await self._client.post(url, json=body, headers=_auth_headers(transformer, api_key))
        self._log.debug("POST %s -> %s", url, resp.status_code)
        return resp

    async def test_endpoint(self, endpoint: Endpoint, index: int) -> Dict[str, Any]:
        api_key = endpoint.api_key.get_secret_value()
        method = "models"
        try:
            resp = await self._list_models(endpoint.api_url, api_key, endpoint.transformer)
            # Some relays do not expose a model listing; fall back to a one-token request.
            if resp.status_code == 404 and endpoint.transformer != "gemini":
                method = "completion"
                resp = await self._complete(endpoint, api_key)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self._log.warning("probe of endpoint #%d %s failed: %s", index, endpoint.name, exc)
            return {
                "success": False,
                "status": "error",
                "method": method,
                "message": str(exc) or exc.__class__.__name__,
            }
        if resp.is_success:
            return {
                "success": True,
                "status": str(resp.status_code),
                "method": method,
                "message": "Endpoint is reachable",
            }
        return {
            "success": False,
            "status": str(resp.status_code),
            "method": method,
            "message": _error_message(resp),
        }

    async def fetch_models(self, api_url: str, api_key: str, transformer: str) -> Dict[str, Any]:
        if not api_url.strip() or not api_key:
            return {"success": False, "message": "apiUrl and apiKey are required", "models": []}
        try:
            resp = await self._list_models(api_url, api_key, transformer)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return {"success": False, "message": f"Request failed: {exc}", "models": []}
        if resp.is_error:
            return {
                "success": False,
                "message": f"Provider returned {resp.status_code}: {_error_message(resp)}",
                "models": [],
            }
        try:
            payload = resp.json()
        except ValueError:
            return {"success": False, "message": "Provider returned an invalid model list", "models": []}
        models = parse_model_list(payload, transformer)
        return {"success": True, "message": f"Found {len(models)} models", "models": models}
