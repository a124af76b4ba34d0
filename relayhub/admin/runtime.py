from __future__ import annotations

import asyncio
import logging
from typing import NamedTuple

from .errors import NotFound
from .models import ProxyConfig

logger = logging.getLogger(__name__)


class _RuntimeState(NamedTuple):
    config: ProxyConfig
    current: str


class ProxyRuntime:
    """Live routing state: the installed config snapshot and the active endpoint.

    Both live in one immutable state tuple that writers replace in a single
    assignment, so readers never observe a config paired with a stale selection.
    """

    def __init__(self) -> None:
        self._state = _RuntimeState(ProxyConfig(), "")
        self._lock = asyncio.Lock()

    @property
    def config(self) -> ProxyConfig:
        return self._state.config

    @property
    def current_name(self) -> str:
        return self._state.current

    async def replace_config(self, config: ProxyConfig) -> None:
        async with self._lock:
            current = self._state.current
            selected = config.find(current) if current else None
            if selected is None or not selected.enabled:
                enabled = config.enabled_endpoints()
                fallback = enabled[0].name if enabled else ""
                if fallback != current:
                    logger.info("active endpoint changed from %r to %r", current, fallback)
                current = fallback
            self._state = _RuntimeState(config, current)

    async def set_current(self, name: str) -> None:
        async with self._lock:
            state = self._state
            endpoint = state.config.find(name)
            if endpoint is None or not endpoint.enabled:
                raise NotFound("Endpoint not found or not enabled")
            self._state = _RuntimeState(state.config, name)
        logger.info("switched active endpoint to %s", name)
