from __future__ import annotations

from .errors import NotFound
from .runtime import ProxyRuntime


class ActiveEndpointSelector:
    """Reads and switches the proxy's active endpoint.

    No pre-check happens here: ``ProxyRuntime.set_current`` validates and swaps
    under its own lock.
    """

    def __init__(self, runtime: ProxyRuntime) -> None:
        self._runtime = runtime

    def current(self) -> str:
        name = self._runtime.current_name
        if not name:
            raise NotFound("No enabled endpoints")
        return name

    async def switch(self, name: str) -> str:
        await self._runtime.set_current(name)
        return name
