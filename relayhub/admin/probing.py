from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Protocol

from pydantic import ValidationError

from .errors import InternalError, InvalidInput, NotFound
from .models import Endpoint, ModelListResult, ProbeResult, TestReport
from .registry import normalize_transformer
from .runtime import ProxyRuntime

logger = logging.getLogger(__name__)


class Prober(Protocol):
    async def test_endpoint(self, endpoint: Endpoint, index: int) -> Mapping[str, Any]: ...

    async def fetch_models(self, api_url: str, api_key: str, transformer: str) -> Mapping[str, Any]: ...


class ConnectivityChecker:
    """Wraps a prober, timing calls and turning raw results into typed ones."""

    def __init__(self, runtime: ProxyRuntime, prober: Prober) -> None:
        self._runtime = runtime
        self._prober = prober

    async def test_endpoint(self, name: str) -> TestReport:
        config = self._runtime.config
        index = config.index_of(name)
        if index < 0:
            raise NotFound("Endpoint not found")

        start = time.perf_counter()
        try:
            raw = await self._prober.test_endpoint(config.endpoints[index], index)
        except Exception as exc:
            latency = int((time.perf_counter() - start) * 1000)
            logger.error("Endpoint test for %s raised: %s", name, exc)
            return TestReport(success=False, latency=latency, error=str(exc) or "Endpoint test failed")
        latency = int((time.perf_counter() - start) * 1000)

        try:
            result = ProbeResult.model_validate(raw)
        except ValidationError as exc:
            logger.error("Failed to parse endpoint test result for %s: %s", name, exc)
            return TestReport(success=False, latency=latency, error="Invalid test result")

        if result.success:
            return TestReport(
                success=True,
                latency=latency,
                response=result.message,
                status=result.status,
                method=result.method,
            )
        return TestReport(
            success=False,
            latency=latency,
            error=result.message,
            status=result.status,
            method=result.method,
        )

    async def fetch_models(self, api_url: str, api_key: str, transformer: str) -> ModelListResult:
        transformer = normalize_transformer(transformer)
        raw = await self._prober.fetch_models(api_url, api_key, transformer)
        try:
            result = ModelListResult.model_validate(raw)
        except ValidationError as exc:
            logger.error("Failed to parse fetch-models result: %s", exc)
            raise InternalError("Failed to fetch models") from exc
        if not result.success:
            raise InvalidInput(result.message or "Failed to fetch models")
        return result
