import json

import httpx
import pytest

from conftest import ScriptedProber, make_endpoint
from relayhub.admin.errors import InternalError, InvalidInput, NotFound
from relayhub.admin.probing import ConnectivityChecker
from relayhub.admin.providers.prober import HttpProber, parse_model_list


@pytest.mark.asyncio
async def test_successful_probe_is_normalized(registry, runtime):
    await registry.create(make_endpoint("A"))
    await registry.create(make_endpoint("B"))
    prober = ScriptedProber(probe={"success": True, "status": "200", "method": "models", "message": "pong"})
    checker = ConnectivityChecker(runtime, prober)

    report = await checker.test_endpoint("B")

    assert prober.probed == [("B", 1)]
    assert report.success is True
    assert report.response == "pong"
    assert report.status == "200"
    assert report.method == "models"
    assert report.error is None
    assert report.latency >= 0


@pytest.mark.asyncio
async def test_failed_probe_reports_error(registry, runtime):
    await registry.create(make_endpoint("A"))
    prober = ScriptedProber(probe={"success": False, "status": "401", "method": "models", "message": "bad key"})
    report = await ConnectivityChecker(runtime, prober).test_endpoint("A")
    assert report.success is False
    assert report.error == "bad key"
    assert report.status == "401"


@pytest.mark.asyncio
async def test_unparseable_probe_fails_safe(registry, runtime):
    await registry.create(make_endpoint("A"))
    prober = ScriptedProber(probe={"status": 200, "message": ["not", "a", "string"]})
    report = await ConnectivityChecker(runtime, prober).test_endpoint("A")
    assert report.success is False
    assert report.error == "Invalid test result"


@pytest.mark.asyncio
async def test_probe_unknown_endpoint(runtime):
    with pytest.raises(NotFound):
        await ConnectivityChecker(runtime, ScriptedProber()).test_endpoint("missing")


@pytest.mark.asyncio
async def test_fetch_models_paths(runtime):
    prober = ScriptedProber()
    checker = ConnectivityChecker(runtime, prober)
    result = await checker.fetch_models("https://api.example.com", "sk-1", "")
    assert result.models == ["a", "b"]
    assert prober.fetched == [("https://api.example.com", "sk-1", "claude")]

    prober.models = {"success": False, "message": "Provider returned 401: invalid key"}
    with pytest.raises(InvalidInput) as excinfo:
        await checker.fetch_models("https://api.example.com", "sk-1", "openai")
    assert excinfo.value.message == "Provider returned 401: invalid key"

    prober.models = {"models": "nope"}
    with pytest.raises(InternalError):
        await checker.fetch_models("https://api.example.com", "sk-1", "openai")

    with pytest.raises(InvalidInput):
        await checker.fetch_models("https://api.example.com", "sk-1", "cohere")


def test_parse_model_list():
    assert parse_model_list({"data": [{"id": "gpt-4.1"}, {"object": "x"}]}, "openai") == ["gpt-4.1"]
    gemini = {"models": [{"name": "models/gemini-2.5-pro"}, {"name": "tuned"}]}
    assert parse_model_list(gemini, "gemini") == ["gemini-2.5-pro", "tuned"]
    assert parse_model_list(["unexpected"], "claude") == []


@pytest.mark.asyncio
async def test_http_prober_lists_claude_models(registry, runtime):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "claude-sonnet-4"}]})

    await registry.create(make_endpoint("A", api_url="https://api.anthropic.com"))
    prober = HttpProber(transport=httpx.MockTransport(handler))
    try:
        result = await prober.test_endpoint(runtime.config.find("A"), 0)
    finally:
        await prober.close()

    assert result["success"] is True
    assert result["method"] == "models"
    assert str(seen[0].url) == "https://api.anthropic.com/v1/models"
    assert seen[0].headers["x-api-key"] == "sk-a-12345678"


@pytest.mark.asyncio
async def test_http_prober_falls_back_to_completion(registry, runtime):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/models"):
            return httpx.Response(404, json={"error": {"message": "no such route"}})
        body = json.loads(request.content)
        assert body["model"] == "gpt-4.1"
        assert request.headers["authorization"] == "Bearer sk-a-12345678"
        return httpx.Response(401, json={"error": {"message": "invalid api key"}})

    await registry.create(
        make_endpoint("A", api_url="https://relay.example.com/v1", transformer="openai", model="gpt-4.1")
    )
    prober = HttpProber(transport=httpx.MockTransport(handler))
    try:
        result = await prober.test_endpoint(runtime.config.find("A"), 0)
    finally:
        await prober.close()

    assert result == {
        "success": False,
        "status": "401",
        "method": "completion",
        "message": "invalid api key",
    }


@pytest.mark.asyncio
async def test_http_prober_fetch_models_gemini_and_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers.get("x-goog-api-key") != "good":
            return httpx.Response(403, json={"error": {"message": "denied"}})
        assert request.url.path == "/v1beta/models"
        return httpx.Response(200, json={"models": [{"name": "models/gemini-2.5-flash"}]})

    prober = HttpProber(transport=httpx.MockTransport(handler))
    try:
        ok = await prober.fetch_models("generativelanguage.googleapis.com", "good", "gemini")
        denied = await prober.fetch_models("generativelanguage.googleapis.com", "bad", "gemini")
        missing = await prober.fetch_models("", "", "gemini")
    finally:
        await prober.close()

    assert ok["success"] is True
    assert ok["models"] == ["gemini-2.5-flash"]
    assert denied == {"success": False, "message": "Provider returned 403: denied", "models": []}
    assert missing["success"] is False


class _RaisingProber(ScriptedProber):
    async def test_endpoint(self, endpoint, index):
        raise RuntimeError("prober crashed")


@pytest.mark.asyncio
async def test_prober_exception_becomes_failed_report(registry, runtime):
    await registry.create(make_endpoint("A"))
    report = await ConnectivityChecker(runtime, _RaisingProber()).test_endpoint("A")
    assert report.success is False
    assert report.error == "prober crashed"


@pytest.mark.asyncio
async def test_http_prober_handles_malformed_url(registry, runtime):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request should be sent")

    await registry.create(make_endpoint("A", api_url="http://[::1"))
    prober = HttpProber(transport=httpx.MockTransport(handler))
    checker = ConnectivityChecker(runtime, prober)
    try:
        report = await checker.test_endpoint("A")
        with pytest.raises(InvalidInput):
            await checker.fetch_models("http://[::1", "sk-1", "openai")
    finally:
        await prober.close()

    assert report.success is False
    assert report.status == "error"
    assert report.error
