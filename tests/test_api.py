"""Tests for ApiClient against a local aiohttp server.

No mocks: requests go over real HTTP to aiohttp.test_utils.TestServer, so
status mapping, body decoding and retries run end to end.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as PlatformServer

from devicecloud.api import ApiClient
from devicecloud.config import ClientConfig
from devicecloud.exceptions import (
    ApiPermanentError,
    ApiTransientError,
    AuthenticationError,
    PermanentError,
    TransientError,
)

# ============================================================================
# Test server
# ============================================================================


@dataclass
class Platform:
    """Request log and knobs shared with the route handlers."""

    hits: dict[str, int] = field(default_factory=dict)
    headers: list[dict[str, str]] = field(default_factory=list)
    bodies: list[object] = field(default_factory=list)
    failures_before_success: int = 0

    def hit(self, request: web.Request) -> int:
        self.hits[request.path] = self.hits.get(request.path, 0) + 1
        self.headers.append(dict(request.headers))
        return self.hits[request.path]


def _app(platform: Platform) -> web.Application:
    async def instance(request: web.Request) -> web.Response:
        platform.hit(request)
        return web.json_response({"id": request.match_info["id"], "state": "on"})

    async def start(request: web.Request) -> web.Response:
        count = platform.hit(request)
        platform.bodies.append(await request.text())
        if count <= platform.failures_before_success:
            return web.json_response({"error": "hypervisor busy"}, status=503)
        return web.Response(status=204)

    async def flaky(request: web.Request) -> web.Response:
        if platform.hit(request) <= platform.failures_before_success:
            return web.json_response({"error": "try later"}, status=503)
        return web.json_response({"ok": True})

    async def rate_limited(request: web.Request) -> web.Response:
        platform.hit(request)
        return web.json_response({"error": "slow down"}, status=429)

    async def missing(request: web.Request) -> web.Response:
        platform.hit(request)
        return web.json_response({"error": "No such instance"}, status=404)

    async def forbidden(request: web.Request) -> web.Response:
        platform.hit(request)
        return web.json_response({"error": "Invalid token"}, status=401)

    async def screenshot(request: web.Request) -> web.Response:
        platform.hit(request)
        return web.Response(body=b"\x89PNG\r\n\x1a\n", content_type="image/png")

    async def rename(request: web.Request) -> web.Response:
        platform.hit(request)
        platform.bodies.append(await request.json())
        return web.json_response({"ok": True})

    async def plain(request: web.Request) -> web.Response:
        platform.hit(request)
        return web.Response(text="not json")

    app = web.Application()
    app.router.add_get("/api/v1/instances/{id}", instance)
    app.router.add_patch("/api/v1/instances/{id}", rename)
    app.router.add_post("/api/v1/instances/{id}/start", start)
    app.router.add_get("/api/v1/instances/{id}/screenshot.png", screenshot)
    app.router.add_get("/api/v1/flaky", flaky)
    app.router.add_get("/api/v1/limited", rate_limited)
    app.router.add_get("/api/v1/missing", missing)
    app.router.add_get("/api/v1/forbidden", forbidden)
    app.router.add_get("/api/v1/plain", plain)
    return app


@pytest.fixture
def platform() -> Platform:
    return Platform()


@pytest.fixture
async def server(platform: Platform) -> AsyncGenerator[PlatformServer, None]:
    server = PlatformServer(_app(platform))
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("devicecloud.constants.API_RETRY_MIN_SECONDS", 0)
    monkeypatch.setattr("devicecloud.constants.API_RETRY_MAX_SECONDS", 0.01)


@pytest.fixture
async def api(server: PlatformServer) -> AsyncGenerator[ApiClient, None]:
    config = ClientConfig(endpoint=f"http://{server.host}:{server.port}", api_max_attempts=3)
    async with ApiClient(config, token="secret-token") as api:
        yield api


# ============================================================================
# Success paths
# ============================================================================


class TestDecode:
    """Successful calls return decoded payloads."""

    async def test_get_json(self, api: ApiClient, platform: Platform) -> None:
        info = await api.call("/instances/abc")
        assert info == {"id": "abc", "state": "on"}
        assert platform.headers[0]["Authorization"] == "Bearer secret-token"

    async def test_empty_body_is_none(self, api: ApiClient) -> None:
        assert await api.call("/instances/abc/start", method="POST") is None

    async def test_json_body_sent(self, api: ApiClient, platform: Platform) -> None:
        await api.call("/instances/abc", method="PATCH", json={"name": "renamed"})
        assert platform.bodies == [{"name": "renamed"}]

    async def test_raw_returns_bytes(self, api: ApiClient) -> None:
        assert await api.call("/instances/abc/screenshot.png", raw=True) == b"\x89PNG\r\n\x1a\n"

    async def test_non_json_body_returned_as_text(self, api: ApiClient) -> None:
        assert await api.call("/plain") == "not json"


# ============================================================================
# Error mapping
# ============================================================================


class TestErrors:
    """Non-success statuses map onto the exception hierarchy."""

    async def test_not_found_is_permanent(self, api: ApiClient, platform: Platform) -> None:
        with pytest.raises(ApiPermanentError, match="No such instance") as exc_info:
            await api.call("/missing")

        assert exc_info.value.status == 404
        assert exc_info.value.path == "/missing"
        assert exc_info.value.body == {"error": "No such instance"}
        assert isinstance(exc_info.value, PermanentError)
        assert platform.hits["/api/v1/missing"] == 1

    async def test_unauthorized(self, api: ApiClient) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            await api.call("/forbidden")
        assert exc_info.value.status == 401

    async def test_rate_limited_is_transient(self, api: ApiClient, platform: Platform) -> None:
        with pytest.raises(ApiTransientError) as exc_info:
            await api.call("/limited")
        assert exc_info.value.status == 429
        assert isinstance(exc_info.value, TransientError)
        assert platform.hits["/api/v1/limited"] == 3

    async def test_connection_refused_is_transient(self, server: PlatformServer) -> None:
        config = ClientConfig(endpoint=f"http://{server.host}:{server.port}", api_max_attempts=1)
        await server.close()
        async with ApiClient(config) as api:
            with pytest.raises(ApiTransientError, match="failed"):
                await api.call("/instances/abc")


# ============================================================================
# Retries
# ============================================================================


class TestRetries:
    """Only idempotent methods are retried, and only on transient errors."""

    async def test_get_retried_until_success(self, api: ApiClient, platform: Platform) -> None:
        platform.failures_before_success = 2
        assert await api.call("/flaky") == {"ok": True}
        assert platform.hits["/api/v1/flaky"] == 3

    async def test_get_gives_up_after_max_attempts(self, api: ApiClient, platform: Platform) -> None:
        platform.failures_before_success = 5
        with pytest.raises(ApiTransientError) as exc_info:
            await api.call("/flaky")
        assert exc_info.value.status == 503
        assert platform.hits["/api/v1/flaky"] == 3

    async def test_post_not_retried(self, api: ApiClient, platform: Platform) -> None:
        platform.failures_before_success = 1
        with pytest.raises(ApiTransientError, match="hypervisor busy"):
            await api.call("/instances/abc/start", method="POST")
        assert platform.hits["/api/v1/instances/abc/start"] == 1


# ============================================================================
# Session ownership
# ============================================================================


class TestSession:
    """The accessor closes only the session it created."""

    async def test_close_is_idempotent(self, server: PlatformServer) -> None:
        api = ApiClient(ClientConfig(endpoint=f"http://{server.host}:{server.port}"))
        session = await api.session()
        await api.close()
        await api.close()
        assert session.closed

    async def test_injected_session_left_open(self, server: PlatformServer) -> None:
        async with aiohttp.ClientSession() as session:
            api = ApiClient(ClientConfig(endpoint=f"http://{server.host}:{server.port}"), session=session)
            assert await api.session() is session
            await api.close()
            assert not session.closed

    def test_headers_without_token(self) -> None:
        api = ApiClient(ClientConfig(endpoint="https://cloud.test"))
        assert "Authorization" not in api.headers
