"""Middleware tests: request ID, rate limiting, CORS, error handling."""

import logging
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from coinbook.cache.store import MemoryStore
from coinbook.container import Services, build_services
from coinbook.errors import DependencyUnavailable
from coinbook.main import create_app
from coinbook.middleware.logging import setup_logging
from coinbook.middleware.rate_limit import LocalWindows
from tests.conftest import make_settings


@pytest_asyncio.fixture
async def app_services(db_path, session_factory, source) -> AsyncGenerator[Services, None]:
    settings = make_settings(f"sqlite+aiosqlite:///{db_path}", rate_limit_requests=5)
    svc = build_services(settings, session_factory, store=MemoryStore(), source=source)
    yield svc
    await svc.close()


@pytest_asyncio.fixture
async def strict_client(app_services: Services) -> AsyncGenerator[AsyncClient, None]:
    """Client over an app with a 5-request window and a few failing routes."""
    app = create_app(app_services)

    async def crash() -> None:
        raise RuntimeError("kaboom")

    async def unavailable() -> None:
        raise DependencyUnavailable("catalog down", details={"source": "shopify"})

    async def degraded() -> dict[str, bool]:
        app_services.telemetry.mark_degraded("cache:catalog")
        return {"ok": True}

    app.add_api_route("/api/test/crash", crash)
    app.add_api_route("/api/test/unavailable", unavailable)
    app.add_api_route("/api/test/degraded", degraded)

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_request_id_generated(client: AsyncClient) -> None:
    """Request ID is auto-generated when not provided."""
    response = await client.get("/health")
    assert len(response.headers["x-request-id"]) == 36


@pytest.mark.asyncio
async def test_request_id_preserved(client: AsyncClient) -> None:
    response = await client.get("/health", headers={"X-Request-Id": "test-abc-123"})
    assert response.headers["x-request-id"] == "test-abc-123"


@pytest.mark.asyncio
async def test_rate_limit_headers(strict_client: AsyncClient) -> None:
    response = await strict_client.get("/api/gamification/hero-stats")
    assert response.headers["x-ratelimit-limit"] == "5"
    assert response.headers["x-ratelimit-remaining"] == "4"


@pytest.mark.asyncio
async def test_rate_limit_blocks_excess(strict_client: AsyncClient) -> None:
    """Sixth request in the window returns 429 with Retry-After."""
    for _ in range(5):
        await strict_client.get("/api/gamification/hero-stats")
    response = await strict_client.get("/api/gamification/hero-stats")
    assert response.status_code == 429
    assert "retry-after" in response.headers
    assert response.json()["code"] == "rate_limited"


@pytest.mark.asyncio
async def test_probes_and_webhooks_exempt(strict_client: AsyncClient) -> None:
    for _ in range(10):
        assert (await strict_client.get("/health")).status_code == 200
    for _ in range(6):
        response = await strict_client.post("/api/webhooks/orders", json={"id": 1})
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_cors_preflight(client: AsyncClient) -> None:
    response = await client.options(
        "/health",
        headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "GET"},
    )
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"


@pytest.mark.asyncio
async def test_cors_rejects_unknown_origin(client: AsyncClient) -> None:
    response = await client.options(
        "/health",
        headers={"Origin": "http://evil.example", "Access-Control-Request-Method": "GET"},
    )
    assert "access-control-allow-origin" not in response.headers


@pytest.mark.asyncio
async def test_404_json_format(client: AsyncClient) -> None:
    response = await client.get("/nonexistent")
    assert response.status_code == 404
    assert response.json() == {"detail": "Not Found", "code": "not_found"}


@pytest.mark.asyncio
async def test_unhandled_error_has_correlation_id(strict_client: AsyncClient, app_services: Services) -> None:
    response = await strict_client.get("/api/test/crash", headers={"X-Request-Id": "req-500"})
    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error", "code": "internal", "correlation_id": "req-500"}
    assert app_services.telemetry.stats()["exception"] == 1


@pytest.mark.asyncio
async def test_dependency_error_is_503(strict_client: AsyncClient) -> None:
    response = await strict_client.get("/api/test/unavailable", headers={"X-Request-Id": "req-503"})
    assert response.status_code == 503
    data = response.json()
    assert data["code"] == "dependency_unavailable"
    assert data["correlation_id"] == "req-503"
    assert data["source"] == "shopify"


@pytest.mark.asyncio
async def test_degraded_header(strict_client: AsyncClient) -> None:
    response = await strict_client.get("/api/test/degraded")
    assert response.headers["x-degraded"] == "1"
    assert "x-degraded" not in (await strict_client.get("/health")).headers


def test_logging_quiets_chatty_libraries() -> None:
    root = logging.getLogger()
    previous = root.level
    try:
        setup_logging(make_settings("sqlite+aiosqlite://", log_level="DEBUG"))
        assert root.level == logging.DEBUG
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.setLevel(previous)


def test_local_windows_reset_each_window() -> None:
    windows = LocalWindows()
    assert [windows.hit("10.0.0.1", 7) for _ in range(3)] == [1, 2, 3]
    assert windows.hit("10.0.0.2", 7) == 1
    assert windows.hit("10.0.0.1", 8) == 1
    assert windows.counts == {"10.0.0.1": 1}
