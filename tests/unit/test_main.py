"""Tests for the FastAPI app and GET /api/health.

Verifies that:
- /api/health returns the aggregate payload with camelCase check fields
- Storage failure yields 503, an open provider breaker yields 200 degraded
- Request IDs are echoed or generated
- Backend errors escaping a route become structured JSON responses
"""

from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient

from src.core.config import Settings
from src.core.errors import (
    BackendUnavailableError,
    BreakerOpenError,
    OperationTimeoutError,
)
from src.main import create_app
from src.resilience.circuit_breaker import CircuitBreakerRegistry


class FakeDatabase:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    async def ping(self) -> float:
        if self.error is not None:
            raise self.error
        return 2.0


@pytest.fixture
def registry():
    return CircuitBreakerRegistry()


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def app(registry, database):
    return create_app(Settings(), registry=registry, database=database)


@pytest.fixture
async def client(app):
    """Create an async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac


async def _fail():
    raise RuntimeError("provider down")


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_health_returns_200(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_health_payload(self, client):
        data = (await client.get("/api/health")).json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        datetime.fromisoformat(data["timestamp"])
        assert data["checks"]["database"] == {"status": "healthy", "latencyMs": 2.0}
        # Provider clients register their breakers at startup
        assert data["checks"]["anthropic"] == {"status": "healthy", "circuitState": "closed"}
        assert data["checks"]["twilio"] == {"status": "healthy", "circuitState": "closed"}

    @pytest.mark.asyncio
    async def test_database_failure_returns_503(self, registry):
        app = create_app(Settings(), registry=registry, database=FakeDatabase(ConnectionError("refused")))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
            response = await ac.get("/api/health")
        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["checks"]["database"] == {"status": "unhealthy", "error": "refused"}

    @pytest.mark.asyncio
    async def test_open_breaker_returns_200_degraded(self, client, registry):
        cb = registry.get("anthropic")
        for _ in range(cb.config.error_threshold):
            with pytest.raises(RuntimeError):
                await cb.execute(_fail)

        response = await client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["checks"]["anthropic"] == {"status": "degraded", "circuitState": "open"}
        assert data["checks"]["twilio"]["circuitState"] == "closed"

    @pytest.mark.asyncio
    async def test_missing_database_url_is_unhealthy(self, registry):
        app = create_app(Settings(DATABASE_URL=""), registry=registry)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
            response = await ac.get("/api/health")
        assert response.status_code == 503
        assert response.json()["checks"]["database"]["error"] == "Database not configured"

    @pytest.mark.asyncio
    async def test_monitored_services_from_settings(self, registry, database):
        app = create_app(
            Settings(HEALTH_MONITORED_SERVICES=["anthropic", "search"]),
            registry=registry,
            database=database,
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
            checks = (await ac.get("/api/health")).json()["checks"]
        assert set(checks) == {"database", "anthropic", "search"}
        assert checks["search"]["circuitState"] == "not_initialized"


class TestRequestId:
    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/api/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    @pytest.mark.asyncio
    async def test_request_id_generated(self, client):
        response = await client.get("/api/health")
        assert len(response.headers["X-Request-ID"]) == 36


class TestBackendErrorHandler:
    @pytest.fixture
    def failing_app(self, app):
        @app.get("/open")
        async def _open():
            raise BreakerOpenError("anthropic", 12.4)

        @app.get("/slow")
        async def _slow():
            raise OperationTimeoutError("twilio", 10000)

        @app.get("/down")
        async def _down():
            raise BackendUnavailableError("twilio", "HTTP 503")

        return app

    @pytest.fixture
    async def failing_client(self, failing_app):
        async with AsyncClient(transport=ASGITransport(app=failing_app), base_url="http://testserver") as ac:
            yield ac

    @pytest.mark.asyncio
    async def test_breaker_open_maps_to_503_with_retry_after(self, failing_client):
        response = await failing_client.get("/open", headers={"X-Request-ID": "req-1"})
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "12"
        body = response.json()
        assert body["code"] == "CIRCUIT_OPEN"
        assert body["request_id"] == "req-1"
        assert "anthropic" in body["error"]

    @pytest.mark.asyncio
    async def test_timeout_maps_to_504(self, failing_client):
        response = await failing_client.get("/slow")
        assert response.status_code == 504
        assert response.json()["code"] == "OPERATION_TIMEOUT"

    @pytest.mark.asyncio
    async def test_unavailable_maps_to_502(self, failing_client):
        response = await failing_client.get("/down")
        assert response.status_code == 502
        assert response.json()["code"] == "BACKEND_UNAVAILABLE"


class TestAppState:
    def test_registry_shared_with_clients(self, app, registry):
        assert app.state.breakers is registry
        assert "anthropic" in registry
        assert "twilio" in registry

    def test_module_level_app_is_fastapi_instance(self):
        from fastapi import FastAPI

        from src.main import app

        assert isinstance(app, FastAPI)
