# tests/test_health.py — Health, error rendering and security middleware
import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    """Health endpoint reports DB, Redis and WebSocket state"""
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0"
    assert data["database"] == "connected"
    assert data["redis"] == "connected"
    assert data["websocket"]["total_connections"] == 0


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    """Responses include security headers"""
    resp = await client.get("/health")
    assert resp.headers.get("X-Content-Type-Options") == "nosniff"
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert "x-request-id" in {k.lower() for k in resp.headers}


@pytest.mark.asyncio
async def test_request_id_propagated(client: AsyncClient):
    resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Correlation-ID"] == "req-123"


@pytest.mark.asyncio
async def test_request_timing_header(client: AsyncClient):
    """Responses include timing header"""
    resp = await client.get("/health")
    headers_lower = {k.lower(): v for k, v in resp.headers.items()}
    assert "x-response-time" in headers_lower


@pytest.mark.asyncio
async def test_domain_error_includes_request_id(client: AsyncClient, admin_user):
    from tests.conftest import get_auth_headers

    resp = await client.post(
        "/api/v1/jobs/queues/sms/clear",
        headers={**get_auth_headers(admin_user), "X-Request-ID": "req-456"},
    )
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Unknown queue: sms", "request_id": "req-456"}


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    resp = await client.get("/")
    assert resp.json()["name"] == "Collabute"
