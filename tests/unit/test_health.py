"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "unsub-update-bridge"


def test_readyz_endpoint_all_services_healthy():
    """Test readiness endpoint when all services are healthy."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": True}),
        ),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["redis"]["ok"] is True
    assert data["checks"]["database"]["ok"] is True
    assert isinstance(data["checks"]["redis"]["latency_ms"], (int, float))


def test_readyz_endpoint_redis_unhealthy():
    """Test readiness endpoint when Redis is down."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=False)),
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": True}),
        ),
    ):
        response = client.get("/readyz")

    # Should still return 200, but overall_ok should be False
    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False


def test_readyz_endpoint_database_unhealthy():
    """Test readiness endpoint when the host database is down."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": False, "error": "Connection failed"}),
        ),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["ok"] is False
    assert data["checks"]["database"]["error"] == "Connection failed"


def test_readyz_reports_exceptions():
    """Test that a raising check is reported instead of failing the request."""
    with (
        patch(
            "app.routes.health.fast_redis.ping",
            new=AsyncMock(side_effect=ConnectionError("refused")),
        ),
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": True}),
        ),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["error"] == "ConnectionError: refused"
