"""Tests for health probes."""

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, patch

from app.config import settings
from app.core.routing.errors import PresenceBackendError
from app.core.routing.registry import InMemoryPresenceRegistry
from app.main import app


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def registry():
    registry = InMemoryPresenceRegistry()
    with patch(
        "app.api.routes.health.get_presence_registry", AsyncMock(return_value=registry)
    ):
        yield registry


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_live(self, client):
        assert client.get("/health/live").json()["status"] == "alive"


class TestReadiness:
    def test_ready_with_memory_presence(self, client, registry):
        """Test Redis is skipped when it does not back the registry."""
        with patch.object(settings, "presence_backend", "memory"), patch(
            "app.api.routes.health.check_db_health", AsyncMock(return_value=True)
        ):
            response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {
            "database": "ok",
            "redis": "skipped",
            "presence": "ok",
        }

    def test_not_ready_when_database_down(self, client, registry):
        with patch.object(settings, "presence_backend", "redis"), patch(
            "app.api.routes.health.check_db_health", AsyncMock(return_value=False)
        ), patch("app.api.routes.health.check_redis_health", AsyncMock(return_value=True)):
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_not_ready_when_presence_down(self, client):
        with patch.object(settings, "presence_backend", "memory"), patch(
            "app.api.routes.health.check_db_health", AsyncMock(return_value=True)
        ), patch(
            "app.api.routes.health.get_presence_registry",
            AsyncMock(side_effect=PresenceBackendError("Redis unavailable")),
        ):
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["presence"] == "error"
