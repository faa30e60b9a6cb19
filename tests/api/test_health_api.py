"""Tests for the liveness and readiness endpoints."""

from unittest.mock import AsyncMock, MagicMock

import pytest

pytestmark = pytest.mark.unit


def test_health(api_client):
    response = api_client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "polar-billing-webhooks"}


def test_health_returns_503_while_shutting_down(api_client, app):
    app.state.shutting_down = True
    response = api_client.get("/api/health")
    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"


def test_ready_degraded_without_database(api_client):
    response = api_client.get("/api/ready")
    assert response.status_code == 503
    assert response.json() == {"status": "degraded", "checks": {"database": False, "webhook_secret": True}}


def test_ready_with_database(api_client, app):
    session = AsyncMock()
    database = MagicMock()
    database.session_factory.return_value.__aenter__.return_value = session
    app.state.database = database

    response = api_client.get("/api/ready")

    assert response.status_code == 200
    assert response.json()["checks"] == {"database": True, "webhook_secret": True}
    session.execute.assert_awaited_once()


def test_ready_database_error(api_client, app):
    database = MagicMock()
    database.session_factory.return_value.__aenter__.side_effect = OSError("connection refused")
    app.state.database = database

    response = api_client.get("/api/ready")

    assert response.status_code == 503
    assert response.json()["checks"]["database"] is False
