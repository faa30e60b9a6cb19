"""API-specific test fixtures."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from app.integrations.polar import PolarClient
from app.main import create_app


@pytest.fixture
def polar_client() -> AsyncMock:
    client = AsyncMock(spec=PolarClient)
    client.create_checkout.return_value = {"id": "chk_1", "url": "https://polar.test/checkout/chk_1"}
    client.create_portal_session.return_value = {"id": "cs_1", "customer_portal_url": "https://polar.test/portal/cs_1"}
    return client


@pytest.fixture
def app(settings, store, polar_client):
    return create_app(settings=settings, store=store, polar_client=polar_client)


@pytest.fixture
def api_client(app):
    """TestClient with the lifespan running against the in-memory store."""
    with TestClient(app) as client:
        yield client
