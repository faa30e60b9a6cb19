"""Tests for the internal checkout and customer-portal endpoints."""

import pytest
from fastapi.testclient import TestClient

from app.core.exceptions import UpstreamError
from app.db.document_store import CUSTOMERS, USERS
from app.main import create_app

pytestmark = pytest.mark.integration

AUTH = {"Authorization": "Bearer internal-token"}


class TestInternalToken:
    def test_missing_token(self, api_client):
        response = api_client.post("/api/polar/checkout", json={"email": "a@b.com"})
        assert response.status_code == 401
        assert response.json()["code"] == "ERR_POLAR_UNAUTHORIZED"

    def test_wrong_token(self, api_client):
        response = api_client.post(
            "/api/polar/checkout", json={"email": "a@b.com"}, headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    def test_token_not_configured(self, settings, store, polar_client):
        app = create_app(settings=settings.model_copy(update={"internal_api_token": ""}), store=store, polar_client=polar_client)
        with TestClient(app) as client:
            response = client.post("/api/polar/portal", json={"customerId": "cus_1"}, headers=AUTH)
        assert response.status_code == 500
        assert response.json()["code"] == "ERR_POLAR_MISSING_CONFIG"


class TestCheckout:
    def test_requires_email_or_user(self, api_client, polar_client):
        response = api_client.post("/api/polar/checkout", json={"interval": "monthly"}, headers=AUTH)

        assert response.status_code == 400
        assert response.json()["code"] == "ERR_POLAR_INVALID_INPUT"
        polar_client.create_checkout.assert_not_awaited()

    def test_invalid_json(self, api_client):
        response = api_client.post(
            "/api/polar/checkout", content=b"{oops", headers={**AUTH, "content-type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "ERR_POLAR_INVALID_INPUT"

    def test_invalid_interval(self, api_client):
        response = api_client.post("/api/polar/checkout", json={"interval": "weekly", "email": "a@b.com"}, headers=AUTH)
        assert response.status_code == 400
        assert "interval" in response.json()["error"]

    def test_checkout_by_email(self, api_client, polar_client):
        response = api_client.post("/api/polar/checkout", json={"email": " A@B.com "}, headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "url": "https://polar.test/checkout/chk_1", "checkout_id": "chk_1"}
        polar_client.create_checkout.assert_awaited_once_with(
            {
                "product_id": "prod_monthly",
                "success_url": "https://site.test/billing/success",
                "return_url": "https://site.test/pricing",
                "metadata": {},
                "customer_email": "a@b.com",
            }
        )

    def test_annual_interval_uses_annual_product(self, api_client, polar_client):
        api_client.post("/api/polar/checkout", json={"interval": "Annual", "email": "a@b.com"}, headers=AUTH)
        payload = polar_client.create_checkout.await_args.args[0]
        assert payload["product_id"] == "prod_annual"

    def test_known_customer_email_adds_customer_id(self, api_client, store, polar_client):
        store.collections[CUSTOMERS][1] = {"id": 1, "polar_customer_id": "cus_1", "email": "a@b.com", "user_id": None}

        api_client.post("/api/polar/checkout", json={"email": "a@b.com"}, headers=AUTH)

        assert polar_client.create_checkout.await_args.args[0]["customer_id"] == "cus_1"

    def test_checkout_for_user(self, api_client, store, polar_client):
        store.collections[USERS][7] = {"id": 7, "email": "Owner@Site.com", "name": "Owner", "role": "customer"}
        store.collections[CUSTOMERS][1] = {"id": 1, "polar_customer_id": "cus_7", "email": "owner@site.com", "user_id": 7}

        response = api_client.post(
            "/api/polar/checkout",
            json={"userId": 7, "email": "other@x.com", "successPath": "/done", "metadata": {"plan": "pro"}},
            headers=AUTH,
        )

        assert response.status_code == 200
        payload = polar_client.create_checkout.await_args.args[0]
        assert payload["customer_email"] == "owner@site.com"
        assert payload["customer_id"] == "cus_7"
        assert payload["external_customer_id"] == "7"
        assert payload["success_url"] == "https://site.test/done"
        assert payload["metadata"] == {"plan": "pro", "user_id": "7"}

    def test_unknown_user(self, api_client):
        response = api_client.post("/api/polar/checkout", json={"userId": 404}, headers=AUTH)
        assert response.status_code == 400

    def test_missing_product_mapping(self, settings, store, polar_client):
        app = create_app(
            settings=settings.model_copy(update={"polar_product_id_monthly": ""}),
            store=store,
            polar_client=polar_client,
        )
        with TestClient(app) as client:
            response = client.post("/api/polar/checkout", json={"email": "a@b.com"}, headers=AUTH)
        assert response.status_code == 500
        assert response.json()["code"] == "ERR_POLAR_MISSING_CONFIG"

    def test_upstream_failure(self, api_client, polar_client):
        polar_client.create_checkout.side_effect = UpstreamError("Polar request failed (422)", upstream_status=422)

        response = api_client.post("/api/polar/checkout", json={"email": "a@b.com"}, headers=AUTH)

        assert response.status_code == 502
        assert response.json()["code"] == "ERR_POLAR_UPSTREAM"

    def test_response_without_url(self, api_client, polar_client):
        polar_client.create_checkout.return_value = {"id": "chk_1"}
        response = api_client.post("/api/polar/checkout", json={"email": "a@b.com"}, headers=AUTH)
        assert response.status_code == 502


class TestPortal:
    def test_requires_an_identifier(self, api_client):
        response = api_client.post("/api/polar/portal", json={}, headers=AUTH)
        assert response.status_code == 400
        assert response.json()["code"] == "ERR_POLAR_INVALID_INPUT"

    def test_unknown_customer(self, api_client, polar_client):
        response = api_client.post("/api/polar/portal", json={"customerId": "cus_missing"}, headers=AUTH)

        assert response.status_code == 404
        assert response.json()["code"] == "ERR_POLAR_CUSTOMER_NOT_FOUND"
        polar_client.create_portal_session.assert_not_awaited()

    def test_portal_by_customer_id(self, api_client, store, polar_client):
        store.collections[CUSTOMERS][1] = {"id": 1, "polar_customer_id": "cus_1", "email": "a@b.com", "user_id": None}

        response = api_client.post("/api/polar/portal", json={"customerId": "cus_1"}, headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "url": "https://polar.test/portal/cs_1"}
        polar_client.create_portal_session.assert_awaited_once_with("cus_1")

    def test_portal_by_user_id(self, api_client, store, polar_client):
        store.collections[CUSTOMERS][1] = {"id": 1, "polar_customer_id": "cus_9", "email": "a@b.com", "user_id": 9}

        response = api_client.post("/api/polar/portal", json={"user_id": 9}, headers=AUTH)

        assert response.status_code == 200
        polar_client.create_portal_session.assert_awaited_once_with("cus_9")
