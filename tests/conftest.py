"""Shared test fixtures for all test groups."""

import base64
import copy
import hashlib
import hmac
import json
import time
from datetime import UTC, datetime
from typing import Any

import pytest

from app.core.config import Settings
from app.db.document_store import (
    COLLECTIONS,
    CUSTOMERS,
    SUBSCRIPTIONS,
    USERS,
    WEBHOOK_EVENTS,
    DocumentNotFoundError,
    DuplicateKeyError,
)

TEST_SECRET = "whsec_test_secret"
# whsec_ + base64(b"standard-webhooks-key-0123456789")
STANDARD_SECRET = "whsec_" + base64.b64encode(b"standard-webhooks-key-0123456789").decode()

UNIQUE_FIELDS: dict[str, tuple[str, ...]] = {
    WEBHOOK_EVENTS: ("webhook_id",),
    CUSTOMERS: ("polar_customer_id", "email"),
    SUBSCRIPTIONS: ("polar_subscription_id",),
    USERS: ("email",),
}

FIELD_DEFAULTS: dict[str, dict[str, Any]] = {
    WEBHOOK_EVENTS: {"processed": False, "attempts": 0},
    CUSTOMERS: {"metadata": {}},
    SUBSCRIPTIONS: {"status": "active", "cancel_at_period_end": False, "metadata": {}},
    USERS: {"role": "customer"},
}


class InMemoryDocumentStore:
    """DocumentStore double enforcing the same unique fields as the SQL schema."""

    def __init__(self):
        self.collections: dict[str, dict[int, dict]] = {name: {} for name in COLLECTIONS}
        self._next_id = {name: 1 for name in COLLECTIONS}
        self.writes: list[tuple[str, str]] = []

    def _columns(self, collection: str) -> list[str]:
        return [column.name for column in COLLECTIONS[collection].__table__.columns]

    def _check_unique(self, collection: str, doc: dict, doc_id: int | None = None) -> None:
        for field_name in UNIQUE_FIELDS[collection]:
            value = doc.get(field_name)
            if value is None:
                continue
            for other_id, other in self.collections[collection].items():
                if other_id != doc_id and other.get(field_name) == value:
                    raise DuplicateKeyError(collection, f"{field_name}={value}")

    def rows(self, collection: str) -> list[dict]:
        return [copy.deepcopy(doc) for doc in self.collections[collection].values()]

    def write_count(self, *collections: str) -> int:
        return sum(1 for _, collection in self.writes if not collections or collection in collections)

    async def find(self, collection: str, where: dict, limit: int = 1, order_by: str | None = None) -> list[dict]:
        docs = [
            doc
            for doc in self.collections[collection].values()
            if all(doc.get(key) == value for key, value in where.items())
        ]
        if order_by:
            docs.sort(key=lambda doc: doc[order_by])
        return [copy.deepcopy(doc) for doc in docs[:limit]]

    async def find_by_id(self, collection: str, doc_id: Any) -> dict:
        doc = self.collections[collection].get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(collection, doc_id)
        return copy.deepcopy(doc)

    async def create(self, collection: str, data: dict) -> dict:
        now = datetime.now(UTC)
        doc = {column: None for column in self._columns(collection)}
        doc.update(copy.deepcopy(FIELD_DEFAULTS[collection]))
        doc["created_at"] = now
        if "updated_at" in doc:
            doc["updated_at"] = now
        doc.update(copy.deepcopy(data))
        self._check_unique(collection, doc)
        doc["id"] = self._next_id[collection]
        self._next_id[collection] += 1
        self.collections[collection][doc["id"]] = doc
        self.writes.append(("create", collection))
        return copy.deepcopy(doc)

    async def update(self, collection: str, doc_id: Any, data: dict) -> dict:
        if doc_id not in self.collections[collection]:
            raise DocumentNotFoundError(collection, doc_id)
        merged = {**self.collections[collection][doc_id], **copy.deepcopy(data)}
        self._check_unique(collection, merged, doc_id)
        if "updated_at" in merged:
            merged["updated_at"] = datetime.now(UTC)
        self.collections[collection][doc_id] = merged
        self.writes.append(("update", collection))
        return copy.deepcopy(merged)

    async def compare_and_update(self, collection: str, doc_id: Any, expected: dict, data: dict) -> dict | None:
        doc = self.collections[collection].get(doc_id)
        if doc is None or any(doc.get(key) != value for key, value in expected.items()):
            return None
        return await self.update(collection, doc_id, data)


def hmac_hex(body: bytes, key: bytes) -> str:
    return hmac.new(key, body, hashlib.sha256).hexdigest()


def hmac_b64(body: bytes, key: bytes) -> str:
    return base64.b64encode(hmac.new(key, body, hashlib.sha256).digest()).decode()


def signed_headers(body: bytes, secret: str = TEST_SECRET) -> dict[str, str]:
    """``polar-signature: v1=<base64>`` signed with the literal secret."""
    return {"polar-signature": f"v1={hmac_b64(body, secret.encode())}", "content-type": "application/json"}


def standard_headers(
    body: bytes,
    secret: str = STANDARD_SECRET,
    webhook_id: str = "msg_1",
    timestamp: int | None = None,
) -> dict[str, str]:
    """Standard Webhooks three-header scheme with a base64 whsec_ secret."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    key = base64.b64decode(secret.removeprefix("whsec_"))
    signed = f"{webhook_id}.{timestamp}.".encode() + body
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": str(timestamp),
        "webhook-signature": f"v1,{hmac_b64(signed, key)}",
        "content-type": "application/json",
    }


def event_body(event: dict) -> bytes:
    return json.dumps(event, separators=(",", ":")).encode("utf-8")


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        polar_webhook_secret=TEST_SECRET,
        polar_access_token="polar_at_test",
        polar_api_base_url="https://polar.test",
        polar_product_id_monthly="prod_monthly",
        polar_product_id_annual="prod_annual",
        internal_api_token="internal-token",
        site_url="https://site.test",
    )
