"""Canonical webhook envelope and the tables used to read Polar payloads.

Pure domain logic with no external dependencies beyond pydantic's datetime
parsing. Polar's payload schema has drifted across API versions, so every
logical field is read through ``FIELD_ALIASES`` instead of inline fallbacks,
and event types are mapped to categories through ``EVENT_CATEGORIES``.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import TypeAdapter, ValidationError

from app.core.exceptions import InvalidPayloadError


class EventCategory(StrEnum):
    SUBSCRIPTION = "subscription"
    CUSTOMER = "customer"
    ORDER = "order"
    CHECKOUT = "checkout"
    BENEFIT = "benefit"
    REFUND = "refund"
    PRODUCT = "product"
    OTHER = "other"


class BillingInterval(StrEnum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


EVENT_CATEGORIES: dict[str, EventCategory] = {
    "subscription.created": EventCategory.SUBSCRIPTION,
    "subscription.updated": EventCategory.SUBSCRIPTION,
    "subscription.active": EventCategory.SUBSCRIPTION,
    "subscription.canceled": EventCategory.SUBSCRIPTION,
    "subscription.uncanceled": EventCategory.SUBSCRIPTION,
    "subscription.revoked": EventCategory.SUBSCRIPTION,
    "customer.created": EventCategory.CUSTOMER,
    "customer.updated": EventCategory.CUSTOMER,
    "customer.deleted": EventCategory.CUSTOMER,
    "customer.state_changed": EventCategory.CUSTOMER,
    "order.created": EventCategory.ORDER,
    "order.paid": EventCategory.ORDER,
    "order.updated": EventCategory.ORDER,
    "order.refunded": EventCategory.ORDER,
    "checkout.created": EventCategory.CHECKOUT,
    "checkout.updated": EventCategory.CHECKOUT,
    "benefit.created": EventCategory.BENEFIT,
    "benefit.updated": EventCategory.BENEFIT,
    "benefit_grant.created": EventCategory.BENEFIT,
    "benefit_grant.updated": EventCategory.BENEFIT,
    "benefit_grant.revoked": EventCategory.BENEFIT,
    "refund.created": EventCategory.REFUND,
    "refund.updated": EventCategory.REFUND,
    "product.created": EventCategory.PRODUCT,
    "product.updated": EventCategory.PRODUCT,
}

# Used when an event type is not in EVENT_CATEGORIES (new provider events).
CATEGORY_PREFIXES: dict[str, EventCategory] = {
    "subscription": EventCategory.SUBSCRIPTION,
    "customer": EventCategory.CUSTOMER,
    "order": EventCategory.ORDER,
    "checkout": EventCategory.CHECKOUT,
    "benefit": EventCategory.BENEFIT,
    "benefit_grant": EventCategory.BENEFIT,
    "refund": EventCategory.REFUND,
    "product": EventCategory.PRODUCT,
}

# Status written when a cancellation event carries no status of its own.
CANCELLATION_STATUSES: dict[str, str] = {
    "subscription.canceled": "canceled",
    "subscription.revoked": "revoked",
}

# Logical field -> payload keys, highest priority first.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "event_type": ("type", "event"),
    "event_id": ("id", "webhook_id", "event_id"),
    "customer_id": ("customer_id", "customerId"),
    "customer_email": ("email", "customer_email", "customerEmail"),
    "customer_name": ("name", "customer_name", "customerName"),
    # Customer fields flattened onto a non-customer payload
    "payload_customer_email": ("customer_email", "customerEmail"),
    "payload_customer_name": ("customer_name", "customerName"),
    "external_user_id": ("external_id", "externalId"),
    "user_id": ("user_id", "userId"),
    "subscription_id": ("subscription_id", "subscriptionId"),
    "product_id": ("product_id", "productId"),
    "interval": ("recurring_interval", "interval", "billing_interval", "recurringInterval"),
    "status": ("status",),
    "current_period_start": ("current_period_start", "currentPeriodStart"),
    "current_period_end": ("current_period_end", "currentPeriodEnd"),
    "cancel_at_period_end": ("cancel_at_period_end", "cancelAtPeriodEnd"),
    "canceled_at": ("canceled_at", "canceledAt", "cancelled_at"),
    "metadata": ("metadata",),
}

ID_SOURCE_PAYLOAD = "payload"
ID_SOURCE_HEADER = "header"
ID_SOURCE_CONTENT_HASH = "content_hash"

_datetime_adapter = TypeAdapter(datetime)


def classify_event(event_type: str) -> EventCategory:
    """Map a provider event type to its category."""
    normalized = (event_type or "").strip().lower()
    if normalized in EVENT_CATEGORIES:
        return EVENT_CATEGORIES[normalized]
    if "subscription" in normalized:
        return EventCategory.SUBSCRIPTION
    prefix = normalized.split(".", 1)[0]
    return CATEGORY_PREFIXES.get(prefix, EventCategory.OTHER)


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def first_present(obj: Any, field_name: str) -> Any:
    """Return the first non-empty value among the aliases of ``field_name``."""
    if not isinstance(obj, dict):
        return None
    for key in FIELD_ALIASES[field_name]:
        value = obj.get(key)
        if _is_present(value):
            return value.strip() if isinstance(value, str) else value
    return None


def alias_key_present(obj: Any, field_name: str) -> bool:
    """True if any alias key exists in ``obj``, even with a null value."""
    return isinstance(obj, dict) and any(key in obj for key in FIELD_ALIASES[field_name])


def normalize_interval(value: Any) -> BillingInterval:
    """Collapse provider interval strings to monthly/annual.

    Lossy: anything mentioning a year is annual, everything else (weekly and
    daily included) is monthly.
    """
    normalized = str(value or "").lower()
    if "year" in normalized or "annual" in normalized:
        return BillingInterval.ANNUAL
    return BillingInterval.MONTHLY


def merge_metadata(stored: Any, *layers: Any, tags: dict | None = None) -> dict:
    """Merge metadata maps in order: stored, each layer, then tags.

    Later maps win on key conflicts; non-dict layers are ignored.
    """
    merged: dict = dict(stored) if isinstance(stored, dict) else {}
    for layer in layers:
        if isinstance(layer, dict):
            merged.update(layer)
    if tags:
        merged.update(tags)
    return merged


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or unix timestamp into an aware UTC datetime."""
    if not _is_present(value) or isinstance(value, bool):
        return None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def content_hash_id(event_type: str, raw_body: bytes) -> str:
    return f"{event_type}:sha256:{hashlib.sha256(raw_body).hexdigest()}"


@dataclass
class WebhookEnvelope:
    """A parsed webhook event."""

    event_type: str
    event_id: str
    data: dict
    raw: dict = field(default_factory=dict)
    id_source: str = ID_SOURCE_PAYLOAD

    @property
    def category(self) -> EventCategory:
        return classify_event(self.event_type)

    @property
    def is_cancellation(self) -> bool:
        return self.event_type in CANCELLATION_STATUSES


def normalize_event(raw_body: bytes | str, delivery_id: str | None = None) -> WebhookEnvelope:
    """Parse the raw request body into a WebhookEnvelope.

    Args:
        raw_body: Exact bytes received (already signature-checked)
        delivery_id: ``webhook-id`` header value, used when the body has no id

    Raises:
        InvalidPayloadError: body is not a JSON object or has no event type
    """
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")

    try:
        event = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        raise InvalidPayloadError("Webhook payload is not valid JSON") from None

    if not isinstance(event, dict):
        raise InvalidPayloadError("Webhook payload must be a JSON object")

    event_type = first_present(event, "event_type")
    if not isinstance(event_type, str):
        raise InvalidPayloadError("Webhook payload is missing event type")

    event_id = first_present(event, "event_id")
    if event_id is not None:
        id_source = ID_SOURCE_PAYLOAD
    elif delivery_id:
        event_id, id_source = delivery_id, ID_SOURCE_HEADER
    else:
        event_id, id_source = content_hash_id(event_type, raw_body), ID_SOURCE_CONTENT_HASH

    data = event.get("data")
    if not isinstance(data, dict):
        data = event

    return WebhookEnvelope(
        event_type=event_type,
        event_id=str(event_id),
        data=data,
        raw=event,
        id_source=id_source,
    )
