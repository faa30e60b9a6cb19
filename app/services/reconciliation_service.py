"""Reconcile Customer and Subscription state from Polar webhook payloads.

Applies an event's data to the stored entities regardless of which event type
carried it. Every lookup goes through the provider's external ids
(``polar_customer_id``, ``polar_subscription_id``) or the lowercased email.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from app.core.exceptions import MissingCustomerLinkageError, ProcessingFailedError
from app.db.document_store import (
    CUSTOMERS,
    SUBSCRIPTIONS,
    USERS,
    DocumentNotFoundError,
    DocumentStore,
    DuplicateKeyError,
)
from app.domain.webhook_events import (
    CANCELLATION_STATUSES,
    EventCategory,
    WebhookEnvelope,
    alias_key_present,
    first_present,
    merge_metadata,
    normalize_interval,
    parse_datetime,
)

logger = structlog.get_logger(__name__)

DEFAULT_PRODUCT_ID = "unknown-product"
DEFAULT_STATUS = "active"
DATE_FIELDS = ("current_period_start", "current_period_end", "canceled_at")

# How deep to look for a subscription id inside nested payload objects
SUBSCRIPTION_ID_SEARCH_DEPTH = 4

_TRUTHY = {"true", "1", "yes", "y", "on"}


@dataclass
class ReconcileResult:
    customer: dict | None = None
    subscription: dict | None = None
    subscription_upserted: bool = False
    subscription_created: bool = False

    @property
    def handled(self) -> bool:
        return self.customer is not None or self.subscription_upserted

    def summary(self) -> dict:
        """Compact outcome stored on the ledger row."""
        return {
            "customer_id": self.customer["id"] if self.customer else None,
            "polar_customer_id": self.customer["polar_customer_id"] if self.customer else None,
            "subscription_id": self.subscription["id"] if self.subscription else None,
            "polar_subscription_id": self.subscription["polar_subscription_id"] if self.subscription else None,
            "subscription_upserted": self.subscription_upserted,
            "subscription_created": self.subscription_created,
        }


def _find_subscription_id(obj: Any, depth: int = 0) -> Any:
    """Depth-first search for a subscription-id alias anywhere in the payload."""
    if depth > SUBSCRIPTION_ID_SEARCH_DEPTH:
        return None
    if isinstance(obj, dict):
        value = first_present(obj, "subscription_id")
        if value is not None:
            return value
        children = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return None
    for child in children:
        value = _find_subscription_id(child, depth + 1)
        if value is not None:
            return value
    return None


def _coerce_user_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _object_id(value: Any) -> str | None:
    """Provider id from either an id string or an embedded object."""
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
        return str(value).strip()
    return None


class EntityReconciler:
    """Customer-then-subscription upserts for one webhook envelope."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def reconcile(self, envelope: WebhookEnvelope) -> ReconcileResult:
        """Apply ``envelope`` to stored state.

        Raises:
            MissingCustomerLinkageError: subscription-bearing event without a
                resolvable owning customer; nothing is written for it
            ProcessingFailedError: subscription-bearing event without an id
        """
        result = ReconcileResult()
        result.customer = await self.reconcile_customer(envelope)

        if not self.should_reconcile_subscription(envelope):
            logger.debug("polar_subscription_skipped", event_type=envelope.event_type)
            return result

        subscription, created = await self.reconcile_subscription(envelope, result.customer)
        result.subscription = subscription
        result.subscription_upserted = True
        result.subscription_created = created
        return result

    # ── Customer ────────────────────────────────────────────────────

    @staticmethod
    def customer_object(envelope: WebhookEnvelope) -> dict:
        nested = envelope.data.get("customer")
        return nested if isinstance(nested, dict) else envelope.data

    @staticmethod
    def customer_provider_id(envelope: WebhookEnvelope) -> str | None:
        data = envelope.data
        candidate = _object_id(data.get("customer"))
        if candidate is None and isinstance(data.get("customer"), dict):
            candidate = _object_id(first_present(data["customer"], "customer_id"))
        if candidate is None:
            candidate = _object_id(first_present(data, "customer_id"))
        if candidate is None and envelope.category == EventCategory.CUSTOMER:
            candidate = _object_id(data.get("id"))
        return candidate

    def customer_email(self, envelope: WebhookEnvelope) -> str | None:
        customer_obj = self.customer_object(envelope)
        if customer_obj is not envelope.data or envelope.category == EventCategory.CUSTOMER:
            email = first_present(customer_obj, "customer_email")
        else:
            email = None
        email = email or first_present(envelope.data, "payload_customer_email")
        return email.lower() if isinstance(email, str) else None

    def customer_name(self, envelope: WebhookEnvelope) -> str | None:
        customer_obj = self.customer_object(envelope)
        if customer_obj is not envelope.data or envelope.category == EventCategory.CUSTOMER:
            name = first_present(customer_obj, "customer_name")
        else:
            name = None
        name = name or first_present(envelope.data, "payload_customer_name")
        return name if isinstance(name, str) else None

    async def _find_one(self, collection: str, field_name: str, value: Any) -> dict | None:
        rows = await self.store.find(collection, {field_name: value})
        return rows[0] if rows else None

    async def find_customer(self, polar_customer_id: str | None, email: str | None) -> dict | None:
        if polar_customer_id:
            customer = await self._find_one(CUSTOMERS, "polar_customer_id", polar_customer_id)
            if customer is not None:
                return customer
        if email:
            return await self._find_one(CUSTOMERS, "email", email)
        return None

    async def resolve_user_id(self, envelope: WebhookEnvelope) -> int | None:
        """Best-effort link to an internal user; never fails the event."""
        customer_obj = self.customer_object(envelope)
        data = envelope.data
        candidates = (
            first_present(customer_obj, "external_user_id"),
            first_present(customer_obj.get("metadata"), "user_id"),
            first_present(data, "external_user_id"),
            first_present(data.get("metadata"), "user_id"),
            first_present(data, "user_id"),
        )
        raw = next((value for value in candidates if value is not None), None)
        if raw is None:
            return None

        user_id = _coerce_user_id(raw)
        if user_id is None:
            logger.warning("polar_user_id_not_numeric", raw_user_id=str(raw), event_type=envelope.event_type)
            return None

        try:
            user = await self.store.find_by_id(USERS, user_id)
        except DocumentNotFoundError:
            logger.warning("polar_user_not_found", user_id=user_id, event_type=envelope.event_type)
            return None
        except Exception as e:
            logger.warning("polar_user_lookup_failed", user_id=user_id, error=str(e), error_type=type(e).__name__)
            return None
        return user["id"]

    async def _email_is_free(self, email: str, customer_id: int) -> bool:
        holder = await self._find_one(CUSTOMERS, "email", email)
        return holder is None or holder["id"] == customer_id

    async def reconcile_customer(self, envelope: WebhookEnvelope) -> dict | None:
        polar_customer_id = self.customer_provider_id(envelope)
        email = self.customer_email(envelope)
        name = self.customer_name(envelope)

        existing = await self.find_customer(polar_customer_id, email)
        if existing is None and polar_customer_id is None:
            return None

        user_id = await self.resolve_user_id(envelope)
        incoming_metadata = self.customer_object(envelope).get("metadata")

        fields: dict[str, Any] = {}
        if email:
            fields["email"] = email
        if name:
            fields["name"] = name
        if user_id is not None:
            fields["user_id"] = user_id

        if existing is None:
            fields["polar_customer_id"] = polar_customer_id
            fields["metadata"] = merge_metadata(None, incoming_metadata, tags={"webhook_type": envelope.event_type})
            try:
                customer = await self.store.create(CUSTOMERS, fields)
            except DuplicateKeyError:
                # A concurrent delivery created it first
                existing = await self.find_customer(polar_customer_id, email)
                if existing is None:
                    raise
            else:
                logger.info(
                    "polar_customer_created",
                    customer_id=customer["id"],
                    polar_customer_id=polar_customer_id,
                    user_id=user_id,
                )
                return customer

        if polar_customer_id and existing["polar_customer_id"] != polar_customer_id:
            logger.warning(
                "polar_customer_id_mismatch",
                customer_id=existing["id"],
                stored=existing["polar_customer_id"],
                incoming=polar_customer_id,
            )
        if email and email != existing["email"] and not await self._email_is_free(email, existing["id"]):
            logger.warning("polar_customer_email_taken", customer_id=existing["id"])
            fields.pop("email")

        fields.pop("polar_customer_id", None)
        fields["metadata"] = merge_metadata(
            existing["metadata"],
            incoming_metadata,
            tags={"webhook_type": envelope.event_type},
        )
        customer = await self.store.update(CUSTOMERS, existing["id"], fields)
        logger.info("polar_customer_updated", customer_id=customer["id"], polar_customer_id=customer["polar_customer_id"])
        return customer

    # ── Subscription ────────────────────────────────────────────────

    @staticmethod
    def subscription_object(envelope: WebhookEnvelope) -> dict:
        nested = envelope.data.get("subscription")
        return nested if isinstance(nested, dict) else envelope.data

    @staticmethod
    def should_reconcile_subscription(envelope: WebhookEnvelope) -> bool:
        if envelope.category == EventCategory.SUBSCRIPTION:
            return True
        if isinstance(envelope.data.get("subscription"), dict):
            return True
        return _find_subscription_id(envelope.data) is not None

    def subscription_provider_id(self, envelope: WebhookEnvelope) -> str | None:
        data = envelope.data
        sub_obj = self.subscription_object(envelope)
        candidates = []
        if sub_obj is not data:
            candidates.append(sub_obj.get("id"))
        candidates.extend(
            [
                first_present(sub_obj, "subscription_id"),
                first_present(data, "subscription_id"),
                _find_subscription_id(data),
            ]
        )
        if envelope.category == EventCategory.SUBSCRIPTION:
            candidates.append(data.get("id"))
        return next((_object_id(value) for value in candidates if _object_id(value)), None)

    async def resolve_owning_customer(
        self,
        envelope: WebhookEnvelope,
        customer: dict | None,
        existing_subscription: dict | None,
    ) -> dict | None:
        if customer is not None:
            return customer

        sub_obj = self.subscription_object(envelope)
        ref = _object_id(first_present(sub_obj, "customer_id")) or _object_id(sub_obj.get("customer"))
        if ref:
            found = await self._find_one(CUSTOMERS, "polar_customer_id", ref)
            if found is not None:
                return found

        if existing_subscription is not None:
            try:
                return await self.store.find_by_id(CUSTOMERS, existing_subscription["customer_id"])
            except DocumentNotFoundError:
                return None
        return None

    def _pick(self, envelope: WebhookEnvelope, field_name: str) -> Any:
        sub_obj = self.subscription_object(envelope)
        value = first_present(sub_obj, field_name)
        if value is None and sub_obj is not envelope.data:
            value = first_present(envelope.data, field_name)
        return value

    def _product_id(self, envelope: WebhookEnvelope) -> str | None:
        value = self._pick(envelope, "product_id")
        if value is None:
            sub_obj = self.subscription_object(envelope)
            value = _object_id(sub_obj.get("product")) or _object_id(envelope.data.get("product"))
        return str(value) if value is not None else None

    def subscription_fields(self, envelope: WebhookEnvelope, creating: bool) -> dict[str, Any]:
        """Fields resolved from the payload; absent values are left out on update.

        A non-subscription event without a nested subscription object (an
        order or checkout that only references a subscription id) describes
        itself, not the subscription: only its product is taken, and state
        columns get create-time defaults or are left alone.
        """
        sub_obj = self.subscription_object(envelope)
        fields: dict[str, Any] = {}

        if envelope.category != EventCategory.SUBSCRIPTION and sub_obj is envelope.data:
            product_id = self._product_id(envelope)
            if product_id:
                fields["product_id"] = product_id
            if creating:
                fields.setdefault("product_id", DEFAULT_PRODUCT_ID)
                fields["interval"] = str(normalize_interval(None))
                fields["status"] = DEFAULT_STATUS
                fields["cancel_at_period_end"] = False
            return fields

        interval = self._pick(envelope, "interval")
        if creating or interval is not None:
            fields["interval"] = str(normalize_interval(interval))

        status = self._pick(envelope, "status")
        if isinstance(status, str):
            fields["status"] = status.lower()
        elif envelope.event_type in CANCELLATION_STATUSES:
            fields["status"] = CANCELLATION_STATUSES[envelope.event_type]
        elif creating:
            fields["status"] = DEFAULT_STATUS

        product_id = self._product_id(envelope)
        if product_id:
            fields["product_id"] = product_id
        elif creating:
            fields["product_id"] = DEFAULT_PRODUCT_ID

        for field_name in DATE_FIELDS:
            parsed = parse_datetime(self._pick(envelope, field_name))
            if parsed is not None:
                fields[field_name] = parsed
            elif envelope.is_cancellation and alias_key_present(sub_obj, field_name):
                # Cancellation payloads clear dates with explicit nulls
                if self._pick(envelope, field_name) is None:
                    fields[field_name] = None

        cancel_at_period_end = self._pick(envelope, "cancel_at_period_end")
        if cancel_at_period_end is not None:
            fields["cancel_at_period_end"] = _coerce_bool(cancel_at_period_end)
        elif creating:
            fields["cancel_at_period_end"] = False

        return fields

    async def reconcile_subscription(self, envelope: WebhookEnvelope, customer: dict | None) -> tuple[dict, bool]:
        polar_subscription_id = self.subscription_provider_id(envelope)
        if polar_subscription_id is None:
            raise ProcessingFailedError(f"{envelope.event_type} event has no subscription id")

        existing = await self._find_one(SUBSCRIPTIONS, "polar_subscription_id", polar_subscription_id)
        owner = await self.resolve_owning_customer(envelope, customer, existing)
        if owner is None:
            logger.warning(
                "polar_subscription_missing_customer",
                polar_subscription_id=polar_subscription_id,
                event_type=envelope.event_type,
                event_id=envelope.event_id,
            )
            raise MissingCustomerLinkageError(
                f"Subscription {polar_subscription_id} has no resolvable customer"
            )

        sub_obj = self.subscription_object(envelope)
        nested_metadata = sub_obj.get("metadata") if sub_obj is not envelope.data else None
        tags = {"webhook_type": envelope.event_type}

        fields = self.subscription_fields(envelope, creating=existing is None)
        fields["customer_id"] = owner["id"]
        if owner.get("user_id") is not None:
            fields["user_id"] = owner["user_id"]

        if existing is None:
            fields["polar_subscription_id"] = polar_subscription_id
            fields["metadata"] = merge_metadata(None, nested_metadata, envelope.data.get("metadata"), tags=tags)
            try:
                subscription = await self.store.create(SUBSCRIPTIONS, fields)
            except DuplicateKeyError:
                existing = await self._find_one(SUBSCRIPTIONS, "polar_subscription_id", polar_subscription_id)
                if existing is None:
                    raise
                # The winner already wrote create-time defaults; keep only resolved values
                fields = self.subscription_fields(envelope, creating=False)
                fields["customer_id"] = owner["id"]
                if owner.get("user_id") is not None:
                    fields["user_id"] = owner["user_id"]
            else:
                logger.info(
                    "polar_subscription_created",
                    subscription_id=subscription["id"],
                    polar_subscription_id=polar_subscription_id,
                    customer_id=owner["id"],
                    status=subscription["status"],
                )
                return subscription, True

        fields.pop("polar_subscription_id", None)
        fields["metadata"] = merge_metadata(
            existing["metadata"],
            nested_metadata,
            envelope.data.get("metadata"),
            tags=tags,
        )
        subscription = await self.store.update(SUBSCRIPTIONS, existing["id"], fields)
        logger.info(
            "polar_subscription_updated",
            subscription_id=subscription["id"],
            polar_subscription_id=polar_subscription_id,
            status=subscription["status"],
        )
        return subscription, False
