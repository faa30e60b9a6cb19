"""Polar routes: webhook ingestion, checkout and customer portal."""

import json
from typing import TypeVar

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ValidationError

from app.api.deps import get_app_settings, get_dispatcher, get_polar_client, get_store
from app.core.auth import require_internal_token
from app.core.config import Settings
from app.core.exceptions import (
    CustomerNotFoundError,
    InvalidInputError,
    MissingConfigError,
    UpstreamError,
)
from app.db.document_store import CUSTOMERS, USERS, DocumentNotFoundError, DocumentStore
from app.integrations.polar import PolarClient, extract_url
from app.schemas.polar import (
    CheckoutRequest,
    CheckoutResponse,
    PortalRequest,
    PortalResponse,
    WebhookResponse,
)
from app.services.webhook_service import WebhookDispatcher

logger = structlog.get_logger(__name__)

router = APIRouter()

ModelT = TypeVar("ModelT", bound=BaseModel)


# ── Helpers ─────────────────────────────────────────────────────────


async def _parse_request(request: Request, model: type[ModelT]) -> ModelT:
    """Validate a JSON body, reporting failures as ERR_POLAR_INVALID_INPUT."""
    raw = await request.body()
    try:
        data = json.loads(raw) if raw.strip() else {}
    except ValueError:
        raise InvalidInputError("Invalid JSON body") from None
    if not isinstance(data, dict):
        raise InvalidInputError("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise InvalidInputError(f"{location}: {first['msg']}" if location else first["msg"]) from None


def _resolve_product_id(settings: Settings, interval: str) -> str:
    product_id = settings.polar_product_id_annual if interval == "annual" else settings.polar_product_id_monthly
    if not product_id:
        raise MissingConfigError(
            f"Missing product mapping for {interval}. "
            "Configure POLAR_PRODUCT_ID_MONTHLY and POLAR_PRODUCT_ID_ANNUAL."
        )
    return product_id


async def _find_customer(store: DocumentStore, field_name: str, value) -> dict | None:
    rows = await store.find(CUSTOMERS, {field_name: value})
    return rows[0] if rows else None


def _site_url(settings: Settings, path: str) -> str:
    return f"{settings.site_url.rstrip('/')}/{path.lstrip('/')}"


# ── Endpoints ───────────────────────────────────────────────────────


@router.post("/polar/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
@router.post("/webhooks/polar", response_model=WebhookResponse, response_model_exclude_none=True)
async def polar_webhook(
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Handle a Polar webhook delivery.

    The body is read as raw bytes and authenticated before any JSON parsing.
    Errors are rendered by the PolarError exception handler.
    """
    body = await request.body()
    outcome = await dispatcher.handle(body, request.headers)
    return outcome.to_response()


@router.post(
    "/polar/checkout",
    response_model=CheckoutResponse,
    dependencies=[Depends(require_internal_token)],
)
async def create_checkout(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    store: DocumentStore = Depends(get_store),
    polar: PolarClient = Depends(get_polar_client),
):
    """Create a Polar checkout session for the requested interval."""
    body = await _parse_request(request, CheckoutRequest)

    email = body.email
    customer_id = body.customer_id
    metadata = dict(body.metadata or {})

    if body.user_id is not None:
        try:
            user = await store.find_by_id(USERS, body.user_id)
        except DocumentNotFoundError:
            raise InvalidInputError(f"Unknown user {body.user_id}") from None
        # The account email wins over whatever the form submitted
        email = (user["email"] or email or "").lower() or None
        metadata.setdefault("user_id", str(user["id"]))
        if customer_id is None:
            customer = await _find_customer(store, "user_id", user["id"])
            customer_id = customer["polar_customer_id"] if customer else None

    if customer_id is None and email:
        customer = await _find_customer(store, "email", email)
        customer_id = customer["polar_customer_id"] if customer else None

    if not email and not customer_id:
        raise InvalidInputError("email or user_id is required")

    product_id = body.product_id or _resolve_product_id(settings, body.interval)

    payload = {
        "product_id": product_id,
        "success_url": _site_url(settings, body.success_path),
        "return_url": _site_url(settings, body.return_path),
        "metadata": metadata,
    }
    if email:
        payload["customer_email"] = email
    if customer_id:
        payload["customer_id"] = customer_id
    if body.user_id is not None:
        payload["external_customer_id"] = str(body.user_id)

    checkout = await polar.create_checkout(payload)
    url = extract_url(checkout)
    if not url:
        raise UpstreamError("Polar checkout response did not include a URL", payload=checkout)

    logger.info("polar_checkout_created", interval=body.interval, has_customer=customer_id is not None)
    checkout_id = checkout.get("id") if isinstance(checkout, dict) else None
    return CheckoutResponse(url=url, checkout_id=checkout_id)


@router.post(
    "/polar/portal",
    response_model=PortalResponse,
    dependencies=[Depends(require_internal_token)],
)
async def create_portal_session(
    request: Request,
    store: DocumentStore = Depends(get_store),
    polar: PolarClient = Depends(get_polar_client),
):
    """Create a Polar customer portal session for a known customer."""
    body = await _parse_request(request, PortalRequest)

    if body.customer_id is None and body.user_id is None:
        raise InvalidInputError("user_id or customer_id is required")

    if body.customer_id is not None:
        customer = await _find_customer(store, "polar_customer_id", body.customer_id)
    else:
        customer = await _find_customer(store, "user_id", body.user_id)

    if customer is None:
        raise CustomerNotFoundError("No Polar customer found for this account")

    session = await polar.create_portal_session(customer["polar_customer_id"])
    url = extract_url(session)
    if not url:
        raise UpstreamError("Polar portal response did not include a URL", payload=session)

    logger.info("polar_portal_session_created", customer_id=customer["id"])
    return PortalResponse(url=url)
