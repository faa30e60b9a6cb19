"""Request-scoped accessors for the objects built in the application lifespan."""

from fastapi import Request

from app.core.config import Settings
from app.db.document_store import DocumentStore
from app.integrations.polar import PolarClient
from app.services.reconciliation_service import EntityReconciler
from app.services.webhook_ledger import IdempotencyLedger
from app.services.webhook_service import WebhookDispatcher


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_polar_client(request: Request) -> PolarClient:
    return request.app.state.polar_client


def get_dispatcher(request: Request) -> WebhookDispatcher:
    settings = get_app_settings(request)
    store = get_store(request)
    return WebhookDispatcher(
        ledger=IdempotencyLedger(store, claim_ttl_seconds=settings.polar_webhook_claim_ttl_seconds),
        reconciler=EntityReconciler(store),
        secret=settings.polar_webhook_secret,
        tolerance_seconds=settings.polar_webhook_tolerance_seconds,
    )
