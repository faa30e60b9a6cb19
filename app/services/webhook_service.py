"""Webhook dispatch: verify, parse, deduplicate, reconcile, record.

Per-delivery state machine::

    received -> signature_checked | rejected_signature
             -> parsed | rejected_payload
             -> duplicate_check -> duplicate | in_progress
             -> reconciling -> reconciled | failed

Rejected deliveries never touch the ledger. A failed reconciliation is
written to the ledger before the error propagates, so the next delivery of
the same event id retries it. Only a processed event is answered as a
duplicate; a delivery racing a live claim gets a 409 and is redelivered.
"""

import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum

import structlog

from app.core.exceptions import EventInProgressError, MissingConfigError, PolarError, ProcessingFailedError
from app.domain.webhook_events import WebhookEnvelope, normalize_event
from app.domain.webhook_signature import DEFAULT_TOLERANCE_SECONDS, verify_webhook_headers
from app.metrics.cloudwatch import emit_business_event
from app.services.reconciliation_service import EntityReconciler, ReconcileResult
from app.services.webhook_ledger import ClaimStatus, IdempotencyLedger

logger = structlog.get_logger(__name__)

PROCESSED_CODE = "WEBHOOK_PROCESSED"
DUPLICATE_CODE = "WEBHOOK_DUPLICATE"


class DeliveryState(StrEnum):
    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    REJECTED_SIGNATURE = "rejected_signature"
    PARSED = "parsed"
    REJECTED_PAYLOAD = "rejected_payload"
    DUPLICATE_CHECK = "duplicate_check"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"
    RECONCILING = "reconciling"
    RECONCILED = "reconciled"
    FAILED = "failed"


_LOG_LEVELS = {
    DeliveryState.REJECTED_SIGNATURE: "warning",
    DeliveryState.REJECTED_PAYLOAD: "warning",
    DeliveryState.IN_PROGRESS: "warning",
    DeliveryState.FAILED: "error",
}


@dataclass
class WebhookOutcome:
    """Terminal success state of one delivery."""

    event_id: str
    event_type: str
    state: DeliveryState
    handled: bool = False

    @property
    def duplicate(self) -> bool:
        return self.state == DeliveryState.DUPLICATE

    def to_response(self) -> dict:
        if self.duplicate:
            return {"ok": True, "code": DUPLICATE_CODE, "type": self.event_type, "duplicate": True}
        return {
            "ok": True,
            "code": PROCESSED_CODE,
            "type": self.event_type,
            "handled": self.handled,
            "duplicate": False,
        }


BusinessEventEmitter = Callable[..., Awaitable[None]]


class WebhookDispatcher:
    def __init__(
        self,
        ledger: IdempotencyLedger,
        reconciler: EntityReconciler,
        secret: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        emit_event: BusinessEventEmitter = emit_business_event,
    ):
        self.ledger = ledger
        self.reconciler = reconciler
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.emit_event = emit_event

    def _transition(self, state: DeliveryState, **context) -> None:
        level = _LOG_LEVELS.get(state, "info")
        getattr(logger, level)("polar_webhook_state", state=str(state), **context)

    async def handle(self, raw_body: bytes, headers: Mapping[str, str], now: float | None = None) -> WebhookOutcome:
        """Run one inbound delivery through the pipeline.

        Raises:
            MissingConfigError: no webhook secret configured
            InvalidSignatureError: authentication failed (ledger untouched)
            InvalidPayloadError: body unusable (ledger untouched)
            MissingCustomerLinkageError / ProcessingFailedError: reconciliation
                failed and was recorded on the ledger
        """
        self._transition(DeliveryState.RECEIVED, body_bytes=len(raw_body))
        if not self.secret:
            logger.error("polar_webhook_secret_missing")
            raise MissingConfigError("Polar webhook secret is not configured")

        try:
            delivery = verify_webhook_headers(raw_body, headers, self.secret, self.tolerance_seconds, now)
        except PolarError as e:
            self._transition(DeliveryState.REJECTED_SIGNATURE, reason=getattr(e, "reason", None))
            raise
        self._transition(DeliveryState.SIGNATURE_CHECKED, header=delivery.header_name)

        try:
            envelope = normalize_event(raw_body, delivery_id=delivery.webhook_id)
        except PolarError as e:
            self._transition(DeliveryState.REJECTED_PAYLOAD, error=e.message)
            raise
        self._transition(
            DeliveryState.PARSED,
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            id_source=envelope.id_source,
        )

        return await self.process(envelope)

    async def process(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        """Deduplicate and reconcile an already-authenticated envelope."""
        event_id = envelope.event_id
        self._transition(DeliveryState.DUPLICATE_CHECK, event_id=event_id)

        await self.ledger.record_received(event_id, envelope.event_type, envelope.raw)
        claim = await self.ledger.claim(event_id)
        if claim.status == ClaimStatus.IN_PROGRESS:
            self._transition(DeliveryState.IN_PROGRESS, event_id=event_id)
            raise EventInProgressError(f"Event {event_id} is being processed by another delivery")
        if not claim.claimed:
            self._transition(DeliveryState.DUPLICATE, event_id=event_id)
            return WebhookOutcome(event_id=event_id, event_type=envelope.event_type, state=DeliveryState.DUPLICATE)

        self._transition(DeliveryState.RECONCILING, event_id=event_id, attempt=claim.attempts)
        try:
            result = await self.reconciler.reconcile(envelope)
        except PolarError as e:
            await self._record_failure(event_id, e, claim.token)
            raise
        except Exception as e:
            await self._record_failure(event_id, e, claim.token)
            raise ProcessingFailedError(f"Failed to process {envelope.event_type} event") from e

        await self.ledger.mark_processed(event_id, result.summary(), token=claim.token)
        self._transition(DeliveryState.RECONCILED, event_id=event_id, handled=result.handled)
        try:
            await self._emit_business_events(envelope, result)
        except Exception as e:
            # Metrics never change the delivery outcome
            logger.warning(
                "polar_business_event_failed",
                event_id=event_id,
                error=str(e),
                error_type=type(e).__name__,
            )

        return WebhookOutcome(
            event_id=event_id,
            event_type=envelope.event_type,
            state=DeliveryState.RECONCILED,
            handled=result.handled,
        )

    async def replay_pending(self, limit: int = 50) -> list[dict]:
        """Re-run unprocessed ledger events from their stored payloads.

        Signatures are not re-checked; the payload was authenticated when it
        was first recorded. One failing event does not stop the batch.
        """
        results = []
        for row in await self.ledger.pending_events(limit=limit):
            event_id = row["webhook_id"]
            try:
                envelope = normalize_event(json.dumps(row["payload"]).encode("utf-8"), delivery_id=event_id)
                envelope.event_id = event_id
                outcome = await self.process(envelope)
            except PolarError as e:
                results.append({"event_id": event_id, "ok": False, "code": str(e.code), "error": e.message})
                continue
            results.append({"event_id": event_id, **outcome.to_response()})
        logger.info("polar_webhook_replay_complete", total=len(results), failed=sum(not r["ok"] for r in results))
        return results

    async def _record_failure(self, event_id: str, error: Exception, token: str | None) -> None:
        self._transition(DeliveryState.FAILED, event_id=event_id, error=str(error), error_type=type(error).__name__)
        try:
            await self.ledger.mark_failed(event_id, f"{type(error).__name__}: {error}", token=token)
        except Exception as e:
            # The original error still decides the response
            logger.error(
                "polar_webhook_mark_failed_error",
                event_id=event_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    async def _emit_business_events(self, envelope: WebhookEnvelope, result: ReconcileResult) -> None:
        if not result.subscription_upserted:
            return
        user_id = result.subscription.get("user_id") if result.subscription else None
        user_id = str(user_id) if user_id is not None else None
        if result.subscription_created:
            await self.emit_event("subscription_created", user_id=user_id)
        if envelope.is_cancellation:
            await self.emit_event("subscription_cancelled", user_id=user_id)
