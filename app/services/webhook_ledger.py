"""Idempotency ledger for Polar webhook events.

One row per provider event id in ``polar_webhook_events``. The unique
constraint on ``webhook_id`` absorbs concurrent first sightings, and the
``claim_token`` compare-and-update gives a single writer per event id while it
reconciles. ``is_processed`` alone is never used to decide whether to run.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

import structlog

from app.db.document_store import WEBHOOK_EVENTS, DocumentNotFoundError, DocumentStore, DuplicateKeyError

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 2000


class ClaimStatus(StrEnum):
    CLAIMED = "claimed"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"


@dataclass
class ClaimResult:
    status: ClaimStatus
    ledger_id: int | None = None
    token: str | None = None
    attempts: int = 0

    @property
    def claimed(self) -> bool:
        return self.status == ClaimStatus.CLAIMED


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class IdempotencyLedger:
    """Durable record of seen and processed webhook event ids."""

    def __init__(self, store: DocumentStore, claim_ttl_seconds: int = 300):
        self.store = store
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)

    async def get(self, event_id: str) -> dict | None:
        rows = await self.store.find(WEBHOOK_EVENTS, {"webhook_id": event_id})
        return rows[0] if rows else None

    async def _require(self, event_id: str) -> dict:
        row = await self.get(event_id)
        if row is None:
            raise DocumentNotFoundError(WEBHOOK_EVENTS, event_id)
        return row

    async def is_processed(self, event_id: str) -> bool:
        row = await self.get(event_id)
        return bool(row and row["processed"])

    async def record_received(self, event_id: str, event_type: str, payload: dict) -> int:
        """Create the ledger row if it does not exist and return its id.

        An existing row (processed or not) is returned untouched.
        """
        existing = await self.get(event_id)
        if existing is not None:
            return existing["id"]

        try:
            row = await self.store.create(
                WEBHOOK_EVENTS,
                {
                    "webhook_id": event_id,
                    "type": event_type,
                    "payload": payload,
                    "received_at": _utcnow(),
                    "processed": False,
                    "attempts": 0,
                },
            )
        except DuplicateKeyError:
            # Lost the insert race to a concurrent delivery of the same event.
            logger.info("polar_webhook_record_race", event_id=event_id)
            return (await self._require(event_id))["id"]

        logger.info("polar_webhook_recorded", event_id=event_id, event_type=event_type, ledger_id=row["id"])
        return row["id"]

    async def claim(self, event_id: str) -> ClaimResult:
        """Take the single-writer lease for ``event_id``.

        A lease older than the claim TTL is treated as abandoned (crashed
        worker) and can be taken over.
        """
        row = await self._require(event_id)
        if row["processed"]:
            return ClaimResult(ClaimStatus.ALREADY_PROCESSED, ledger_id=row["id"], attempts=row["attempts"])

        now = _utcnow()
        claimed_at = _aware(row["claimed_at"])
        if row["claim_token"] and claimed_at is not None and now - claimed_at < self.claim_ttl:
            return ClaimResult(ClaimStatus.IN_PROGRESS, ledger_id=row["id"], attempts=row["attempts"])

        token = uuid.uuid4().hex
        attempts = (row["attempts"] or 0) + 1
        updated = await self.store.compare_and_update(
            WEBHOOK_EVENTS,
            row["id"],
            expected={"processed": False, "claim_token": row["claim_token"]},
            data={"claim_token": token, "claimed_at": now, "attempts": attempts},
        )
        if updated is None:
            current = await self._require(event_id)
            status = ClaimStatus.ALREADY_PROCESSED if current["processed"] else ClaimStatus.IN_PROGRESS
            logger.info("polar_webhook_claim_lost", event_id=event_id, status=str(status))
            return ClaimResult(status, ledger_id=current["id"], attempts=current["attempts"])

        if row["claim_token"]:
            logger.warning("polar_webhook_claim_taken_over", event_id=event_id, stale_claimed_at=str(claimed_at))
        return ClaimResult(ClaimStatus.CLAIMED, ledger_id=row["id"], token=token, attempts=attempts)

    async def _release(self, event_id: str, data: dict, token: str | None) -> dict | None:
        """Write a terminal state and clear the lease.

        With ``token`` the write only lands while that lease is still held; a
        worker whose lease was taken over gets None and changes nothing.
        """
        row = await self._require(event_id)
        data = {**data, "claim_token": None, "claimed_at": None}
        if token is None:
            return await self.store.update(WEBHOOK_EVENTS, row["id"], data)

        updated = await self.store.compare_and_update(WEBHOOK_EVENTS, row["id"], {"claim_token": token}, data)
        if updated is None:
            logger.warning("polar_webhook_lease_lost", event_id=event_id, ledger_id=row["id"])
        return updated

    async def mark_processed(self, event_id: str, outcome: dict | None = None, token: str | None = None) -> dict | None:
        updated = await self._release(
            event_id,
            {"processed": True, "processed_at": _utcnow(), "error": None, "outcome": outcome},
            token,
        )
        if updated is not None:
            logger.info("polar_webhook_marked_processed", event_id=event_id, ledger_id=updated["id"])
        return updated

    async def mark_failed(self, event_id: str, error_message: str, token: str | None = None) -> dict | None:
        """Store the error and release the lease; the row stays retryable."""
        updated = await self._release(
            event_id,
            {"processed": False, "error": error_message[:MAX_ERROR_LENGTH]},
            token,
        )
        if updated is not None:
            logger.info("polar_webhook_marked_failed", event_id=event_id, ledger_id=updated["id"])
        return updated

    async def pending_events(self, limit: int = 50) -> list[dict]:
        """Unprocessed rows, oldest first."""
        return await self.store.find(WEBHOOK_EVENTS, {"processed": False}, limit=limit, order_by="received_at")
