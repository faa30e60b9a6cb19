"""PolarWebhookEvent model: the idempotency ledger."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from app.db.base import Base


class PolarWebhookEvent(Base):
    """One row per provider event id; never deleted."""

    __tablename__ = "polar_webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    webhook_id = Column(String(255), unique=True, nullable=False, index=True)
    type = Column(String(100), nullable=False, index=True)
    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    payload = Column(JSON, nullable=False)
    error = Column(Text, nullable=True)
    outcome = Column(JSON, nullable=True)

    # Single-writer lease
    attempts = Column(Integer, nullable=False, default=0)
    claim_token = Column(String(64), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
