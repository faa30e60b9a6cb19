"""PolarSubscription model: updated in place, never recreated."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String

from app.db.base import Base


class PolarSubscription(Base):
    __tablename__ = "polar_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    polar_subscription_id = Column(String(255), unique=True, nullable=False, index=True)

    customer_id = Column(Integer, ForeignKey("polar_customers.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    product_id = Column(String(255), nullable=False, index=True)
    interval = Column(String(20), nullable=False, index=True)  # "monthly" | "annual"
    status = Column(String(50), nullable=False, default="active", index=True)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True, index=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
