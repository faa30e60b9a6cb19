"""PolarCustomer model: provider customer mirrored from webhook payloads."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String

from app.db.base import Base


class PolarCustomer(Base):
    __tablename__ = "polar_customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    polar_customer_id = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(320), unique=True, nullable=True, index=True)  # stored lowercased
    name = Column(String(255), nullable=True)

    # Weak link to an internal account, resolved by lookup
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
