"""User model: internal site accounts (read-only for billing)."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String

from app.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False, default="customer")  # admin | author | customer

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
