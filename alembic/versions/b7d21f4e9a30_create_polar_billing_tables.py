"""create polar billing tables

Revision ID: b7d21f4e9a30
Revises:
Create Date: 2026-10-19 09:12:44.218306

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "b7d21f4e9a30"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=50), nullable=False, server_default="customer"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "polar_customers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("polar_customer_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_polar_customers_polar_customer_id"), "polar_customers", ["polar_customer_id"], unique=True)
    op.create_index(op.f("ix_polar_customers_email"), "polar_customers", ["email"], unique=True)
    op.create_index(op.f("ix_polar_customers_user_id"), "polar_customers", ["user_id"], unique=False)

    op.create_table(
        "polar_subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("polar_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("interval", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["customer_id"], ["polar_customers.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_polar_subscriptions_polar_subscription_id"),
        "polar_subscriptions",
        ["polar_subscription_id"],
        unique=True,
    )
    op.create_index(op.f("ix_polar_subscriptions_customer_id"), "polar_subscriptions", ["customer_id"], unique=False)
    op.create_index(op.f("ix_polar_subscriptions_user_id"), "polar_subscriptions", ["user_id"], unique=False)
    op.create_index(op.f("ix_polar_subscriptions_product_id"), "polar_subscriptions", ["product_id"], unique=False)
    op.create_index(op.f("ix_polar_subscriptions_interval"), "polar_subscriptions", ["interval"], unique=False)
    op.create_index(op.f("ix_polar_subscriptions_status"), "polar_subscriptions", ["status"], unique=False)
    op.create_index(
        op.f("ix_polar_subscriptions_current_period_end"),
        "polar_subscriptions",
        ["current_period_end"],
        unique=False,
    )

    op.create_table(
        "polar_webhook_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("webhook_id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=100), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("outcome", sa.JSON(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claim_token", sa.String(length=64), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    # Uniqueness on webhook_id is what makes concurrent first sightings collapse to one row
    op.create_index(op.f("ix_polar_webhook_events_webhook_id"), "polar_webhook_events", ["webhook_id"], unique=True)
    op.create_index(op.f("ix_polar_webhook_events_type"), "polar_webhook_events", ["type"], unique=False)
    op.create_index(op.f("ix_polar_webhook_events_received_at"), "polar_webhook_events", ["received_at"], unique=False)
    op.create_index(op.f("ix_polar_webhook_events_processed"), "polar_webhook_events", ["processed"], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f("ix_polar_webhook_events_processed"), table_name="polar_webhook_events")
    op.drop_index(op.f("ix_polar_webhook_events_received_at"), table_name="polar_webhook_events")
    op.drop_index(op.f("ix_polar_webhook_events_type"), table_name="polar_webhook_events")
    op.drop_index(op.f("ix_polar_webhook_events_webhook_id"), table_name="polar_webhook_events")
    op.drop_table("polar_webhook_events")

    op.drop_index(op.f("ix_polar_subscriptions_current_period_end"), table_name="polar_subscriptions")
    op.drop_index(op.f("ix_polar_subscriptions_status"), table_name="polar_subscriptions")
    op.drop_index(op.f("ix_polar_subscriptions_interval"), table_name="polar_subscriptions")
    op.drop_index(op.f("ix_polar_subscriptions_product_id"), table_name="polar_subscriptions")
    op.drop_index(op.f("ix_polar_subscriptions_user_id"), table_name="polar_subscriptions")
    op.drop_index(op.f("ix_polar_subscriptions_customer_id"), table_name="polar_subscriptions")
    op.drop_index(op.f("ix_polar_subscriptions_polar_subscription_id"), table_name="polar_subscriptions")
    op.drop_table("polar_subscriptions")

    op.drop_index(op.f("ix_polar_customers_user_id"), table_name="polar_customers")
    op.drop_index(op.f("ix_polar_customers_email"), table_name="polar_customers")
    op.drop_index(op.f("ix_polar_customers_polar_customer_id"), table_name="polar_customers")
    op.drop_table("polar_customers")

    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
