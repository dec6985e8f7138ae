"""Create profiles entitlement columns and user_subscriptions

Creates the ``profiles`` table (entitlement cache) if it does not exist
yet and the canonical ``user_subscriptions`` table with its enum types.

Revision ID: 3f9c2e7a1b40
Revises:
Create Date: 2026-10-17 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c2e7a1b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PROVIDER_VALUES = ("web", "apple", "google")
STATUS_VALUES = ("active", "pending_cancel", "expired", "past_due")


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. Entitlement cache
    # ------------------------------------------------------------------
    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("subscription_tier", sa.String(50), nullable=False, server_default="free"),
        sa.Column("monthly_credits_total", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("credits_used_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_reset_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("stripe_subscription_status", sa.String(50), nullable=True),
        sa.Column("subscription_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_cancel_reason", sa.String(100), nullable=True),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_date",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        if_not_exists=True,
    )
    op.create_index(
        "ix_profiles_stripe_customer_id",
        "profiles",
        ["stripe_customer_id"],
        if_not_exists=True,
    )

    # ------------------------------------------------------------------
    # 2. Enum types
    # ------------------------------------------------------------------
    provider_enum = postgresql.ENUM(*PROVIDER_VALUES, name="payment_provider")
    provider_enum.create(op.get_bind(), checkfirst=True)

    status_enum = postgresql.ENUM(*STATUS_VALUES, name="subscription_status")
    status_enum.create(op.get_bind(), checkfirst=True)

    # ------------------------------------------------------------------
    # 3. Canonical subscription record
    # ------------------------------------------------------------------
    op.create_table(
        "user_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "payment_provider",
            postgresql.ENUM(*PROVIDER_VALUES, name="payment_provider", create_type=False),
            nullable=False,
        ),
        sa.Column(
            "status",
            postgresql.ENUM(*STATUS_VALUES, name="subscription_status", create_type=False),
            nullable=False,
        ),
        sa.Column("tier", sa.String(50), nullable=False, server_default="free"),
        sa.Column("external_subscription_ref", sa.String(255), nullable=True),
        sa.Column("price_ref", sa.String(255), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"], unique=True
    )
    op.create_index("idx_user_subscriptions_provider", "user_subscriptions", ["payment_provider"])
    op.create_index("idx_user_subscriptions_status", "user_subscriptions", ["status"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_user_subscriptions_status", table_name="user_subscriptions")
    op.drop_index("idx_user_subscriptions_provider", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_user_id", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")

    sa.Enum(name="subscription_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="payment_provider").drop(op.get_bind(), checkfirst=True)

    # profiles belongs to the account system and is left in place
