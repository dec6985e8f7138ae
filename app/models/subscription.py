"""
Subscription Models
===================

SQLAlchemy model for the canonical per-user subscription record shared by
the web (Stripe) and native (Apple / Google via RevenueCat) providers.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    String,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.profile import Profile


class PaymentProvider(str, Enum):
    """Where the subscription was purchased."""
    WEB = "web"
    APPLE = "apple"
    GOOGLE = "google"


class SubscriptionStatus(str, Enum):
    """Canonical subscription status values."""
    ACTIVE = "active"
    PENDING_CANCEL = "pending_cancel"
    EXPIRED = "expired"
    PAST_DUE = "past_due"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class UserSubscription(Base, TimestampMixin):
    """
    Canonical subscription record.

    Exactly one row per user; every provider upserts the same row keyed by
    ``user_id`` (last writer wins).
    """

    __tablename__ = "user_subscriptions"

    # Primary Key
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Subscription details
    payment_provider: Mapped[PaymentProvider] = mapped_column(
        SQLEnum(PaymentProvider, name="payment_provider", values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus, name="subscription_status", values_callable=_enum_values),
        nullable=False,
    )
    tier: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="free",
    )

    # Provider references
    external_subscription_ref: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    price_ref: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Period dates
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    profile: Mapped["Profile"] = relationship(
        "Profile",
        back_populates="subscription",
    )

    # Indexes
    __table_args__ = (
        Index("idx_user_subscriptions_provider", "payment_provider"),
        Index("idx_user_subscriptions_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(user_id={self.user_id}, provider={self.payment_provider}, "
            f"tier={self.tier}, status={self.status})>"
        )
