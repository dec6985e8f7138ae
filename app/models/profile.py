"""
Profile Model
=============

SQLAlchemy model for the read-hot entitlement fields on a user's profile.

The profile row belongs to the account system; this service only reads it
for identity resolution and writes the entitlement columns below.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base

if TYPE_CHECKING:
    from app.models.subscription import UserSubscription


class Profile(Base):
    """
    Entitlement cache.

    Attribute names follow the domain vocabulary; column names follow the
    existing ``profiles`` table.
    """

    __tablename__ = "profiles"

    # Primary Key (same id as the auth user)
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    email: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Tier & credits
    tier: Mapped[str] = mapped_column(
        "subscription_tier",
        String(50),
        nullable=False,
        default="free",
    )
    monthly_credits_total: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=15,
    )
    credits_used_this_month: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    credits_reset_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Web provider references
    provider_customer_ref: Mapped[Optional[str]] = mapped_column(
        "stripe_customer_id",
        String(255),
        nullable=True,
        index=True,
    )
    provider_subscription_ref: Mapped[Optional[str]] = mapped_column(
        "stripe_subscription_id",
        String(255),
        nullable=True,
    )
    provider_status: Mapped[Optional[str]] = mapped_column(
        "stripe_subscription_status",
        String(50),
        nullable=True,
    )

    # Subscription lifecycle
    subscription_start_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    subscription_end_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancel_reason: Mapped[Optional[str]] = mapped_column(
        "subscription_cancel_reason",
        String(100),
        nullable=True,
    )
    last_payment_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    updated_at: Mapped[datetime] = mapped_column(
        "updated_date",
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    subscription: Mapped[Optional["UserSubscription"]] = relationship(
        "UserSubscription",
        back_populates="profile",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, tier={self.tier})>"
