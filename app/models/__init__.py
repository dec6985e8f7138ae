"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.profile import Profile
from app.models.subscription import (
    PaymentProvider,
    SubscriptionStatus,
    UserSubscription,
)

__all__ = [
    # Profile
    "Profile",
    # Subscription
    "UserSubscription",
    "PaymentProvider",
    "SubscriptionStatus",
]
