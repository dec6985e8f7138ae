"""
User Identity Resolver
======================

Maps provider events to a canonical user id.

Web (Stripe) resolution order:
1. ``supabase_user_id`` carried in checkout / subscription metadata
2. profile lookup by Stripe customer id

Native (RevenueCat) resolution order:
app_user_id, original_app_user_id, then aliases - the first value that is
a UUID with an existing profile wins.
"""

import logging
from typing import Iterable, Mapping, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import UserResolutionError
from app.models.profile import Profile

logger = logging.getLogger(__name__)

USER_ID_METADATA_KEY = "supabase_user_id"


def _parse_uuid(value) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class UserIdentityResolver:
    """Resolves provider identifiers against the profile store."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_customer_ref(self, customer_ref: str) -> Optional[uuid.UUID]:
        stmt = select(Profile.id).where(Profile.provider_customer_ref == customer_ref).limit(1)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def profile_exists(self, user_id: uuid.UUID) -> bool:
        result = await self.db.execute(select(Profile.id).where(Profile.id == user_id))
        return result.scalar_one_or_none() is not None

    async def resolve_web_user(
        self,
        metadata_sources: Iterable[Optional[Mapping]],
        customer_ref: Optional[str],
    ) -> uuid.UUID:
        """
        Resolve the user for a Stripe event.

        Args:
            metadata_sources: Metadata dicts to check in order (e.g. the
                checkout session's, then the subscription's).
            customer_ref: Stripe customer id for the fallback lookup.

        Raises:
            UserResolutionError: neither path produced a user.
        """
        tried_keys: list[str] = []
        for metadata in metadata_sources:
            if not metadata:
                continue
            tried_keys.extend(metadata.keys())
            user_id = _parse_uuid(metadata.get(USER_ID_METADATA_KEY))
            if user_id is not None:
                return user_id
            if metadata.get(USER_ID_METADATA_KEY):
                logger.warning(
                    "Ignoring malformed %s in metadata: %r",
                    USER_ID_METADATA_KEY,
                    metadata.get(USER_ID_METADATA_KEY),
                )

        if customer_ref:
            user_id = await self.find_by_customer_ref(customer_ref)
            if user_id is not None:
                logger.info("Resolved user %s from customer %s", user_id, customer_ref)
                return user_id

        raise UserResolutionError(
            f"No user for metadata keys {sorted(set(tried_keys))} "
            f"or customer {customer_ref}",
            customer_ref=customer_ref,
        )

    async def resolve_app_user(self, candidates: Iterable[str]) -> uuid.UUID:
        """
        Resolve the user for a RevenueCat event from its app user ids.

        Raises:
            UserResolutionError: no candidate is a UUID with a profile.
        """
        tried: list[str] = []
        for candidate in candidates:
            tried.append(candidate)
            user_id = _parse_uuid(candidate)
            if user_id is None:
                continue
            if await self.profile_exists(user_id):
                return user_id

        raise UserResolutionError(f"No profile for app user ids {tried}")
