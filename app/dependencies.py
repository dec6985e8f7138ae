"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from typing import Annotated
import uuid

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuthenticationError, ErrorCodes
from app.core.security import user_id_from_token
from app.core.tiers import TierCatalog, get_tier_catalog
from app.db.session import get_db
from app.services.event_ledger import EventLedger
from app.services.revenuecat import EntitlementVerificationClient
from app.services.stripe_service import StripeGateway

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Process-wide tier table + price map
Catalog = Annotated[TierCatalog, Depends(get_tier_catalog)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)


async def get_current_user_id(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> uuid.UUID:
    """
    Get the authenticated user's id from the bearer token.

    Raises 401 if not authenticated or token is invalid.
    """
    if credentials is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_NOT_AUTHENTICATED,
            message="Not authenticated",
        )

    user_id = user_id_from_token(credentials.credentials)
    if user_id is None:
        logger.info("Rejected bearer token")
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid or expired token",
        )

    request.state.user_id = user_id
    return user_id


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()


def get_verification_client(catalog: Catalog) -> EntitlementVerificationClient:
    return EntitlementVerificationClient(catalog)


def get_stripe_ledger() -> EventLedger:
    return EventLedger("stripe")


def get_revenuecat_ledger() -> EventLedger:
    return EventLedger("revenuecat")


# Type aliases for route signatures
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
Gateway = Annotated[StripeGateway, Depends(get_stripe_gateway)]
Verifier = Annotated[EntitlementVerificationClient, Depends(get_verification_client)]
