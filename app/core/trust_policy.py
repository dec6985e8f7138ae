"""
Native Purchase Trust Policy
============================

Decides what a native (App Store / Play Store) sync is allowed to grant.

Two stages:
1. The verification client asks RevenueCat and returns one of
   ``Verified``, ``NoActiveEntitlement`` or ``Unverified``.
2. ``apply_trust_policy`` turns that result plus the client's own claim
   into the final tier and expiration. It performs no I/O.

When verification is unavailable the client claim is honoured only up to
the catalog's fallback ceiling (the lowest paid tier) and only with a
bounded expiration.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from app.core.errors import NoActiveSubscriptionError
from app.core.tiers import TierCatalog
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_PERIOD_DAYS = 30


# =============================================================================
# Verification Outcomes
# =============================================================================

class Verified(BaseModel):
    """Server-confirmed active entitlement."""

    model_config = ConfigDict(frozen=True)

    tier: str
    expires_at: Optional[datetime] = None
    entitlement_ids: tuple[str, ...] = ()
    product_ref: Optional[str] = None


class NoActiveEntitlement(BaseModel):
    """The verification service answered: nothing active for this user."""

    model_config = ConfigDict(frozen=True)


class Unverified(BaseModel):
    """The verification service could not answer (timeout, error, no key)."""

    model_config = ConfigDict(frozen=True)

    reason: str


VerificationResult = Union[Verified, NoActiveEntitlement, Unverified]


# =============================================================================
# Policy
# =============================================================================

class ClientClaim(BaseModel):
    """What the mobile client says it bought. Never trusted on its own."""

    tier: Optional[str] = None
    expiration_date: Optional[str] = None


class TrustDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: str
    expires_at: Optional[datetime] = None
    verified: bool
    product_ref: Optional[str] = None


def clamp_claimed_tier(claimed: Optional[str], catalog: TierCatalog) -> str:
    """
    Clamp a client-claimed tier to the fallback ceiling.

    Paid claims at or below the ceiling are kept. Anything else (missing,
    unknown, free, or above the ceiling) becomes the ceiling tier.
    """
    ceiling = catalog.fallback_ceiling
    if (
        catalog.is_paid(claimed)
        and catalog.has_tier(claimed)
        and catalog.rank(claimed) <= catalog.rank(ceiling)
    ):
        return claimed
    return ceiling


def bounded_expiration(
    raw: Optional[str],
    now: datetime,
    period_days: int = DEFAULT_FALLBACK_PERIOD_DAYS,
) -> datetime:
    """
    Validate a client-supplied expiration.

    Accepted only if it parses, lies in the future and no further out than
    ``period_days``; otherwise ``now + period_days``.
    """
    default = now + timedelta(days=period_days)
    parsed = parse_date(raw)
    if parsed is None or parsed <= now or parsed > default:
        return default
    return parsed


def apply_trust_policy(
    result: VerificationResult,
    claim: ClientClaim,
    catalog: TierCatalog,
    now: datetime,
    period_days: int = DEFAULT_FALLBACK_PERIOD_DAYS,
) -> TrustDecision:
    """
    Turn a verification outcome and client claim into the tier to grant.

    Raises:
        NoActiveSubscriptionError: the verification service confirmed the
            user has nothing active.
    """
    if isinstance(result, Verified):
        if claim.tier and claim.tier != result.tier:
            logger.info(
                "Client claimed tier %s, verified tier %s wins",
                claim.tier,
                result.tier,
            )
        return TrustDecision(
            tier=result.tier,
            expires_at=result.expires_at,
            verified=True,
            product_ref=result.product_ref,
        )

    if isinstance(result, NoActiveEntitlement):
        raise NoActiveSubscriptionError()

    granted = clamp_claimed_tier(claim.tier, catalog)
    if granted != claim.tier:
        logger.warning(
            "Unverified native sync: claimed tier %s clamped to %s (%s)",
            claim.tier,
            granted,
            result.reason,
        )

    return TrustDecision(
        tier=granted,
        expires_at=bounded_expiration(claim.expiration_date, now, period_days),
        verified=False,
    )
