"""
Subscription API Endpoints
==========================

Handles native purchase sync, subscription status and the tier table.
"""

import logging

from fastapi import APIRouter

from app.core.trust_policy import ClientClaim
from app.dependencies import Catalog, CurrentUserId, DBSession, Verifier
from app.models.subscription import PaymentProvider, SubscriptionStatus
from app.schemas.subscription import (
    NativeSyncRequest,
    NativeSyncResponse,
    SubscriptionStatusResponse,
    TierInfo,
    TierLimitsResponse,
    TiersResponse,
)
from app.services.reconciler import PENDING_CANCEL_REASON
from app.services.store_writer import StoreWriter
from app.services.subscription_service import NativeSyncService

logger = logging.getLogger(__name__)

router = APIRouter()

# Tiers reported as "premium" to clients
PREMIUM_TIERS = {"pro", "premium"}

_LIVE_STATUSES = {
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PENDING_CANCEL,
    SubscriptionStatus.PAST_DUE,
}


@router.post("/sync-native", response_model=NativeSyncResponse)
async def sync_native_subscription(
    request: NativeSyncRequest,
    user_id: CurrentUserId,
    db: DBSession,
    catalog: Catalog,
    verifier: Verifier,
):
    """
    Sync a native (App Store / Play Store) purchase.

    Called by the mobile app after a purchase or restore. The granted tier
    comes from RevenueCat when it answers; otherwise the client's claim is
    accepted only up to the lowest paid tier.

    Errors:
    - 400 invalid provider / body
    - 401 not authenticated
    - 404 verification found no active subscription
    - 500 the grant could not be stored
    """
    service = NativeSyncService(db, catalog, verifier)
    sync = await service.sync(
        user_id,
        PaymentProvider(request.provider),
        ClientClaim(tier=request.tier, expiration_date=request.expiration_date),
        restored=request.restored,
    )

    return NativeSyncResponse(
        message="Subscription restored" if request.restored else "Subscription synced",
        tier=sync.decision.tier,
        verified=sync.decision.verified,
        expires_at=sync.decision.expires_at,
    )


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    user_id: CurrentUserId,
    db: DBSession,
    catalog: Catalog,
):
    """
    Get the user's unified subscription status.

    Read from the canonical record when present, else from the profile's
    entitlement cache.
    """
    state = await StoreWriter(db).load_state(user_id, catalog)
    entitlement = state.entitlement
    record = state.record

    if record is not None:
        tier = record.tier
        provider = record.payment_provider.value
        status_value = record.status.value
        has_subscription = record.status in _LIVE_STATUSES and catalog.is_paid(tier)
        expires_at = record.current_period_end
        cancelled_at = record.cancelled_at
        pending_cancel = record.status == SubscriptionStatus.PENDING_CANCEL
    else:
        tier = entitlement.tier
        provider = PaymentProvider.WEB.value if entitlement.provider_subscription_ref else None
        status_value = entitlement.provider_status
        has_subscription = catalog.is_paid(tier)
        expires_at = entitlement.subscription_end_date
        cancelled_at = None
        pending_cancel = entitlement.cancel_reason == PENDING_CANCEL_REASON

    limits = None
    if catalog.has_tier(tier):
        limits = TierLimitsResponse(**catalog.limits(tier).model_dump())

    return SubscriptionStatusResponse(
        has_subscription=has_subscription,
        provider=provider,
        status=status_value,
        tier=tier,
        is_premium=tier in PREMIUM_TIERS,
        expires_at=expires_at,
        cancelled_at=cancelled_at,
        pending_cancel=pending_cancel,
        monthly_credits_total=entitlement.monthly_credits_total,
        credits_used_this_month=entitlement.credits_used_this_month,
        credits_reset_date=entitlement.credits_reset_date,
        limits=limits,
    )


@router.get("/tiers", response_model=TiersResponse)
async def get_tiers(catalog: Catalog):
    """
    Get all subscription tiers with their credits and limits.

    Public endpoint - no authentication required.
    """
    return TiersResponse(tiers=[TierInfo(**row) for row in catalog.as_dict()])
