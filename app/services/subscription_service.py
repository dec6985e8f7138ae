"""
Subscription Service
====================

Drives one provider event through load -> reconcile -> write, and the
native sync flow (verify -> trust policy -> reconcile -> write).
"""

import logging
from datetime import datetime
from typing import Optional
import uuid

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.tiers import TierCatalog
from app.core.trust_policy import ClientClaim, TrustDecision, apply_trust_policy
from app.models.subscription import PaymentProvider
from app.services.reconciler import (
    NativeActivated,
    ReconcileInput,
    ReconcileResult,
    SubscriptionEvent,
    reconcile,
)
from app.services.revenuecat import EntitlementVerificationClient
from app.services.store_writer import StoreWriter
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Applies reconciler events for a single user."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: TierCatalog,
        writer: Optional[StoreWriter] = None,
    ):
        self.db = db
        self.catalog = catalog
        self.writer = writer or StoreWriter(db)

    async def apply_event(
        self,
        user_id: uuid.UUID,
        event: SubscriptionEvent,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Load the user's state, reconcile the event and persist the result.

        Raises:
            UnmappedTierError: before any write, for an unknown web price.
            PersistenceError: one or both writes failed.
        """
        now = now or utc_now()
        current = await self.writer.load_state(user_id, self.catalog)
        result = reconcile(current, event, self.catalog, now)

        if result.is_replay:
            logger.info("Replayed %s for user=%s, credits left untouched", event.kind, user_id)

        await self.writer.write(result, now)

        logger.info(
            "Applied %s for user=%s: tier %s -> %s changed=%s",
            event.kind,
            user_id,
            current.entitlement.tier,
            result.entitlement.tier,
            ",".join(result.changed_fields) or "-",
        )
        return result


class NativeSyncResult(BaseModel):
    decision: TrustDecision
    result: ReconcileResult


class NativeSyncService:
    """Post-purchase sync from the mobile app."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: TierCatalog,
        verifier: EntitlementVerificationClient,
        subscriptions: Optional[SubscriptionService] = None,
    ):
        self.catalog = catalog
        self.verifier = verifier
        self.subscriptions = subscriptions or SubscriptionService(db, catalog)

    async def sync(
        self,
        user_id: uuid.UUID,
        provider: PaymentProvider,
        claim: ClientClaim,
        restored: bool = False,
        now: Optional[datetime] = None,
    ) -> NativeSyncResult:
        """
        Verify the user's native purchase and grant the resulting tier.

        Raises:
            NoActiveSubscriptionError: verification found nothing active.
            PersistenceError: the grant could not be stored.
        """
        now = now or utc_now()
        verification = await self.verifier.verify(user_id, provider, now=now)
        decision = apply_trust_policy(
            verification,
            claim,
            self.catalog,
            now,
            period_days=settings.NATIVE_FALLBACK_PERIOD_DAYS,
        )

        if not decision.verified:
            current = await self.subscriptions.writer.load_state(user_id, self.catalog)
            kept = self._keep_cached_tier(current, decision)
            if kept is not None:
                return kept

        logger.info(
            "Native sync: user=%s provider=%s restored=%s tier=%s verified=%s",
            user_id,
            provider.value,
            restored,
            decision.tier,
            decision.verified,
        )

        event = NativeActivated(
            provider=provider,
            tier=decision.tier,
            expires_at=decision.expires_at,
            product_ref=decision.product_ref,
        )
        result = await self.subscriptions.apply_event(user_id, event, now=now)
        return NativeSyncResult(decision=decision, result=result)

    def _keep_cached_tier(
        self,
        current: ReconcileInput,
        decision: TrustDecision,
    ) -> Optional[NativeSyncResult]:
        """
        Leave a cached paid tier alone when an unverified grant would not raise it.

        The fallback ceiling limits what an unverified claim can add; it never
        takes away access held through another provider or an earlier
        verified sync.
        """
        cached = current.entitlement
        if not self.catalog.is_paid(cached.tier):
            return None
        if self.catalog.rank(cached.tier) < self.catalog.rank(decision.tier):
            return None

        logger.warning(
            "Unverified native sync for user=%s left cached tier %s in place (grant was %s)",
            current.user_id,
            cached.tier,
            decision.tier,
        )
        expires_at = (
            current.record.current_period_end
            if current.record is not None
            else cached.subscription_end_date
        )
        return NativeSyncResult(
            decision=TrustDecision(tier=cached.tier, expires_at=expires_at, verified=False),
            result=ReconcileResult(
                user_id=current.user_id,
                entitlement=cached,
                record=current.record,
            ),
        )
