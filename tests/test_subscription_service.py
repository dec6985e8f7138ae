"""
Subscription Service Tests
==========================

Tests for the load -> reconcile -> write pipeline and the native sync flow.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.core.errors import NoActiveSubscriptionError, PersistenceError, UnmappedTierError
from app.core.trust_policy import ClientClaim, NoActiveEntitlement, Unverified, Verified
from app.models.subscription import PaymentProvider, SubscriptionStatus
from app.services.reconciler import (
    CheckoutCompleted,
    EntitlementState,
    InvoicePaid,
    SubscriptionRecordState,
)
from app.services.revenuecat import EntitlementVerificationClient
from app.services.store_writer import WriteOutcome
from app.services.subscription_service import NativeSyncService, SubscriptionService
from tests.conftest import NOW, USER_ID


@pytest.fixture
def service(db_session, catalog, memory_writer) -> SubscriptionService:
    return SubscriptionService(db_session, catalog, writer=memory_writer)


@pytest.fixture
def verifier() -> AsyncMock:
    return AsyncMock(spec=EntitlementVerificationClient)


@pytest.fixture
def native_sync(db_session, catalog, verifier, service) -> NativeSyncService:
    return NativeSyncService(db_session, catalog, verifier, subscriptions=service)


class TestApplyEvent:
    """SubscriptionService.apply_event"""

    @pytest.mark.asyncio
    async def test_writes_reconciled_state(self, service, memory_writer):
        event = CheckoutCompleted(customer_ref="cus_1", subscription_ref="sub_1", price_ref="price_premium")

        result = await service.apply_event(USER_ID, event, now=NOW)

        assert result.entitlement.tier == "premium"
        assert memory_writer.writes == [result]

    @pytest.mark.asyncio
    async def test_unmapped_price_writes_nothing(self, service, memory_writer):
        event = CheckoutCompleted(subscription_ref="sub_1", price_ref="price_unknown")

        with pytest.raises(UnmappedTierError):
            await service.apply_event(USER_ID, event, now=NOW)

        assert memory_writer.writes == []

    @pytest.mark.asyncio
    async def test_persistence_error_propagates(self, db_session, catalog, free_state):
        writer = AsyncMock()
        writer.load_state.return_value = free_state
        writer.write.side_effect = PersistenceError(WriteOutcome.CACHE_ONLY.value)
        service = SubscriptionService(db_session, catalog, writer=writer)

        with pytest.raises(PersistenceError) as exc_info:
            await service.apply_event(USER_ID, InvoicePaid(subscription_ref="sub_1"), now=NOW)

        assert exc_info.value.write_outcome == "cache_only"

    @pytest.mark.asyncio
    async def test_replay_leaves_credits(self, service, memory_writer):
        event = CheckoutCompleted(customer_ref="cus_1", subscription_ref="sub_1", price_ref="price_pro")
        await service.apply_event(USER_ID, event, now=NOW)
        memory_writer.entitlements[USER_ID] = memory_writer.entitlements[USER_ID].model_copy(
            update={"credits_used_this_month": 9}
        )

        result = await service.apply_event(USER_ID, event, now=NOW + timedelta(minutes=1))

        assert result.is_replay
        assert result.entitlement.credits_used_this_month == 9


class TestNativeSync:
    """NativeSyncService.sync"""

    @pytest.mark.asyncio
    async def test_verified_tier_granted(self, native_sync, verifier, memory_writer):
        expires = NOW + timedelta(days=30)
        verifier.verify.return_value = Verified(tier="premium", expires_at=expires, product_ref="premium_m")

        outcome = await native_sync.sync(USER_ID, PaymentProvider.APPLE, ClientClaim(tier="adfree"), now=NOW)

        verifier.verify.assert_awaited_once_with(USER_ID, PaymentProvider.APPLE, now=NOW)
        assert outcome.decision.verified is True
        assert outcome.result.entitlement.tier == "premium"
        record = memory_writer.records[USER_ID]
        assert record.payment_provider == PaymentProvider.APPLE
        assert record.current_period_end == expires
        assert record.price_ref == "premium_m"

    @pytest.mark.asyncio
    async def test_unverified_is_clamped(self, native_sync, verifier, memory_writer):
        verifier.verify.return_value = Unverified(reason="timeout")

        outcome = await native_sync.sync(
            USER_ID,
            PaymentProvider.GOOGLE,
            ClientClaim(tier="premium", expiration_date="2099-01-01T00:00:00Z"),
            now=NOW,
        )

        assert outcome.decision.verified is False
        assert outcome.result.entitlement.tier == "adfree"
        assert memory_writer.records[USER_ID].current_period_end == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_no_active_entitlement_writes_nothing(self, native_sync, verifier, memory_writer):
        verifier.verify.return_value = NoActiveEntitlement()

        with pytest.raises(NoActiveSubscriptionError):
            await native_sync.sync(USER_ID, PaymentProvider.APPLE, ClientClaim(tier="pro"), now=NOW)

        assert memory_writer.writes == []

    @pytest.mark.asyncio
    async def test_resync_same_tier_keeps_credits(self, native_sync, verifier, memory_writer):
        verifier.verify.return_value = Verified(tier="pro")
        await native_sync.sync(USER_ID, PaymentProvider.APPLE, ClientClaim(), now=NOW)
        memory_writer.entitlements[USER_ID] = memory_writer.entitlements[USER_ID].model_copy(
            update={"credits_used_this_month": 30}
        )

        outcome = await native_sync.sync(
            USER_ID, PaymentProvider.APPLE, ClientClaim(), restored=True, now=NOW + timedelta(days=1)
        )

        assert outcome.result.entitlement.credits_used_this_month == 30

    @pytest.mark.asyncio
    async def test_unverified_keeps_higher_cached_tier(self, native_sync, verifier, memory_writer, catalog):
        period_end = NOW + timedelta(days=12)
        memory_writer.entitlements[USER_ID] = EntitlementState(
            tier="premium",
            monthly_credits_total=catalog.monthly_credits("premium"),
            credits_used_this_month=200,
        )
        memory_writer.records[USER_ID] = SubscriptionRecordState(
            user_id=USER_ID,
            payment_provider=PaymentProvider.WEB,
            status=SubscriptionStatus.ACTIVE,
            tier="premium",
            current_period_end=period_end,
            updated_at=NOW - timedelta(days=3),
        )
        verifier.verify.return_value = Unverified(reason="not_configured")

        outcome = await native_sync.sync(USER_ID, PaymentProvider.APPLE, ClientClaim(), now=NOW)

        assert outcome.decision.tier == "premium"
        assert outcome.decision.verified is False
        assert outcome.decision.expires_at == period_end
        assert memory_writer.writes == []
        assert memory_writer.entitlements[USER_ID].credits_used_this_month == 200
        assert memory_writer.records[USER_ID].payment_provider == PaymentProvider.WEB

    @pytest.mark.asyncio
    async def test_unverified_same_tier_is_not_rewritten(self, native_sync, verifier, memory_writer, catalog):
        memory_writer.entitlements[USER_ID] = EntitlementState(
            tier="adfree",
            monthly_credits_total=catalog.monthly_credits("adfree"),
            credits_used_this_month=7,
        )
        verifier.verify.return_value = Unverified(reason="timeout")

        outcome = await native_sync.sync(USER_ID, PaymentProvider.GOOGLE, ClientClaim(tier="adfree"), now=NOW)

        assert outcome.decision.tier == "adfree"
        assert outcome.result.entitlement.credits_used_this_month == 7
        assert memory_writer.writes == []
