"""
Webhook Event Routers
=====================

Turn verified provider webhooks into reconciler events for a resolved user.

Stripe events handled:
- checkout.session.completed
- customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_succeeded
- invoice.payment_failed

RevenueCat events are mapped in ``app.services.revenuecat``.

Anything else is acknowledged and ignored (``dispatch`` returns None).
"""

import logging
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.tiers import TierCatalog
from app.services.identity import UserIdentityResolver
from app.services.reconciler import (
    CheckoutCompleted,
    InvoiceFailed,
    InvoicePaid,
    ReconcileResult,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from app.services.revenuecat import candidate_user_ids, map_webhook_event
from app.services.stripe_service import StripeGateway, subscription_snapshot
from app.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


def _invoice_subscription(invoice: Mapping[str, Any]) -> tuple[Optional[str], Optional[Mapping]]:
    """Subscription id and metadata from an invoice, across API versions."""
    details = invoice.get("subscription_details")
    parent = (invoice.get("parent") or {}).get("subscription_details")

    subscription = invoice.get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")
    if subscription is None and parent:
        subscription = parent.get("subscription")

    metadata = (details or {}).get("metadata") or (parent or {}).get("metadata")
    return subscription, metadata


class StripeWebhookRouter:
    """Dispatches verified Stripe events by type."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: TierCatalog,
        gateway: StripeGateway,
        subscriptions: Optional[SubscriptionService] = None,
        identity: Optional[UserIdentityResolver] = None,
    ):
        self.gateway = gateway
        self.subscriptions = subscriptions or SubscriptionService(db, catalog)
        self.identity = identity or UserIdentityResolver(db)
        self._handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
        }

    async def dispatch(self, event: Mapping[str, Any]) -> Optional[ReconcileResult]:
        """
        Apply one Stripe event.

        Returns:
            The reconcile result, or None if the event was ignored.

        Raises:
            UserResolutionError: no user for the event.
            UnmappedTierError: unknown price (retryable).
            StripeGatewayError: subscription lookup failed (retryable).
            PersistenceError: write failed.
        """
        event_type = event.get("type", "")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Stripe event %s (%s) ignored", event_type, event.get("id"))
            return None

        data = (event.get("data") or {}).get("object") or {}
        return await handler(data)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _checkout_completed(self, session: Mapping[str, Any]) -> Optional[ReconcileResult]:
        subscription_ref = session.get("subscription")
        if isinstance(subscription_ref, Mapping):
            subscription_ref = subscription_ref.get("id")
        if not subscription_ref:
            logger.info("Checkout session %s has no subscription, ignored", session.get("id"))
            return None

        snapshot = await self.gateway.retrieve_subscription(subscription_ref)
        customer_ref = session.get("customer") or snapshot.customer_ref
        user_id = await self.identity.resolve_web_user(
            [session.get("metadata"), snapshot.metadata],
            customer_ref,
        )

        event = CheckoutCompleted(
            customer_ref=customer_ref,
            subscription_ref=subscription_ref,
            price_ref=snapshot.price_ref,
            provider_status=snapshot.status or "active",
            current_period_end=snapshot.current_period_end,
        )
        return await self.subscriptions.apply_event(user_id, event)

    async def _subscription_updated(self, subscription: Mapping[str, Any]) -> ReconcileResult:
        snapshot = subscription_snapshot(subscription)
        user_id = await self.identity.resolve_web_user([snapshot.metadata], snapshot.customer_ref)

        event = SubscriptionUpdated(
            subscription_ref=snapshot.subscription_ref,
            price_ref=snapshot.price_ref,
            status=snapshot.status or "active",
            cancel_at_period_end=snapshot.cancel_at_period_end,
            canceled_at=snapshot.canceled_at,
            cancel_at=snapshot.cancel_at,
            current_period_end=snapshot.current_period_end,
        )
        return await self.subscriptions.apply_event(user_id, event)

    async def _subscription_deleted(self, subscription: Mapping[str, Any]) -> ReconcileResult:
        snapshot = subscription_snapshot(subscription)
        user_id = await self.identity.resolve_web_user([snapshot.metadata], snapshot.customer_ref)
        event = SubscriptionDeleted(subscription_ref=snapshot.subscription_ref)
        return await self.subscriptions.apply_event(user_id, event)

    async def _invoice_paid(self, invoice: Mapping[str, Any]) -> Optional[ReconcileResult]:
        subscription_ref, metadata = _invoice_subscription(invoice)
        if not subscription_ref:
            logger.info("Invoice %s is not for a subscription, ignored", invoice.get("id"))
            return None

        user_id = await self.identity.resolve_web_user([metadata], invoice.get("customer"))
        return await self.subscriptions.apply_event(
            user_id, InvoicePaid(subscription_ref=subscription_ref)
        )

    async def _invoice_failed(self, invoice: Mapping[str, Any]) -> Optional[ReconcileResult]:
        subscription_ref, metadata = _invoice_subscription(invoice)
        if not subscription_ref:
            logger.info("Invoice %s is not for a subscription, ignored", invoice.get("id"))
            return None

        user_id = await self.identity.resolve_web_user([metadata], invoice.get("customer"))
        return await self.subscriptions.apply_event(
            user_id, InvoiceFailed(subscription_ref=subscription_ref)
        )


class RevenueCatWebhookRouter:
    """Dispatches authenticated RevenueCat events."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: TierCatalog,
        subscriptions: Optional[SubscriptionService] = None,
        identity: Optional[UserIdentityResolver] = None,
    ):
        self.catalog = catalog
        self.subscriptions = subscriptions or SubscriptionService(db, catalog)
        self.identity = identity or UserIdentityResolver(db)

    async def dispatch(self, event_data: Mapping[str, Any]) -> Optional[ReconcileResult]:
        """
        Apply one RevenueCat ``event`` object.

        Raises:
            UserResolutionError: no candidate app user id maps to a profile.
            PersistenceError: write failed.
        """
        event = map_webhook_event(dict(event_data), self.catalog)
        if event is None:
            return None

        user_id = await self.identity.resolve_app_user(candidate_user_ids(dict(event_data)))
        return await self.subscriptions.apply_event(user_id, event)
