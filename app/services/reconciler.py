"""
Subscription State Reconciler
=============================

Pure state machine computing the new entitlement cache and canonical
subscription record from the prior state plus one provider event.

Nothing in this module performs I/O. Callers load the current state,
call ``reconcile`` and hand the result to the store writer.

Events:
- CheckoutCompleted     (web checkout finished)
- SubscriptionUpdated   (web subscription changed / scheduled to cancel / reactivated)
- SubscriptionDeleted   (subscription ended, any provider)
- InvoicePaid           (web renewal payment)
- InvoiceFailed         (payment failure, any provider)
- NativeActivated       (verified or trust-policy-granted in-app purchase)
- NativeCancelled       (in-app subscription will not renew)

Ordering: events are applied in arrival order. An older event processed
after a newer one overwrites it.
"""

from datetime import datetime
from typing import Literal, Optional, Union
import uuid

from pydantic import BaseModel, ConfigDict

from app.core.errors import UnmappedTierError
from app.core.tiers import FREE_TIER, TierCatalog
from app.models.subscription import PaymentProvider, SubscriptionStatus

PENDING_CANCEL_REASON = "pending_cancel"

# Stripe subscription statuses that keep the canonical record "past_due".
_WEB_PAST_DUE_STATUSES = {"past_due", "unpaid"}

DEFAULT_PROVIDER_PRECEDENCE: tuple[PaymentProvider, ...] = (
    PaymentProvider.WEB,
    PaymentProvider.APPLE,
    PaymentProvider.GOOGLE,
)


# =============================================================================
# State
# =============================================================================

class EntitlementState(BaseModel):
    """Read-hot entitlement fields cached on the user's profile."""

    model_config = ConfigDict(frozen=True)

    tier: str = FREE_TIER
    monthly_credits_total: int = 0
    credits_used_this_month: int = 0
    credits_reset_date: Optional[datetime] = None
    provider_customer_ref: Optional[str] = None
    provider_subscription_ref: Optional[str] = None
    provider_status: Optional[str] = None
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    last_payment_date: Optional[datetime] = None

    @classmethod
    def initial(cls, catalog: TierCatalog) -> "EntitlementState":
        """State of a user who has never subscribed."""
        return cls(tier=FREE_TIER, monthly_credits_total=catalog.monthly_credits(FREE_TIER))


class SubscriptionRecordState(BaseModel):
    """The single canonical subscription row for a user."""

    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID
    payment_provider: PaymentProvider
    status: SubscriptionStatus
    tier: str
    external_subscription_ref: Optional[str] = None
    price_ref: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime


class ReconcileInput(BaseModel):
    """Everything the reconciler knows about a user before the event."""

    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID
    entitlement: EntitlementState
    record: Optional[SubscriptionRecordState] = None


class ReconcileResult(BaseModel):
    """New state to persist. ``record`` is None when the event leaves it untouched."""

    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID
    entitlement: EntitlementState
    record: Optional[SubscriptionRecordState] = None
    changed_fields: tuple[str, ...] = ()
    is_replay: bool = False


# =============================================================================
# Events
# =============================================================================

class CheckoutCompleted(BaseModel):
    kind: Literal["checkout_completed"] = "checkout_completed"
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    price_ref: Optional[str] = None
    provider_status: str = "active"
    current_period_end: Optional[datetime] = None


class SubscriptionUpdated(BaseModel):
    kind: Literal["subscription_updated"] = "subscription_updated"
    subscription_ref: Optional[str] = None
    price_ref: Optional[str] = None
    status: str
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


class SubscriptionDeleted(BaseModel):
    kind: Literal["subscription_deleted"] = "subscription_deleted"
    provider: PaymentProvider = PaymentProvider.WEB
    subscription_ref: Optional[str] = None


class InvoicePaid(BaseModel):
    kind: Literal["invoice_paid"] = "invoice_paid"
    subscription_ref: Optional[str] = None


class InvoiceFailed(BaseModel):
    kind: Literal["invoice_failed"] = "invoice_failed"
    provider: PaymentProvider = PaymentProvider.WEB
    subscription_ref: Optional[str] = None


class NativeActivated(BaseModel):
    kind: Literal["native_activated"] = "native_activated"
    provider: PaymentProvider
    tier: str
    expires_at: Optional[datetime] = None
    product_ref: Optional[str] = None
    external_ref: Optional[str] = None


class NativeCancelled(BaseModel):
    kind: Literal["native_cancelled"] = "native_cancelled"
    provider: PaymentProvider
    expires_at: Optional[datetime] = None
    product_ref: Optional[str] = None


SubscriptionEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaid,
    InvoiceFailed,
    NativeActivated,
    NativeCancelled,
]


# =============================================================================
# Helpers
# =============================================================================

def resolve_web_tier(price_ref: Optional[str], catalog: TierCatalog) -> str:
    """
    Strict price -> tier lookup for web events.

    Raises UnmappedTierError for unknown prices; there is no default tier.
    """
    tier = catalog.tier_for_price(price_ref)
    if tier is None:
        raise UnmappedTierError(price_ref, catalog.known_price_refs())
    return tier


def merge_subscription_state(
    existing: Optional[SubscriptionRecordState],
    incoming: SubscriptionRecordState,
    provider_precedence: tuple[PaymentProvider, ...] = DEFAULT_PROVIDER_PRECEDENCE,
) -> SubscriptionRecordState:
    """
    Combine the stored canonical record with the one computed from an event.

    Current policy is last-writer-wins: the incoming record replaces the
    existing one whatever its provider. ``provider_precedence`` is the hook
    for a cross-provider policy (e.g. keep an active native subscription
    when a web downgrade arrives) and is not consulted yet.

    An incoming record equal to the stored one apart from ``updated_at``
    returns the stored record unchanged.
    """
    if existing is None:
        return incoming

    if existing.model_copy(update={"updated_at": incoming.updated_at}) == incoming:
        return existing

    return incoming


def _changed_fields(before: EntitlementState, after: EntitlementState) -> tuple[str, ...]:
    return tuple(
        name
        for name in EntitlementState.model_fields
        if getattr(before, name) != getattr(after, name)
    )


def _record(
    current: ReconcileInput,
    now: datetime,
    **values,
) -> SubscriptionRecordState:
    """Build an incoming record, starting from the stored one when present."""
    if current.record is not None:
        base = current.record.model_dump()
    else:
        base = {"user_id": current.user_id}
    base.update(values)
    base["updated_at"] = now
    return SubscriptionRecordState(**base)


def _with_credits(catalog: TierCatalog, tier: str, **values) -> dict:
    values["tier"] = tier
    values["monthly_credits_total"] = catalog.monthly_credits(tier)
    return values


# =============================================================================
# Transitions
# =============================================================================

def _checkout_completed(current, event: CheckoutCompleted, catalog, now):
    tier = resolve_web_tier(event.price_ref, catalog)
    ent = current.entitlement

    is_replay = (
        event.subscription_ref is not None
        and ent.provider_subscription_ref == event.subscription_ref
        and ent.tier == tier
    )

    update = _with_credits(
        catalog,
        tier,
        provider_customer_ref=event.customer_ref or ent.provider_customer_ref,
        provider_subscription_ref=event.subscription_ref,
        provider_status=event.provider_status,
        cancel_reason=None,
        subscription_end_date=None,
    )
    if not is_replay:
        update.update(
            credits_used_this_month=0,
            credits_reset_date=now,
            subscription_start_date=now,
            last_payment_date=now,
        )

    record = _record(
        current,
        now,
        payment_provider=PaymentProvider.WEB,
        status=SubscriptionStatus.ACTIVE,
        tier=tier,
        external_subscription_ref=event.subscription_ref,
        price_ref=event.price_ref,
        current_period_end=event.current_period_end,
        cancelled_at=None,
    )
    return ent.model_copy(update=update), record, is_replay


def _subscription_updated(current, event: SubscriptionUpdated, catalog, now):
    ent = current.entitlement

    if event.status == "canceled":
        update = _with_credits(
            catalog,
            FREE_TIER,
            provider_subscription_ref=None,
            provider_status="canceled",
            subscription_end_date=now,
        )
        record = _record(
            current,
            now,
            payment_provider=PaymentProvider.WEB,
            status=SubscriptionStatus.EXPIRED,
            tier=FREE_TIER,
            external_subscription_ref=None,
            cancelled_at=event.canceled_at or now,
        )
        return ent.model_copy(update=update), record

    if event.cancel_at_period_end and event.canceled_at is not None:
        ends_at = event.cancel_at or event.current_period_end
        update = {
            "provider_status": "active",
            "cancel_reason": PENDING_CANCEL_REASON,
            "subscription_end_date": ends_at,
        }
        record = _record(
            current,
            now,
            payment_provider=PaymentProvider.WEB,
            status=SubscriptionStatus.PENDING_CANCEL,
            tier=ent.tier,
            external_subscription_ref=event.subscription_ref,
            price_ref=event.price_ref,
            current_period_end=ends_at,
            cancelled_at=event.canceled_at,
        )
        return ent.model_copy(update=update), record

    tier = resolve_web_tier(event.price_ref, catalog)

    if not event.cancel_at_period_end and event.status == "active":
        update = _with_credits(
            catalog,
            tier,
            provider_status=event.status,
            cancel_reason=None,
            subscription_end_date=None,
        )
        status = SubscriptionStatus.ACTIVE
        cancelled_at = None
    else:
        update = _with_credits(catalog, tier, provider_status=event.status)
        status = (
            SubscriptionStatus.PAST_DUE
            if event.status in _WEB_PAST_DUE_STATUSES
            else SubscriptionStatus.ACTIVE
        )
        cancelled_at = current.record.cancelled_at if current.record else None

    record = _record(
        current,
        now,
        payment_provider=PaymentProvider.WEB,
        status=status,
        tier=tier,
        external_subscription_ref=event.subscription_ref,
        price_ref=event.price_ref,
        current_period_end=event.current_period_end,
        cancelled_at=cancelled_at,
    )
    return ent.model_copy(update=update), record


def _subscription_deleted(current, event: SubscriptionDeleted, catalog, now):
    ent = current.entitlement
    update = _with_credits(catalog, FREE_TIER, subscription_end_date=now)
    if event.provider == PaymentProvider.WEB:
        update.update(provider_subscription_ref=None, provider_status="canceled")

    previous_cancel = current.record.cancelled_at if current.record else None
    record = _record(
        current,
        now,
        payment_provider=event.provider,
        status=SubscriptionStatus.EXPIRED,
        tier=FREE_TIER,
        external_subscription_ref=None,
        price_ref=None,
        current_period_end=None,
        cancelled_at=previous_cancel or now,
    )
    return ent.model_copy(update=update), record


def _invoice_paid(current, event: InvoicePaid, catalog, now):
    return current.entitlement.model_copy(update={"last_payment_date": now}), None


def _invoice_failed(current, event: InvoiceFailed, catalog, now):
    ent = current.entitlement
    if event.provider == PaymentProvider.WEB:
        ent = ent.model_copy(update={"provider_status": "past_due"})

    record = None
    if current.record is not None:
        record = _record(current, now, status=SubscriptionStatus.PAST_DUE)
    return ent, record


def _native_activated(current, event: NativeActivated, catalog, now):
    if not catalog.is_paid(event.tier):
        raise ValueError(f"Native activation requires a paid tier, got {event.tier!r}")

    ent = current.entitlement
    update = _with_credits(
        catalog,
        event.tier,
        cancel_reason=None,
        subscription_end_date=None,
    )
    # Only an upgrade (or first paid tier) is a new activation. Re-syncing
    # the same tier is a renewal and a lower tier keeps the month's usage.
    if not catalog.is_paid(ent.tier) or catalog.rank(event.tier) > catalog.rank(ent.tier):
        update.update(
            credits_used_this_month=0,
            credits_reset_date=now,
            subscription_start_date=now,
        )

    record = _record(
        current,
        now,
        payment_provider=event.provider,
        status=SubscriptionStatus.ACTIVE,
        tier=event.tier,
        external_subscription_ref=event.external_ref,
        price_ref=event.product_ref,
        current_period_end=event.expires_at,
        cancelled_at=None,
    )
    return ent.model_copy(update=update), record


def _native_cancelled(current, event: NativeCancelled, catalog, now):
    ent = current.entitlement
    update = {
        "cancel_reason": PENDING_CANCEL_REASON,
        "subscription_end_date": event.expires_at,
    }
    values = {
        "payment_provider": event.provider,
        "status": SubscriptionStatus.PENDING_CANCEL,
        "tier": ent.tier,
        "current_period_end": event.expires_at,
        "cancelled_at": now,
    }
    if event.product_ref:
        values["price_ref"] = event.product_ref
    return ent.model_copy(update=update), _record(current, now, **values)


_TRANSITIONS = {
    "subscription_updated": _subscription_updated,
    "subscription_deleted": _subscription_deleted,
    "invoice_paid": _invoice_paid,
    "invoice_failed": _invoice_failed,
    "native_activated": _native_activated,
    "native_cancelled": _native_cancelled,
}


def reconcile(
    current: ReconcileInput,
    event: SubscriptionEvent,
    catalog: TierCatalog,
    now: datetime,
) -> ReconcileResult:
    """
    Apply one event to the current state.

    Raises:
        UnmappedTierError: a web event needs a tier for an unknown price.
    """
    is_replay = False
    if event.kind == "checkout_completed":
        entitlement, record, is_replay = _checkout_completed(current, event, catalog, now)
    else:
        entitlement, record = _TRANSITIONS[event.kind](current, event, catalog, now)

    if record is not None:
        record = merge_subscription_state(current.record, record)

    return ReconcileResult(
        user_id=current.user_id,
        entitlement=entitlement,
        record=record,
        changed_fields=_changed_fields(current.entitlement, entitlement),
        is_replay=is_replay,
    )
