"""
Stripe Service
==============

Web checkout integration.

Handles:
- Webhook signature verification (``Stripe-Signature`` header)
- Subscription retrieval for checkout events
- Normalising Stripe subscription objects into ``SubscriptionSnapshot``
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Mapping, Optional

import stripe
from pydantic import BaseModel, Field

from app.config import settings
from app.core.errors import InvalidSignatureError, MissingSignatureError
from app.utils.helpers import from_timestamp

logger = logging.getLogger(__name__)


class StripeGatewayError(Exception):
    """Stripe API call failed or timed out."""


class SubscriptionSnapshot(BaseModel):
    """The fields of a Stripe subscription the reconciler cares about."""

    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    price_ref: Optional[str] = None
    status: Optional[str] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# -------------------------------------------------------------------------
# Webhook Verification
# -------------------------------------------------------------------------

def verify_stripe_event(
    payload: bytes,
    signature: Optional[str],
    webhook_secret: Optional[str] = None,
) -> dict[str, Any]:
    """
    Verify a Stripe webhook and return the parsed event.

    Raises:
        MissingSignatureError: no ``Stripe-Signature`` header (401).
        InvalidSignatureError: bad signature or unparsable payload (400).
    """
    if not signature:
        logger.warning("Stripe webhook without signature header")
        raise MissingSignatureError()

    secret = settings.STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise InvalidSignatureError("Webhook secret not configured")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            secret,
            tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("Invalid Stripe signature: %s", e)
        raise InvalidSignatureError()
    except UnicodeDecodeError:
        logger.warning("Stripe webhook body is not UTF-8")
        raise InvalidSignatureError()

    try:
        event = json.loads(payload)
    except ValueError as e:
        logger.warning("Unparsable Stripe webhook payload: %s", e)
        raise InvalidSignatureError("Invalid webhook payload")

    if not isinstance(event, dict) or "type" not in event:
        raise InvalidSignatureError("Invalid webhook payload")
    return event


# -------------------------------------------------------------------------
# Subscription Objects
# -------------------------------------------------------------------------

def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _ref(value: Any) -> Optional[str]:
    """Stripe sends either an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def subscription_snapshot(subscription: Mapping[str, Any]) -> SubscriptionSnapshot:
    """Normalise a Stripe subscription object (webhook payload or API result)."""
    item = _first_item(subscription)
    price = item.get("price") or {}

    # Newer API versions moved the billing period onto the subscription item.
    period_end = subscription.get("current_period_end") or item.get("current_period_end")

    return SubscriptionSnapshot(
        subscription_ref=subscription.get("id"),
        customer_ref=_ref(subscription.get("customer")),
        price_ref=price.get("id"),
        status=subscription.get("status"),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        canceled_at=from_timestamp(subscription.get("canceled_at")),
        cancel_at=from_timestamp(subscription.get("cancel_at")),
        current_period_end=from_timestamp(period_end),
        metadata=dict(subscription.get("metadata") or {}),
    )


class StripeGateway:
    """Outbound Stripe API calls, each bounded by a timeout."""

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = settings.STRIPE_SECRET_KEY if api_key is None else api_key
        self.timeout = timeout or settings.STRIPE_API_TIMEOUT_SECONDS

    async def retrieve_subscription(self, subscription_ref: str) -> SubscriptionSnapshot:
        """
        Fetch a subscription by id.

        Raises:
            StripeGatewayError: not configured, timed out or API error.
        """
        if not self.api_key:
            raise StripeGatewayError("STRIPE_SECRET_KEY not configured")

        try:
            subscription = await asyncio.wait_for(
                asyncio.to_thread(
                    stripe.Subscription.retrieve,
                    subscription_ref,
                    api_key=self.api_key,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Stripe subscription retrieve timed out: %s", subscription_ref)
            raise StripeGatewayError(f"Timeout retrieving {subscription_ref}")
        except stripe.StripeError as e:
            logger.error("Stripe subscription retrieve failed: %s: %s", subscription_ref, e)
            raise StripeGatewayError(str(e))

        if not isinstance(subscription, Mapping):
            # StripeObject renders itself as JSON
            subscription = json.loads(str(subscription))
        return subscription_snapshot(subscription)
