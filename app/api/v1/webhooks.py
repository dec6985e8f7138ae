"""
Webhooks API Endpoints
======================

Handles webhooks from the payment providers.

- ``POST /webhooks/stripe``      web checkout lifecycle (Stripe)
- ``POST /webhooks/revenuecat``  native in-app purchase lifecycle (RevenueCat)

Authentication:
    Stripe signs every delivery (``Stripe-Signature``); RevenueCat sends
    the configured token in the ``Authorization`` header.

Idempotency:
    Each provider event has a unique ``id``. It is claimed in Redis (with
    TTL) before processing and released again if processing fails, so the
    provider's retry is processed while duplicates are acknowledged.

Retries:
    Only failures that a retry can fix return 5xx (unknown price, Stripe
    lookup failure, nothing persisted). Events for users that cannot be
    resolved are logged and acknowledged.
"""

import json
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Request, status
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import (
    AppException,
    AuthenticationError,
    ErrorCodes,
    PersistenceError,
    UnmappedTierError,
    UserResolutionError,
    ValidationError,
)
from app.dependencies import (
    Catalog,
    DBSession,
    Gateway,
    get_revenuecat_ledger,
    get_stripe_ledger,
)
from app.schemas.subscription import RevenueCatWebhookPayload, WebhookAck
from app.services.event_ledger import EventLedger
from app.services.revenuecat import verify_webhook_authorization
from app.services.store_writer import WriteOutcome
from app.services.stripe_service import StripeGatewayError, verify_stripe_event
from app.services.webhook_router import RevenueCatWebhookRouter, StripeWebhookRouter

logger = logging.getLogger(__name__)

router = APIRouter()


def _ack(duplicate: bool = False) -> dict:
    return WebhookAck(duplicate=duplicate or None).model_dump(exclude_none=True)


async def _release(ledger: EventLedger, event_id: Optional[str]) -> None:
    if event_id:
        await ledger.release(event_id)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: DBSession,
    catalog: Catalog,
    gateway: Gateway,
    ledger: Annotated[EventLedger, Depends(get_stripe_ledger)],
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
):
    """
    Handle Stripe webhook events.

    Responses:
    - 200 ``{"received": true}`` handled or intentionally ignored
    - 200 ``{"received": true, "duplicate": true}`` already processed
    - 400 invalid signature, 401 missing signature
    - 500 retryable (unknown price, Stripe unavailable, nothing persisted)
    """
    payload = await request.body()
    event = verify_stripe_event(payload, stripe_signature)

    event_id = event.get("id")
    event_type = event.get("type")
    request.state.webhook_event_type = event_type
    request.state.webhook_event_id = event_id
    logger.info("Stripe webhook received: type=%s event_id=%s", event_type, event_id)

    if event_id and not await ledger.claim(event_id):
        logger.info("Duplicate Stripe event %s, skipping", event_id)
        return _ack(duplicate=True)

    stripe_router = StripeWebhookRouter(db, catalog, gateway)
    try:
        result = await stripe_router.dispatch(event)

    except UserResolutionError as e:
        # Accepted loss: acknowledging avoids an endless retry loop.
        logger.error(
            "Stripe %s %s dropped, user not resolved: %s (customer=%s)",
            event_type,
            event_id,
            e,
            e.customer_ref,
        )
        return _ack()

    except UnmappedTierError as e:
        logger.error(
            "Stripe %s %s references unmapped price %s, known prices: %s",
            event_type,
            event_id,
            e.price_ref,
            e.known_price_refs,
        )
        await _release(ledger, event_id)
        raise

    except StripeGatewayError as e:
        logger.error("Stripe %s %s: subscription lookup failed: %s", event_type, event_id, e)
        await _release(ledger, event_id)
        raise AppException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=ErrorCodes.INTERNAL_ERROR,
            message="Payment provider unavailable",
            retryable=True,
        )

    except PersistenceError as e:
        if e.write_outcome == WriteOutcome.CACHE_ONLY.value:
            logger.error(
                "Stripe %s %s acknowledged with partial write (entitlement cache only)",
                event_type,
                event_id,
            )
            return _ack()
        await _release(ledger, event_id)
        raise

    except Exception:
        logger.exception("Stripe webhook processing error: type=%s event_id=%s", event_type, event_id)
        return _ack()

    if result is None:
        logger.info("Stripe webhook ignored: type=%s event_id=%s", event_type, event_id)
    else:
        request.state.user_id = result.user_id
        logger.info(
            "Stripe webhook processed: type=%s user=%s event_id=%s",
            event_type,
            result.user_id,
            event_id,
        )
    return _ack()


@router.post("/revenuecat")
async def revenuecat_webhook(
    request: Request,
    db: DBSession,
    catalog: Catalog,
    ledger: Annotated[EventLedger, Depends(get_revenuecat_ledger)],
    authorization: str = Header(default="", alias="Authorization"),
):
    """
    Handle RevenueCat webhook events.

    RevenueCat must be configured to send events to this endpoint with an
    Authorization header matching ``REVENUECAT_WEBHOOK_SECRET``.

    Events handled:
    - INITIAL_PURCHASE / RENEWAL / UNCANCELLATION / PRODUCT_CHANGE /
      NON_RENEWING_PURCHASE (activate tier)
    - CANCELLATION (pending cancel)
    - BILLING_ISSUE (past due)
    - EXPIRATION (downgrade to free)
    - anything else (acknowledged, no-op)
    """
    # ── Verify authorization ──────────────────────────────────────────────
    if not verify_webhook_authorization(authorization):
        logger.warning("Unauthorized RevenueCat webhook attempt")
        raise AuthenticationError(
            code=ErrorCodes.WEBHOOK_UNAUTHORIZED,
            message="Invalid webhook authorization",
        )

    # ── Parse payload ─────────────────────────────────────────────────────
    try:
        body = await request.body()
        payload = RevenueCatWebhookPayload.model_validate(json.loads(body.decode("utf-8")))
    except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError) as e:
        logger.error("Invalid RevenueCat webhook payload: %s", e)
        raise ValidationError("Invalid webhook payload")

    event = payload.event
    request.state.webhook_event_type = event.type
    request.state.webhook_event_id = event.id
    logger.info(
        "RevenueCat webhook received: type=%s user=%s event_id=%s",
        event.type,
        event.app_user_id,
        event.id,
    )

    # ── Idempotency check ─────────────────────────────────────────────────
    if event.id and not await ledger.claim(event.id):
        logger.info("Duplicate RevenueCat event %s, skipping", event.id)
        return _ack(duplicate=True)

    # ── Process event ─────────────────────────────────────────────────────
    revenuecat_router = RevenueCatWebhookRouter(db, catalog)
    try:
        result = await revenuecat_router.dispatch(event.model_dump())

    except UserResolutionError as e:
        logger.error("RevenueCat %s %s dropped, user not resolved: %s", event.type, event.id, e)
        return _ack()

    except PersistenceError as e:
        if e.write_outcome == WriteOutcome.CACHE_ONLY.value:
            logger.error(
                "RevenueCat %s %s acknowledged with partial write (entitlement cache only)",
                event.type,
                event.id,
            )
            return _ack()
        await _release(ledger, event.id)
        raise

    except Exception:
        logger.exception("RevenueCat webhook processing error: type=%s event_id=%s", event.type, event.id)
        return _ack()

    if result is None:
        logger.info("RevenueCat webhook ignored: type=%s event_id=%s", event.type, event.id)
    else:
        request.state.user_id = result.user_id
        logger.info(
            "RevenueCat webhook processed: type=%s user=%s event_id=%s",
            event.type,
            result.user_id,
            event.id,
        )
    return _ack()
