"""
RevenueCat Service
==================

Integration with RevenueCat for native (App Store / Play Store) purchases.

Handles:
- Entitlement verification via the REST API (authoritative native tier)
- Webhook authorization (shared secret in the Authorization header)
- Mapping webhook events onto reconciler events
"""

import hmac
import logging
from datetime import datetime
from typing import Any, Optional
import uuid

import httpx

from app.config import settings
from app.core.errors import VerificationServiceError
from app.core.tiers import PAID_TIER_PRECEDENCE, TierCatalog
from app.core.trust_policy import (
    NoActiveEntitlement,
    Unverified,
    VerificationResult,
    Verified,
)
from app.models.subscription import PaymentProvider
from app.services.reconciler import (
    InvoiceFailed,
    NativeActivated,
    NativeCancelled,
    SubscriptionDeleted,
    SubscriptionEvent,
)
from app.utils.helpers import from_timestamp_ms, parse_date, utc_now

logger = logging.getLogger(__name__)


STORE_TO_PROVIDER: dict[str, PaymentProvider] = {
    "APP_STORE": PaymentProvider.APPLE,
    "MAC_APP_STORE": PaymentProvider.APPLE,
    "PLAY_STORE": PaymentProvider.GOOGLE,
}

ACTIVATION_EVENTS = {
    "INITIAL_PURCHASE",
    "RENEWAL",
    "UNCANCELLATION",
    "PRODUCT_CHANGE",
    "NON_RENEWING_PURCHASE",
}


class EntitlementVerificationClient:
    """Asks RevenueCat which entitlements a user currently holds."""

    def __init__(
        self,
        catalog: TierCatalog,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.catalog = catalog
        self.api_key = settings.REVENUECAT_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.REVENUECAT_API_URL).rstrip("/")
        self.timeout = timeout or settings.VERIFICATION_TIMEOUT_SECONDS
        self._http_client = http_client

    # -------------------------------------------------------------------------
    # RevenueCat REST API
    # -------------------------------------------------------------------------

    def _get_headers(self) -> dict[str, str]:
        """Common headers for RevenueCat API calls."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _get(self, path: str) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._http_client is not None:
            return await self._http_client.get(
                url, headers=self._get_headers(), timeout=self.timeout
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, headers=self._get_headers())

    async def get_entitlements(self, user_id: uuid.UUID) -> Optional[dict[str, Any]]:
        """
        Fetch ``subscriber.entitlements`` for a user.

        Returns:
            The entitlements object, or None if RevenueCat does not know
            the subscriber (404).

        Raises:
            VerificationServiceError: not configured, timeout, transport
                error, unexpected status or unparsable body.
        """
        if not self.api_key:
            raise VerificationServiceError("not_configured")

        try:
            response = await self._get(f"/subscribers/{user_id}")
        except httpx.TimeoutException:
            raise VerificationServiceError("timeout")
        except httpx.HTTPError as e:
            raise VerificationServiceError(f"transport_error: {e}")

        if response.status_code == 404:
            return None

        if response.status_code != 200:
            raise VerificationServiceError(
                f"http_{response.status_code}: {response.text[:200]}"
            )

        try:
            entitlements = response.json()["subscriber"].get("entitlements") or {}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise VerificationServiceError(f"invalid_response: {e}")
        if not isinstance(entitlements, dict):
            raise VerificationServiceError("invalid_response: entitlements is not an object")
        return entitlements

    async def verify(
        self,
        user_id: uuid.UUID,
        provider: PaymentProvider,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        """
        Fetch the user's active entitlements and pick the tier they grant.

        The RevenueCat app user id is our user id. Never raises: anything
        that prevents a definite answer comes back as ``Unverified``.
        """
        try:
            entitlements = await self.get_entitlements(user_id)
        except VerificationServiceError as e:
            logger.warning(
                "RevenueCat verification unavailable for user=%s (%s), applying fallback trust policy",
                user_id,
                e.reason,
            )
            return Unverified(reason=e.reason)

        if entitlements is None:
            logger.info("RevenueCat has no subscriber for user=%s", user_id)
            return NoActiveEntitlement()

        result = self.select_entitlement(entitlements, now or utc_now())
        logger.info(
            "RevenueCat verification: user=%s provider=%s result=%r",
            user_id,
            provider.value,
            result,
        )
        return result

    def select_entitlement(
        self,
        entitlements: dict[str, Any],
        now: datetime,
    ) -> VerificationResult:
        """Highest-precedence active entitlement, or NoActiveEntitlement."""
        active: dict[str, dict] = {}
        for entitlement_id, data in entitlements.items():
            data = data or {}
            expires_raw = data.get("expires_date")
            if expires_raw is None:
                active[entitlement_id] = data
                continue
            expires_at = parse_date(expires_raw)
            if expires_at is not None and expires_at > now:
                active[entitlement_id] = data

        tier = self.catalog.highest(active)
        if tier is None:
            return NoActiveEntitlement()

        chosen = active[tier]
        return Verified(
            tier=tier,
            expires_at=parse_date(chosen.get("expires_date")),
            entitlement_ids=tuple(sorted(active)),
            product_ref=chosen.get("product_identifier"),
        )


# -------------------------------------------------------------------------
# Webhook Authentication
# -------------------------------------------------------------------------

def verify_webhook_authorization(
    authorization_header: Optional[str],
    webhook_secret: Optional[str] = None,
) -> bool:
    """
    Verify RevenueCat webhook authorization header.

    RevenueCat sends the configured authorization value in the
    ``Authorization`` header of each webhook request, either bare or as
    ``Bearer <secret>``.
    """
    secret = settings.REVENUECAT_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
    if not secret:
        logger.warning("REVENUECAT_WEBHOOK_SECRET not configured")
        return False
    if not authorization_header:
        return False

    token = authorization_header.strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()

    return hmac.compare_digest(token.encode(), secret.encode())


# -------------------------------------------------------------------------
# Webhook Event Mapping
# -------------------------------------------------------------------------

def tier_from_event(event_data: dict[str, Any], catalog: TierCatalog) -> Optional[str]:
    """Tier from ``entitlement_ids`` by precedence, else from the product id."""
    entitlement_ids = event_data.get("entitlement_ids") or []
    if event_data.get("entitlement_id"):
        entitlement_ids = [*entitlement_ids, event_data["entitlement_id"]]

    tier = catalog.highest(entitlement_ids)
    if tier is not None:
        return tier

    product_id = (event_data.get("new_product_id") or event_data.get("product_id") or "").lower()
    for candidate in PAID_TIER_PRECEDENCE:
        if candidate in product_id and catalog.has_tier(candidate):
            return candidate
    return None


def map_webhook_event(
    event_data: dict[str, Any],
    catalog: TierCatalog,
) -> Optional[SubscriptionEvent]:
    """
    Map a RevenueCat webhook ``event`` object to a reconciler event.

    Returns None for events this service ignores (unknown type, unknown
    store, or an activation without a resolvable tier).
    """
    event_type = event_data.get("type")
    provider = STORE_TO_PROVIDER.get((event_data.get("store") or "").upper())
    if provider is None:
        logger.info(
            "RevenueCat %s from store %s ignored",
            event_type,
            event_data.get("store"),
        )
        return None

    expires_at = from_timestamp_ms(event_data.get("expiration_at_ms"))
    product_ref = event_data.get("new_product_id") or event_data.get("product_id")

    if event_type in ACTIVATION_EVENTS:
        tier = tier_from_event(event_data, catalog)
        if tier is None:
            logger.warning(
                "RevenueCat %s without a resolvable tier: entitlements=%s product=%s",
                event_type,
                event_data.get("entitlement_ids"),
                product_ref,
            )
            return None
        return NativeActivated(
            provider=provider,
            tier=tier,
            expires_at=expires_at,
            product_ref=product_ref,
            external_ref=event_data.get("original_transaction_id")
            or event_data.get("transaction_id"),
        )

    if event_type == "CANCELLATION":
        return NativeCancelled(provider=provider, expires_at=expires_at, product_ref=product_ref)

    if event_type == "BILLING_ISSUE":
        return InvoiceFailed(provider=provider)

    if event_type == "EXPIRATION":
        return SubscriptionDeleted(provider=provider)

    logger.info("RevenueCat %s (no-op)", event_type)
    return None


def candidate_user_ids(event_data: dict[str, Any]) -> list[str]:
    """App user ids to try, in order: app_user_id, original_app_user_id, aliases."""
    candidates = [event_data.get("app_user_id"), event_data.get("original_app_user_id")]
    candidates.extend(event_data.get("aliases") or [])

    seen: list[str] = []
    for candidate in candidates:
        if candidate and isinstance(candidate, str) and candidate not in seen:
            seen.append(candidate)
    return seen
