"""
Stripe Service Tests
====================

Tests for webhook signature verification, subscription parsing and the
subscription gateway.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import stripe

from app.core.errors import InvalidSignatureError, MissingSignatureError
from app.services.stripe_service import (
    StripeGateway,
    StripeGatewayError,
    subscription_snapshot,
    verify_stripe_event,
)
from tests.conftest import stripe_event, stripe_signature


SUBSCRIPTION = {
    "id": "sub_123",
    "object": "subscription",
    "customer": "cus_123",
    "status": "active",
    "cancel_at_period_end": True,
    "canceled_at": 1772400000,
    "cancel_at": 1774000000,
    "current_period_end": 1774000000,
    "metadata": {"supabase_user_id": "00000000-0000-0000-0000-000000000001"},
    "items": {"data": [{"price": {"id": "price_pro"}, "current_period_end": 1773000000}]},
}


class TestVerifyStripeEvent:
    """Signature verification of raw webhook bodies."""

    def test_valid_signature_returns_event(self):
        payload = stripe_event("customer.subscription.updated", SUBSCRIPTION, "evt_1")

        event = verify_stripe_event(payload, stripe_signature(payload))

        assert event["id"] == "evt_1"
        assert event["type"] == "customer.subscription.updated"
        assert event["data"]["object"]["id"] == "sub_123"

    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_signature(self, header):
        with pytest.raises(MissingSignatureError) as exc_info:
            verify_stripe_event(b"{}", header)

        assert exc_info.value.status_code == 401

    def test_wrong_secret(self):
        payload = stripe_event("invoice.payment_succeeded", {"id": "in_1"})

        with pytest.raises(InvalidSignatureError) as exc_info:
            verify_stripe_event(payload, stripe_signature(payload, secret="whsec_other"))

        assert exc_info.value.status_code == 400

    def test_tampered_payload(self):
        payload = stripe_event("invoice.payment_succeeded", {"id": "in_1"})
        header = stripe_signature(payload)

        with pytest.raises(InvalidSignatureError):
            verify_stripe_event(payload.replace(b"in_1", b"in_2"), header)

    def test_stale_timestamp(self):
        payload = stripe_event("invoice.payment_succeeded", {"id": "in_1"})

        with pytest.raises(InvalidSignatureError):
            verify_stripe_event(payload, stripe_signature(payload, timestamp=1000000000))

    def test_non_utf8_body(self):
        with pytest.raises(InvalidSignatureError):
            verify_stripe_event(b"\xff\xfe\x00garbage", "t=1,v1=deadbeef")

    def test_secret_not_configured(self):
        with pytest.raises(InvalidSignatureError):
            verify_stripe_event(b"{}", "t=1,v1=abc", webhook_secret="")

    def test_signed_non_event_body(self):
        payload = b'{"hello": "world"}'

        with pytest.raises(InvalidSignatureError):
            verify_stripe_event(payload, stripe_signature(payload))


class TestSubscriptionSnapshot:
    """Normalising subscription objects."""

    def test_fields(self):
        snapshot = subscription_snapshot(SUBSCRIPTION)

        assert snapshot.subscription_ref == "sub_123"
        assert snapshot.customer_ref == "cus_123"
        assert snapshot.price_ref == "price_pro"
        assert snapshot.status == "active"
        assert snapshot.cancel_at_period_end is True
        assert snapshot.canceled_at == datetime.fromtimestamp(1772400000, tz=timezone.utc)
        assert snapshot.cancel_at == datetime.fromtimestamp(1774000000, tz=timezone.utc)
        assert snapshot.metadata["supabase_user_id"].endswith("0001")

    def test_subscription_period_end_preferred(self):
        snapshot = subscription_snapshot(SUBSCRIPTION)

        assert snapshot.current_period_end == datetime.fromtimestamp(1774000000, tz=timezone.utc)

    def test_item_period_end_fallback(self):
        subscription = {k: v for k, v in SUBSCRIPTION.items() if k != "current_period_end"}

        snapshot = subscription_snapshot(subscription)

        assert snapshot.current_period_end == datetime.fromtimestamp(1773000000, tz=timezone.utc)

    def test_expanded_customer(self):
        snapshot = subscription_snapshot({**SUBSCRIPTION, "customer": {"id": "cus_999", "object": "customer"}})

        assert snapshot.customer_ref == "cus_999"

    def test_sparse_object(self):
        snapshot = subscription_snapshot({"id": "sub_1"})

        assert snapshot.price_ref is None
        assert snapshot.cancel_at_period_end is False
        assert snapshot.current_period_end is None
        assert snapshot.metadata == {}


class TestStripeGateway:
    """Subscription retrieval."""

    @pytest.mark.asyncio
    async def test_retrieve_returns_snapshot(self):
        gateway = StripeGateway(api_key="sk_test_x", timeout=1)

        with patch("app.services.stripe_service.stripe.Subscription.retrieve", return_value=SUBSCRIPTION) as retrieve:
            snapshot = await gateway.retrieve_subscription("sub_123")

        retrieve.assert_called_once_with("sub_123", api_key="sk_test_x")
        assert snapshot.price_ref == "price_pro"

    @pytest.mark.asyncio
    async def test_not_configured(self):
        with pytest.raises(StripeGatewayError):
            await StripeGateway(api_key="", timeout=1).retrieve_subscription("sub_123")

    @pytest.mark.asyncio
    async def test_api_error_wrapped(self):
        gateway = StripeGateway(api_key="sk_test_x", timeout=1)

        with patch(
            "app.services.stripe_service.stripe.Subscription.retrieve",
            side_effect=stripe.APIConnectionError("network down"),
        ):
            with pytest.raises(StripeGatewayError, match="network down"):
                await gateway.retrieve_subscription("sub_123")

    @pytest.mark.asyncio
    async def test_timeout_wrapped(self):
        gateway = StripeGateway(api_key="sk_test_x", timeout=0.01)

        async def _slow(*args, **kwargs):
            await asyncio.sleep(1)

        with patch("app.services.stripe_service.asyncio.to_thread", side_effect=_slow):
            with pytest.raises(StripeGatewayError, match="Timeout"):
                await gateway.retrieve_subscription("sub_123")
