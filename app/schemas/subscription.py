"""
Subscription Schemas
====================

Pydantic schemas for the webhook and subscription endpoints.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ─── Webhooks ────────────────────────────────────────────────────────────────


class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook senders."""

    received: bool = True
    duplicate: Optional[bool] = None


class RevenueCatWebhookEvent(BaseModel):
    """
    The ``event`` object inside a RevenueCat webhook body:
    ``{ "api_version": "1.0", "event": { ... } }``

    Only the fields used for reconciliation are declared; the rest are kept.
    """

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, description="Unique event ID for idempotency")
    type: str
    app_user_id: Optional[str] = None
    original_app_user_id: Optional[str] = None
    aliases: list[str] = Field(default_factory=list)
    product_id: Optional[str] = None
    new_product_id: Optional[str] = None
    entitlement_id: Optional[str] = None
    entitlement_ids: Optional[list[str]] = None
    store: Optional[str] = None
    environment: Optional[str] = None
    purchased_at_ms: Optional[int] = None
    expiration_at_ms: Optional[int] = None
    transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None


class RevenueCatWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    api_version: Optional[str] = None
    event: RevenueCatWebhookEvent


# ─── Native Sync ─────────────────────────────────────────────────────────────


class NativeSyncRequest(BaseModel):
    """Sent by the mobile app after a purchase or restore."""

    model_config = ConfigDict(populate_by_name=True)

    provider: Literal["apple", "google"]
    expiration_date: Optional[str] = Field(default=None, alias="expirationDate")
    restored: bool = False
    tier: Optional[str] = None


class NativeSyncResponse(BaseModel):
    success: bool = True
    message: str
    tier: str
    verified: bool
    expires_at: Optional[datetime] = None


# ─── Status & Tiers ──────────────────────────────────────────────────────────


class TierLimitsResponse(BaseModel):
    monthly_credits: int
    max_shopping_lists: int
    max_total_items: int
    max_tasks: int
    max_custom_recipes: int
    has_ads: bool


class TierInfo(TierLimitsResponse):
    tier: str


class TiersResponse(BaseModel):
    success: bool = True
    tiers: list[TierInfo]


class SubscriptionStatusResponse(BaseModel):
    """Unified subscription view across web and native providers."""

    has_subscription: bool
    provider: Optional[str] = None
    status: Optional[str] = None
    tier: str
    is_premium: bool
    expires_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    pending_cancel: bool = False
    monthly_credits_total: int
    credits_used_this_month: int
    credits_reset_date: Optional[datetime] = None
    limits: Optional[TierLimitsResponse] = None
