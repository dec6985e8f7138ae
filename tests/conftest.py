"""
Shared Test Fixtures
====================

Environment, tier catalog, in-memory store writer and an in-process API
client with the database, ledger and provider dependencies overridden.
"""

import os

# Must be set before app.config is imported anywhere.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-that-is-long-enough-1234")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_PRICE_ADFREE", "price_adfree")
os.environ.setdefault("STRIPE_PRICE_PRO", "price_pro")
os.environ.setdefault("STRIPE_PRICE_PREMIUM", "price_premium")
os.environ.setdefault("REVENUECAT_WEBHOOK_SECRET", "rc_webhook_secret")
os.environ.setdefault("REVENUECAT_API_KEY", "")

import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from app.config import settings
from app.core.tiers import TierCatalog, _load_tier_table, get_tier_catalog
from app.db.session import get_db
from app.dependencies import get_revenuecat_ledger, get_stripe_ledger
from app.main import app
from app.services.reconciler import (
    EntitlementState,
    ReconcileInput,
    ReconcileResult,
    SubscriptionRecordState,
)
from app.services.store_writer import WriteOutcome


USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

PRICE_MAP = {
    "price_adfree": "adfree",
    "price_pro": "pro",
    "price_premium": "premium",
}


# ---------------------------------------------------------------------------
# Catalog & state
# ---------------------------------------------------------------------------

@pytest.fixture
def catalog() -> TierCatalog:
    return TierCatalog(
        tiers=_load_tier_table(None),
        price_to_tier=PRICE_MAP,
        fallback_ceiling="adfree",
    )


@pytest.fixture
def free_state(catalog) -> ReconcileInput:
    """A user who has never subscribed."""
    return ReconcileInput(user_id=USER_ID, entitlement=EntitlementState.initial(catalog))


class InMemoryStoreWriter:
    """StoreWriter stand-in keeping state in memory."""

    def __init__(self, catalog: TierCatalog):
        self.catalog = catalog
        self.entitlements: dict[uuid.UUID, EntitlementState] = {}
        self.records: dict[uuid.UUID, SubscriptionRecordState] = {}
        self.writes: list[ReconcileResult] = []

    async def load_state(self, user_id: uuid.UUID, catalog: TierCatalog) -> ReconcileInput:
        return ReconcileInput(
            user_id=user_id,
            entitlement=self.entitlements.get(user_id, EntitlementState.initial(catalog)),
            record=self.records.get(user_id),
        )

    async def write(self, result: ReconcileResult, now: datetime) -> WriteOutcome:
        self.writes.append(result)
        self.entitlements[result.user_id] = result.entitlement
        if result.record is not None:
            self.records[result.user_id] = result.record
        return WriteOutcome.COMPLETE


@pytest.fixture
def memory_writer(catalog) -> InMemoryStoreWriter:
    return InMemoryStoreWriter(catalog)


# ---------------------------------------------------------------------------
# Signing helpers
# ---------------------------------------------------------------------------

def stripe_signature(payload: bytes, secret: Optional[str] = None, timestamp: Optional[int] = None) -> str:
    """Build a valid ``Stripe-Signature`` header for a payload."""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode("utf-8")


def bearer_token(user_id: uuid.UUID = USER_ID, **claims) -> str:
    payload = {
        "sub": str(user_id),
        "aud": settings.JWT_AUDIENCE,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        **claims,
    }
    return jwt.encode(payload, settings.SUPABASE_JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
def ledger() -> AsyncMock:
    mock = AsyncMock()
    mock.claim.return_value = True
    return mock


@pytest.fixture
def db_session() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def client(catalog, ledger, db_session):
    """In-process client with external dependencies overridden."""

    async def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_tier_catalog] = lambda: catalog
    app.dependency_overrides[get_stripe_ledger] = lambda: ledger
    app.dependency_overrides[get_revenuecat_ledger] = lambda: ledger

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
