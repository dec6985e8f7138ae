"""
Store Writer Tests
==================

Tests for loading state and the two-step persistence with partial-failure
outcomes.
"""

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from app.core.errors import PersistenceError
from app.models.subscription import PaymentProvider, SubscriptionStatus
from app.services.reconciler import (
    EntitlementState,
    ReconcileResult,
    SubscriptionRecordState,
)
from app.services.store_writer import StoreWriter, WriteOutcome
from tests.conftest import NOW, USER_ID


def _result(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def _compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


@pytest.fixture
def db() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def record() -> SubscriptionRecordState:
    return SubscriptionRecordState(
        user_id=USER_ID,
        payment_provider=PaymentProvider.WEB,
        status=SubscriptionStatus.ACTIVE,
        tier="pro",
        external_subscription_ref="sub_1",
        price_ref="price_pro",
        current_period_end=NOW + timedelta(days=30),
        updated_at=NOW,
    )


@pytest.fixture
def result(catalog, record) -> ReconcileResult:
    return ReconcileResult(
        user_id=USER_ID,
        entitlement=EntitlementState(tier="pro", monthly_credits_total=100, provider_status="active"),
        record=record,
        changed_fields=("tier", "monthly_credits_total", "provider_status"),
    )


class TestLoadState:
    """Reading the current cache and record."""

    @pytest.mark.asyncio
    async def test_first_time_user_gets_defaults(self, db, catalog):
        db.execute.side_effect = [_result(None), _result(None)]

        state = await StoreWriter(db).load_state(USER_ID, catalog)

        assert state.user_id == USER_ID
        assert state.entitlement == EntitlementState.initial(catalog)
        assert state.record is None

    @pytest.mark.asyncio
    async def test_existing_rows_are_mapped(self, db, catalog, record):
        profile = SimpleNamespace(
            **EntitlementState(tier="pro", monthly_credits_total=100, credits_used_this_month=7).model_dump()
        )
        subscription = SimpleNamespace(**record.model_dump(), id="row", created_at=NOW)
        db.execute.side_effect = [_result(profile), _result(subscription)]

        state = await StoreWriter(db).load_state(USER_ID, catalog)

        assert state.entitlement.tier == "pro"
        assert state.entitlement.credits_used_this_month == 7
        assert state.record == record


class TestWriteStatements:
    """Shape of the upsert statements."""

    @pytest.mark.asyncio
    async def test_cache_update_only_sets_changed_fields(self, db, result):
        await StoreWriter(db).write_cache(USER_ID, result.entitlement, result.changed_fields, NOW)

        sql = _compiled(db.execute.await_args.args[0])
        insert_part, update_part = sql.split("DO UPDATE SET")
        assert "INSERT INTO profiles" in insert_part
        assert "credits_used_this_month" in insert_part
        assert "subscription_tier" in update_part
        assert "stripe_subscription_status" in update_part
        assert "updated_date" in update_part
        assert "credits_used_this_month" not in update_part
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_record_upsert_keyed_by_user(self, db, record):
        await StoreWriter(db).write_record(record)

        sql = _compiled(db.execute.await_args.args[0])
        assert "INSERT INTO user_subscriptions" in sql
        assert "ON CONFLICT (user_id) DO UPDATE" in sql
        assert "created_at" not in sql.split("DO UPDATE SET")[1]


class TestWriteOutcomes:
    """Partial-failure reporting."""

    @pytest.mark.asyncio
    async def test_complete(self, db, result):
        outcome = await StoreWriter(db).write(result, NOW)

        assert outcome == WriteOutcome.COMPLETE
        assert db.execute.await_count == 2
        assert db.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_record_failure_is_cache_only(self, db, result):
        db.execute.side_effect = [None, RuntimeError("connection reset")]

        with pytest.raises(PersistenceError) as exc_info:
            await StoreWriter(db).write(result, NOW)

        assert exc_info.value.write_outcome == WriteOutcome.CACHE_ONLY.value
        db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cache_failure_is_record_only(self, db, result):
        db.execute.side_effect = [RuntimeError("deadlock"), None]

        with pytest.raises(PersistenceError) as exc_info:
            await StoreWriter(db).write(result, NOW)

        assert exc_info.value.write_outcome == WriteOutcome.RECORD_ONLY.value

    @pytest.mark.asyncio
    async def test_both_fail(self, db, result):
        db.execute.side_effect = RuntimeError("database down")

        with pytest.raises(PersistenceError) as exc_info:
            await StoreWriter(db).write(result, NOW)

        assert exc_info.value.write_outcome == WriteOutcome.FAILED.value
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_cache_failure_without_record_is_failed(self, db, result):
        db.execute.side_effect = RuntimeError("deadlock")
        cache_only_result = result.model_copy(update={"record": None})

        with pytest.raises(PersistenceError) as exc_info:
            await StoreWriter(db).write(cache_only_result, NOW)

        assert exc_info.value.write_outcome == WriteOutcome.FAILED.value
        assert db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_cache_only_result_complete(self, db, result):
        outcome = await StoreWriter(db).write(result.model_copy(update={"record": None}), NOW)

        assert outcome == WriteOutcome.COMPLETE
        assert db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_rolls_back(self, db, result):
        async def _hang(*args, **kwargs):
            await asyncio.sleep(1)

        db.execute.side_effect = _hang

        with pytest.raises(PersistenceError) as exc_info:
            await StoreWriter(db, timeout=0.01).write(result, NOW)

        assert exc_info.value.write_outcome == WriteOutcome.FAILED.value
        assert db.rollback.await_count == 2
