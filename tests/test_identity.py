"""
Identity Resolver Tests
=======================

Tests for mapping provider events to canonical user ids.
"""

from unittest.mock import AsyncMock, MagicMock
import uuid

import pytest

from app.core.errors import UserResolutionError
from app.services.identity import UserIdentityResolver
from tests.conftest import USER_ID


def _result(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


@pytest.fixture
def db() -> AsyncMock:
    session = AsyncMock()
    session.execute.return_value = _result(None)
    return session


class TestResolveWebUser:
    """Stripe: metadata first, then customer lookup."""

    @pytest.mark.asyncio
    async def test_metadata_user_id(self, db):
        resolver = UserIdentityResolver(db)

        user_id = await resolver.resolve_web_user([{"supabase_user_id": str(USER_ID)}], "cus_1")

        assert user_id == USER_ID
        db.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_later_metadata_source_used(self, db):
        resolver = UserIdentityResolver(db)

        user_id = await resolver.resolve_web_user(
            [None, {"plan": "pro"}, {"supabase_user_id": str(USER_ID)}],
            None,
        )

        assert user_id == USER_ID

    @pytest.mark.asyncio
    async def test_customer_lookup_fallback(self, db):
        db.execute.return_value = _result(USER_ID)
        resolver = UserIdentityResolver(db)

        user_id = await resolver.resolve_web_user([{}], "cus_1")

        assert user_id == USER_ID
        db.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_malformed_metadata_falls_back(self, db):
        db.execute.return_value = _result(USER_ID)
        resolver = UserIdentityResolver(db)

        user_id = await resolver.resolve_web_user([{"supabase_user_id": "not-a-uuid"}], "cus_1")

        assert user_id == USER_ID

    @pytest.mark.asyncio
    async def test_unresolvable(self, db):
        resolver = UserIdentityResolver(db)

        with pytest.raises(UserResolutionError) as exc_info:
            await resolver.resolve_web_user([{"plan": "pro"}], "cus_unknown")

        assert exc_info.value.customer_ref == "cus_unknown"
        assert "plan" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_no_metadata_no_customer(self, db):
        resolver = UserIdentityResolver(db)

        with pytest.raises(UserResolutionError):
            await resolver.resolve_web_user([], None)

        db.execute.assert_not_called()


class TestResolveAppUser:
    """RevenueCat: first UUID candidate with a profile."""

    @pytest.mark.asyncio
    async def test_first_existing_profile_wins(self, db):
        other = uuid.uuid4()
        db.execute.side_effect = [_result(None), _result(USER_ID)]
        resolver = UserIdentityResolver(db)

        user_id = await resolver.resolve_app_user(
            ["$RCAnonymousID:abc", str(other), str(USER_ID)]
        )

        assert user_id == USER_ID
        assert db.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_non_uuid_candidates_skipped(self, db):
        resolver = UserIdentityResolver(db)

        with pytest.raises(UserResolutionError, match="RCAnonymousID"):
            await resolver.resolve_app_user(["$RCAnonymousID:abc"])

        db.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_uuid_without_profile(self, db):
        resolver = UserIdentityResolver(db)

        with pytest.raises(UserResolutionError):
            await resolver.resolve_app_user([str(USER_ID)])
