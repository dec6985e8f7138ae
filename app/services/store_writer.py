"""
Store Writer
============

Loads and persists reconciled subscription state.

Two writes, each in its own committed transaction:
1. the entitlement cache on ``profiles`` (gates access, written first)
2. the canonical record in ``user_subscriptions``

There is no transaction spanning both. A failure between them leaves the
cache ahead of the record; the outcome is reported as ``cache_only`` and
logged so it can be monitored and repaired by the next event.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import PersistenceError
from app.core.tiers import TierCatalog
from app.models.profile import Profile
from app.models.subscription import UserSubscription
from app.services.reconciler import (
    EntitlementState,
    ReconcileInput,
    ReconcileResult,
    SubscriptionRecordState,
)

logger = logging.getLogger(__name__)


class WriteOutcome(str, Enum):
    COMPLETE = "complete"
    CACHE_ONLY = "cache_only"
    RECORD_ONLY = "record_only"
    FAILED = "failed"


_RECORD_IMMUTABLE = {"id", "user_id", "created_at"}


def _profile_column(name: str):
    return Profile.__mapper__.columns[name]


class StoreWriter:
    """Reads current state for the reconciler and writes its result back."""

    def __init__(self, db: AsyncSession, timeout: Optional[float] = None):
        self.db = db
        self.timeout = timeout or settings.DATABASE_STATEMENT_TIMEOUT_SECONDS

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    async def load_state(self, user_id: uuid.UUID, catalog: TierCatalog) -> ReconcileInput:
        """Current cache + record for a user (defaults for a first-time user)."""
        result = await self.db.execute(select(Profile).where(Profile.id == user_id))
        profile = result.scalar_one_or_none()

        result = await self.db.execute(
            select(UserSubscription).where(UserSubscription.user_id == user_id)
        )
        subscription = result.scalar_one_or_none()

        if profile is None:
            entitlement = EntitlementState.initial(catalog)
        else:
            entitlement = EntitlementState(
                **{name: getattr(profile, name) for name in EntitlementState.model_fields}
            )

        record = None
        if subscription is not None:
            record = SubscriptionRecordState(
                **{
                    name: getattr(subscription, name)
                    for name in SubscriptionRecordState.model_fields
                }
            )

        return ReconcileInput(user_id=user_id, entitlement=entitlement, record=record)

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    async def _execute_and_commit(self, stmt) -> None:
        try:
            await asyncio.wait_for(self.db.execute(stmt), timeout=self.timeout)
            await asyncio.wait_for(self.db.commit(), timeout=self.timeout)
        except Exception:
            await self.db.rollback()
            raise

    async def write_cache(
        self,
        user_id: uuid.UUID,
        entitlement: EntitlementState,
        changed_fields: tuple[str, ...],
        now: datetime,
    ) -> None:
        """
        Upsert the profile's entitlement columns.

        New profiles get every field; existing ones only the changed fields,
        so concurrent credit consumption is not overwritten.
        """
        values: dict[Any, Any] = {
            _profile_column(name): value for name, value in entitlement.model_dump().items()
        }
        values[_profile_column("updated_at")] = now

        update = {_profile_column(name): values[_profile_column(name)] for name in changed_fields}
        update[_profile_column("updated_at")] = now

        table = Profile.__table__
        stmt = (
            pg_insert(table)
            .values({table.c.id: user_id, **values})
            .on_conflict_do_update(index_elements=[table.c.id], set_=update)
        )
        await self._execute_and_commit(stmt)

    async def write_record(self, record: SubscriptionRecordState) -> None:
        """Upsert the canonical subscription row keyed by user id."""
        values = record.model_dump()
        table = UserSubscription.__table__
        stmt = pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id],
            set_={k: v for k, v in values.items() if k not in _RECORD_IMMUTABLE},
        )
        await self._execute_and_commit(stmt)

    async def write(self, result: ReconcileResult, now: datetime) -> WriteOutcome:
        """
        Persist a reconcile result.

        Returns:
            WriteOutcome.COMPLETE when every required write landed.

        Raises:
            PersistenceError: carrying the partial outcome otherwise.
        """
        cache_ok = True
        try:
            await self.write_cache(result.user_id, result.entitlement, result.changed_fields, now)
        except Exception as e:
            cache_ok = False
            logger.error("Entitlement cache write failed for user=%s: %s", result.user_id, e)

        record_ok = True
        if result.record is not None:
            try:
                await self.write_record(result.record)
            except Exception as e:
                record_ok = False
                logger.error("Subscription record write failed for user=%s: %s", result.user_id, e)

        if cache_ok and record_ok:
            return WriteOutcome.COMPLETE

        if cache_ok:
            outcome = WriteOutcome.CACHE_ONLY
        elif record_ok and result.record is not None:
            outcome = WriteOutcome.RECORD_ONLY
        else:
            outcome = WriteOutcome.FAILED

        logger.error(
            "Partial subscription write for user=%s: outcome=%s cache_written=%s record_written=%s",
            result.user_id,
            outcome.value,
            cache_ok,
            record_ok and result.record is not None,
        )
        raise PersistenceError(outcome.value)
