"""
Processed Event Ledger
======================

Remembers recently processed webhook event IDs so redelivered events are
acknowledged without being applied twice.

Each provider event ID is claimed with ``SET NX EX`` before processing and
released again if processing fails, so the provider's retry can reprocess
it. Entries expire after ``WEBHOOK_EVENT_TTL_SECONDS``.
"""

import logging

from app.config import settings
from app.services.cache import get_redis

logger = logging.getLogger(__name__)

_KEY_PREFIX = "webhook:event:"


class EventLedger:
    """Bounded-TTL set of processed event IDs, namespaced per provider."""

    def __init__(self, provider: str, ttl_seconds: int | None = None):
        self.provider = provider
        self.ttl_seconds = ttl_seconds or settings.WEBHOOK_EVENT_TTL_SECONDS

    def _key(self, event_id: str) -> str:
        return f"{_KEY_PREFIX}{self.provider}:{event_id}"

    async def claim(self, event_id: str) -> bool:
        """
        Atomically claim an event for processing.

        Returns False if the event was already claimed. Redis failures
        degrade open (the event is processed) and are logged.
        """
        try:
            client = await get_redis()
            claimed = await client.set(self._key(event_id), "1", nx=True, ex=self.ttl_seconds)
            return bool(claimed)
        except Exception as exc:
            logger.warning(
                "Event ledger unavailable, processing %s event %s without dedup: %s",
                self.provider,
                event_id,
                exc,
            )
            return True

    async def release(self, event_id: str) -> None:
        """Drop a claim so an upstream retry can reprocess the event."""
        try:
            client = await get_redis()
            await client.delete(self._key(event_id))
        except Exception as exc:
            logger.warning(
                "Failed to release %s event %s claim: %s",
                self.provider,
                event_id,
                exc,
            )
