"""
Helper Functions
================

Common utility functions used across the application.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def parse_date(date_str: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 date string to an aware datetime.

    Naive values are taken as UTC. Returns None for anything unparsable.
    """
    if not isinstance(date_str, str) or not date_str.strip():
        return None
    try:
        parsed = datetime.fromisoformat(date_str.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_timestamp(seconds: Any) -> Optional[datetime]:
    """Unix seconds (as sent by Stripe) to an aware datetime."""
    if seconds is None:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def from_timestamp_ms(millis: Any) -> Optional[datetime]:
    """Unix milliseconds (as sent by RevenueCat) to an aware datetime."""
    if millis is None:
        return None
    return datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)
