"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import from_timestamp, from_timestamp_ms, parse_date, utc_now

__all__ = ["utc_now", "parse_date", "from_timestamp", "from_timestamp_ms"]
