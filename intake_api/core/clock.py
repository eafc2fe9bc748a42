"""
Time helpers.

All timestamps the pipeline writes are naive UTC so they compare the same way
on PostgreSQL and SQLite.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
