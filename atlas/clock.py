"""Time source for the core.

The core never reads the wall clock itself: callers pass a Clock (any
zero-argument callable returning an aware datetime) so lockout checks and
report timestamps are reproducible in tests.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]

# Lockout written by deactivation. Far enough out to never expire.
PERMANENT_LOCKOUT = datetime(9999, 12, 31, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite drops tzinfo) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
