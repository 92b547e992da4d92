"""
core/timeutil.py -- UTC clock and timestamp encoding shared by every store.

Timestamps are persisted as ISO 8601 strings with a fixed microsecond
precision and explicit +00:00 offset. The fixed width keeps lexicographic
order identical to chronological order, so ORDER BY on a TEXT column is
correct without parsing.

Components take a `clock` callable (defaulting to utcnow) so tests can move
time forward deterministically for expiry and lockout windows.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Encode an aware datetime as a fixed-width UTC ISO string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Decode a stored timestamp. Naive values are assumed to be UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
