"""Utilities for working with RFC3339 timestamps and UTC datetimes."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

UTC = timezone.utc


def to_rfc3339_utc(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to RFC3339 in UTC with second precision."""

    if dt is None:
        return None
    dt = ensure_utc(dt)
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive values; every stored timestamp is UTC."""

    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def seconds_between(earlier: Optional[datetime], later: Optional[datetime]) -> Optional[float]:
    if earlier is None or later is None:
        return None
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds()


__all__ = [
    "UTC",
    "ensure_utc",
    "seconds_between",
    "to_rfc3339_utc",
    "utc_now",
]
