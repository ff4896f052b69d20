"""Timestamp helpers shared by adapters, the migrator and replication."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: Any) -> datetime | None:
    """
    Normalize a temporal value to an aware UTC datetime.

    Naive datetimes are assumed to be UTC (several drivers drop the
    offset on read). Dates become midnight UTC. ISO-8601 strings are
    parsed. Anything else yields None.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return ensure_utc(parsed)
    return None


def latest(*values: Any) -> datetime | None:
    """Greatest of the given temporal values, ignoring ones that do not parse."""
    normalized = [v for v in (ensure_utc(value) for value in values) if v is not None]
    return max(normalized) if normalized else None
