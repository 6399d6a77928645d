from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def ensure_datetime(value: Any) -> datetime | None:
    """Convert a value to an aware UTC datetime, or None when it cannot be parsed.

    SQLite returns offset-carrying datetime columns as strings, and remote
    timestamps arrive as ISO-8601 text with a ``Z`` suffix. Naive values are
    assumed to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
    if isinstance(value, str):
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.strip())
        except ValueError:
            logger.debug("ensure_datetime_parse_failed", extra={"value": repr(value)})
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=UTC)
        return dt
    logger.warning(
        "ensure_datetime_unexpected_type",
        extra={"type": type(value).__name__, "value": repr(value)},
    )
    return None


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def max_datetime(a: datetime | None, b: datetime | None) -> datetime | None:
    """Null-safe maximum: a missing value never wins, and is never treated as epoch."""
    if a is None:
        return b
    if b is None:
        return a
    return a if a > b else b


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Database representation: naive UTC, which peewee round-trips as a datetime."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value
