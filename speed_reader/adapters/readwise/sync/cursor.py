"""Durable per-location resume positions.

In memory a cursor is one of three variants. Only at the storage boundary is
it flattened to the persisted string form:

- ``EmptyCursor``      -> ``None``
- ``CompletedCursor``  -> bare ISO-8601 watermark, e.g. ``2024-05-01T10:00:00+00:00``
- ``ResumableCursor``  -> ``page:<token>`` or ``page:<token>|updated:<watermark>``

A resumable value always carries the ``page:`` prefix, even for an empty
token, so it can never be mistaken for "never synced" or "completed".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime  # noqa: TC003 - used in dataclass fields

from speed_reader.adapters.readwise.sync.constants import (
    CURSOR_SEGMENT_SEPARATOR,
    PAGE_CURSOR_PREFIX,
    UPDATED_AFTER_PREFIX,
)
from speed_reader.core.time_utils import ensure_datetime, to_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EmptyCursor:
    """The location has never been synced."""

    kind = "empty"


@dataclass(frozen=True, slots=True)
class CompletedCursor:
    """A full pass finished; later passes only need documents updated after ``watermark``."""

    watermark: datetime
    kind = "completed"


@dataclass(frozen=True, slots=True)
class ResumableCursor:
    """A pull stopped mid-stream and resumes from ``page_token``."""

    page_token: str
    watermark: datetime | None = None
    kind = "resumable"


Cursor = EmptyCursor | CompletedCursor | ResumableCursor

EMPTY = EmptyCursor()


@dataclass(frozen=True, slots=True)
class CursorState:
    """Decoded view of a raw cursor string."""

    page_token: str | None = None
    watermark: datetime | None = None
    is_page_cursor: bool = False


def format_page_cursor(page_token: str, watermark: datetime | None = None) -> str:
    """Encode a resumable position; the result always carries the page prefix."""
    encoded = f"{PAGE_CURSOR_PREFIX}{page_token}"
    if watermark is None:
        return encoded
    return f"{encoded}{CURSOR_SEGMENT_SEPARATOR}{UPDATED_AFTER_PREFIX}{to_iso(watermark)}"


def parse_cursor(raw: str | None) -> CursorState:
    """Decode a persisted cursor string.

    Values without the page prefix are read as a bare watermark (the legacy
    completed form); whether that is trustworthy depends on the sync mode.
    """
    if not raw:
        return CursorState()

    if not raw.startswith(PAGE_CURSOR_PREFIX):
        return CursorState(watermark=ensure_datetime(raw), is_page_cursor=False)

    head, *segments = raw.split(CURSOR_SEGMENT_SEPARATOR)
    page_token = head[len(PAGE_CURSOR_PREFIX) :]
    watermark: datetime | None = None
    for segment in segments:
        if segment.startswith(UPDATED_AFTER_PREFIX):
            watermark = ensure_datetime(segment[len(UPDATED_AFTER_PREFIX) :])

    return CursorState(page_token=page_token, watermark=watermark, is_page_cursor=True)


def is_completed(raw: str | None) -> bool:
    if not raw or raw.startswith(PAGE_CURSOR_PREFIX):
        return False
    return ensure_datetime(raw) is not None


def decode_cursor(raw: str | None) -> Cursor:
    """Turn a persisted string into its cursor variant."""
    if not raw:
        return EMPTY

    state = parse_cursor(raw)
    if state.is_page_cursor:
        return ResumableCursor(page_token=state.page_token or "", watermark=state.watermark)
    if state.watermark is not None:
        return CompletedCursor(watermark=state.watermark)

    logger.warning("sync_cursor_unreadable", extra={"cursor": raw[:40]})
    return EMPTY


def encode_cursor(cursor: Cursor) -> str | None:
    """Flatten a cursor variant into its persisted string."""
    if isinstance(cursor, ResumableCursor):
        return format_page_cursor(cursor.page_token, cursor.watermark)
    if isinstance(cursor, CompletedCursor):
        return to_iso(cursor.watermark)
    return None


def describe_cursor(cursor: Cursor) -> dict[str, str | None]:
    """Log/status-friendly summary of a cursor without the opaque token body."""
    watermark = getattr(cursor, "watermark", None)
    return {"kind": cursor.kind, "watermark": to_iso(watermark)}
