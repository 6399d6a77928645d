"""Sync state carried through one run and the delta handed back to the caller."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime  # noqa: TC003 - used in dataclass fields
from typing import Any

from speed_reader.adapters.readwise.sync.cursor import EMPTY, Cursor, describe_cursor
from speed_reader.core.time_utils import to_iso
from speed_reader.domain.sync_location import SYNC_ORDER, SyncLocation


def _empty_cursors() -> dict[SyncLocation, Cursor]:
    return {location: EMPTY for location in SYNC_ORDER}


@dataclass(slots=True)
class SyncState:
    """Durable per-account sync state, decoded from storage."""

    user_id: str
    locations: dict[SyncLocation, Cursor] = field(default_factory=_empty_cursors)
    initial_backfill_done: bool = False
    backfilled_locations: frozenset[SyncLocation] = frozenset()
    in_progress: bool = False
    window_started_at: datetime | None = None
    window_request_count: int = 0
    next_allowed_at: datetime | None = None
    last_429_at: datetime | None = None
    last_sync_at: datetime | None = None
    lock_acquired_at: datetime | None = None

    def cursor(self, location: SyncLocation) -> Cursor:
        return self.locations.get(location, EMPTY)


@dataclass(slots=True)
class SyncStateDelta:
    """Fields a run changes; the caller persists them (plus lock bookkeeping)."""

    locations: dict[SyncLocation, Cursor]
    initial_backfill_done: bool
    backfilled_locations: frozenset[SyncLocation]
    window_started_at: datetime | None
    window_request_count: int
    next_allowed_at: datetime | None
    last_429_at: datetime | None

    def as_log_dict(self) -> dict[str, Any]:
        return {
            "cursors": {
                location.label: describe_cursor(cursor)
                for location, cursor in self.locations.items()
            },
            "initial_backfill_done": self.initial_backfill_done,
            "window_started_at": to_iso(self.window_started_at),
            "window_request_count": self.window_request_count,
            "next_allowed_at": to_iso(self.next_allowed_at),
            "last_429_at": to_iso(self.last_429_at),
        }
