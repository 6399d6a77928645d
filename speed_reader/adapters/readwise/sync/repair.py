"""Heal cursors damaged by the old "raw timestamp on budget exhaustion" defect.

Earlier releases could persist a bare timestamp instead of a ``page:`` cursor
when the budget ran out mid-backfill. A bare timestamp reads as "completed",
so the location would silently skip the rest of its history. While the
initial backfill is still running, such cursors are reset so the location
restarts from the beginning.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping

from speed_reader.adapters.readwise.sync.cursor import EMPTY, CompletedCursor, Cursor
from speed_reader.domain.sync_location import SYNC_ORDER, SyncLocation

logger = logging.getLogger(__name__)


def find_corrupted_locations(
    cursors: Mapping[SyncLocation, Cursor],
    *,
    initial_backfill_done: bool,
    backfilled_locations: Collection[SyncLocation] = (),
) -> list[SyncLocation]:
    """Locations whose completed marker cannot be trusted.

    Nothing is corrupted once the initial backfill is done. During backfill a
    completed marker is only trusted for locations this engine recorded as
    finished in ``backfilled_locations``.
    """
    if initial_backfill_done:
        return []
    return [
        location
        for location in SYNC_ORDER
        if isinstance(cursors.get(location, EMPTY), CompletedCursor)
        and location not in backfilled_locations
    ]


def repair_corrupted_cursors(
    cursors: Mapping[SyncLocation, Cursor],
    *,
    initial_backfill_done: bool,
    backfilled_locations: Collection[SyncLocation] = (),
    correlation_id: str | None = None,
) -> dict[SyncLocation, Cursor]:
    """Return a copy of ``cursors`` with corrupted entries reset to empty.

    Pure and idempotent: repairing an already repaired mapping changes nothing.
    """
    repaired = {location: cursors.get(location, EMPTY) for location in SYNC_ORDER}
    corrupted = find_corrupted_locations(
        repaired,
        initial_backfill_done=initial_backfill_done,
        backfilled_locations=backfilled_locations,
    )
    if not corrupted:
        return repaired

    for location in corrupted:
        repaired[location] = EMPTY

    logger.warning(
        "sync_cursors_reset_corrupted",
        extra={
            "correlation_id": correlation_id,
            "locations": [location.label for location in corrupted],
        },
    )
    return repaired
