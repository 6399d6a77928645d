from __future__ import annotations

import logging
from typing import Any

from speed_reader.domain.sync_location import SYNC_ORDER, SyncLocation

logger = logging.getLogger(__name__)


def _parse_positive_int_override(value: Any, *, default: int, name: str) -> int:
    """Parse an optional override; unparseable or non-positive values keep the default."""
    if value in (None, ""):
        return default
    try:
        parsed = int(str(value).strip())
    except ValueError:
        logger.warning("config_override_ignored", extra={"setting": name, "value": repr(value)})
        return default
    if parsed <= 0:
        logger.warning("config_override_ignored", extra={"setting": name, "value": repr(value)})
        return default
    return parsed


def _parse_location_allow_list(value: Any) -> tuple[SyncLocation, ...]:
    if value in (None, ""):
        return SYNC_ORDER
    pieces = value if isinstance(value, list | tuple) else str(value).split(",")

    allowed: set[SyncLocation] = set()
    for piece in pieces:
        if isinstance(piece, SyncLocation):
            allowed.add(piece)
            continue
        text = str(piece).strip()
        if not text:
            continue
        location = SyncLocation.parse(text)
        if location is None:
            logger.warning("config_unknown_sync_location", extra={"value": text})
            continue
        allowed.add(location)

    if not allowed:
        return SYNC_ORDER
    return tuple(location for location in SYNC_ORDER if location in allowed)
