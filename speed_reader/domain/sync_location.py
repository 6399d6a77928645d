"""Readwise Reader library locations mirrored by the sync engine."""

from __future__ import annotations

from enum import StrEnum


class SyncLocation(StrEnum):
    """One of the five fixed partitions of a Reader library.

    Values are the names the Reader API uses; ``label`` is the name used in
    the app and in the sync-state cursor columns.
    """

    INBOX = "new"
    LIBRARY = "later"
    ARCHIVE = "archive"
    SHORTLIST = "shortlist"
    FEED = "feed"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def cursor_column(self) -> str:
        return f"{self.label}_cursor"

    @classmethod
    def parse(cls, value: str) -> SyncLocation | None:
        """Resolve either an API name (``later``) or an app label (``library``)."""
        key = value.strip().lower()
        for location in cls:
            if key in (location.value, location.label):
                return location
        return None


_LABELS: dict[SyncLocation, str] = {
    SyncLocation.INBOX: "inbox",
    SyncLocation.LIBRARY: "library",
    SyncLocation.ARCHIVE: "archive",
    SyncLocation.SHORTLIST: "shortlist",
    SyncLocation.FEED: "feed",
}

# Backfill precedence and incremental pass order.
SYNC_ORDER: tuple[SyncLocation, ...] = (
    SyncLocation.INBOX,
    SyncLocation.LIBRARY,
    SyncLocation.ARCHIVE,
    SyncLocation.SHORTLIST,
    SyncLocation.FEED,
)
