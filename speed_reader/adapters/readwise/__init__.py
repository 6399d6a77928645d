"""Readwise Reader integration: API client and incremental library sync."""

from speed_reader.adapters.readwise.client import ReaderClient
from speed_reader.adapters.readwise.sync.trigger import SyncTrigger

__all__ = ["ReaderClient", "SyncTrigger"]
