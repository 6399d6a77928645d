"""Sync engine exceptions."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from speed_reader.adapters.readwise.sync.state import SyncStateDelta


class CacheWriteError(Exception):
    """A batch upsert into the local document cache failed."""

    def __init__(self, table: str, message: str) -> None:
        super().__init__(f"Failed to batch cache {table}: {message}")
        self.table = table


class SyncRunError(Exception):
    """A run failed for a reason the engine cannot recover from.

    ``delta`` still holds the window bookkeeping and back-off time so the
    caller can persist them while releasing the lock. The original exception
    is chained as ``__cause__``.
    """

    def __init__(self, message: str, delta: SyncStateDelta) -> None:
        super().__init__(message)
        self.delta = delta


class SyncTriggerError(Exception):
    """Base for reasons a sync could not be started."""


class SyncStateNotFoundError(SyncTriggerError):
    pass


class ReaderNotConnectedError(SyncTriggerError):
    pass


class SyncInProgressError(SyncTriggerError):
    pass


class SyncLockError(SyncTriggerError):
    """The conditional lock update matched no row."""


class SyncRateLimitedError(SyncTriggerError):
    def __init__(self, next_allowed_at: datetime, wait_seconds: int) -> None:
        super().__init__(f"Rate limited, try again in {wait_seconds} seconds")
        self.next_allowed_at = next_allowed_at
        self.wait_seconds = wait_seconds


class SyncStateUpdateError(Exception):
    """A run succeeded but its delta could not be written back."""
