"""Per-run request budget and rate-limit window bookkeeping."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, TypeVar

from speed_reader.adapters.readwise.sync.constants import WINDOW_SECONDS

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

WINDOW = timedelta(seconds=WINDOW_SECONDS)


class BudgetExceededError(Exception):
    """The current window's request allowance is used up."""

    def __init__(self, used: int | None = None, limit: int | None = None) -> None:
        super().__init__("Request budget exceeded")
        self.used = used
        self.limit = limit


class RequestBudget:
    """Counts remote calls made in the current window and refuses calls past the ceiling.

    The counter is shared by every location in one run and has no locking:
    callers must use it from a single task.
    """

    def __init__(self, initial_count: int, limit: int) -> None:
        self._count = max(initial_count, 0)
        self._limit = limit

    @property
    def limit(self) -> int:
        return self._limit

    def can_request(self) -> bool:
        return self._count < self._limit

    def remaining(self) -> int:
        return max(self._limit - self._count, 0)

    def used(self) -> int:
        return self._count

    async def track(self, func: Callable[[], Awaitable[T]]) -> T:
        """Spend one unit, then await ``func``.

        The unit is spent before the call so a failing request still counts
        against the window.

        Raises:
            BudgetExceededError: If no capacity is left; ``func`` is not called.
        """
        if not self.can_request():
            raise BudgetExceededError(self._count, self._limit)

        self._count += 1
        return await func()


@dataclass(frozen=True, slots=True)
class RateWindow:
    started_at: datetime
    request_count: int

    @property
    def expires_at(self) -> datetime:
        return self.started_at + WINDOW


def normalize_window(
    started_at: datetime | None, request_count: int | None, now: datetime
) -> RateWindow:
    """Roll the window over when it is missing or at least one window length old.

    This is the only place a window is reset; it must run before a budget is
    built from the persisted count.
    """
    if started_at is None or now - started_at >= WINDOW:
        return RateWindow(started_at=now, request_count=0)
    return RateWindow(started_at=started_at, request_count=request_count or 0)
