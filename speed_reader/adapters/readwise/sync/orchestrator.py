"""Sequence every location through one budget-bounded sync run."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from speed_reader.adapters.readwise.client import ReaderApiError
from speed_reader.adapters.readwise.sync.budget import (
    WINDOW,
    BudgetExceededError,
    RequestBudget,
    normalize_window,
)
from speed_reader.adapters.readwise.sync.constants import (
    MODE_INCREMENTAL,
    MODE_INITIAL,
    OUTCOME_BUDGET_EXHAUSTED,
    OUTCOME_COMPLETED,
    OUTCOME_DEFERRED,
    OUTCOME_RATE_LIMITED,
)
from speed_reader.adapters.readwise.sync.cursor import CompletedCursor, Cursor
from speed_reader.adapters.readwise.sync.errors import SyncRunError
from speed_reader.adapters.readwise.sync.location_syncer import LocationSyncer, LocationSyncResult
from speed_reader.adapters.readwise.sync.repair import repair_corrupted_cursors
from speed_reader.adapters.readwise.sync.state import SyncStateDelta
from speed_reader.core.html_utils import html_to_plain_text
from speed_reader.core.logging_utils import generate_correlation_id
from speed_reader.core.time_utils import to_iso, utc_now
from speed_reader.domain.sync_location import SYNC_ORDER, SyncLocation

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime

    from speed_reader.adapters.readwise.sync.budget import RateWindow
    from speed_reader.adapters.readwise.sync.protocols import (
        DocumentCacheRepository,
        ReaderClientProtocol,
    )
    from speed_reader.adapters.readwise.sync.state import SyncState
    from speed_reader.config.readwise import ReadwiseSyncConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncRunResult:
    delta: SyncStateDelta
    mode: str
    outcome: str
    correlation_id: str
    locations: list[LocationSyncResult] = field(default_factory=list)

    @property
    def documents_synced(self) -> int:
        return sum(result.documents_synced for result in self.locations)


class SyncOrchestrator:
    """Run backfill or incremental passes for one account.

    The caller must hold the account's sync lock for the whole run and is
    responsible for persisting the returned delta. Locations are processed one
    at a time because they share a single request budget.
    """

    def __init__(
        self,
        cache: DocumentCacheRepository,
        *,
        max_requests_per_window: int,
        page_size: int,
        allowed_locations: Iterable[SyncLocation] = SYNC_ORDER,
        html_normalizer: Callable[[str], str] = html_to_plain_text,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._cache = cache
        self._max_requests = max_requests_per_window
        self._page_size = page_size
        self._allowed = frozenset(allowed_locations)
        self._html_normalizer = html_normalizer
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        cache: DocumentCacheRepository,
        config: ReadwiseSyncConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> SyncOrchestrator:
        return cls(
            cache,
            max_requests_per_window=config.max_requests_per_window,
            page_size=config.page_size,
            allowed_locations=config.allowed_locations,
            clock=clock,
        )

    def _plan(self) -> list[tuple[SyncLocation, bool]]:
        return [(location, location in self._allowed) for location in SYNC_ORDER]

    async def run(
        self,
        client: ReaderClientProtocol,
        state: SyncState,
        *,
        now: datetime | None = None,
        correlation_id: str | None = None,
    ) -> SyncRunResult:
        """Sync as many locations as the current window allows.

        Budget exhaustion and remote rate limiting end the run normally and
        are reflected in ``next_allowed_at``. Anything else is fatal.

        Raises:
            SyncRunError: On any unexpected failure. Its ``delta`` carries the
                window counters and a one-window back-off.
        """
        now = now or self._clock()
        correlation_id = correlation_id or generate_correlation_id()
        start_time = time.time()

        window = normalize_window(state.window_started_at, state.window_request_count, now)
        budget = RequestBudget(window.request_count, self._max_requests)
        backfilling = not state.initial_backfill_done
        mode = MODE_INITIAL if backfilling else MODE_INCREMENTAL

        log_extra = {"correlation_id": correlation_id, "user_id": state.user_id, "mode": mode}
        logger.info(
            "readwise_sync_run_start",
            extra={
                **log_extra,
                "budget_used": budget.used(),
                "budget_limit": budget.limit,
                "budget_remaining": budget.remaining(),
                "locations_enabled": [loc.label for loc in SYNC_ORDER if loc in self._allowed],
            },
        )

        if not budget.can_request():
            logger.info("readwise_sync_no_budget", extra={**log_extra, "budget_used": budget.used()})
            return SyncRunResult(
                delta=self._delta(
                    state,
                    state.locations,
                    window,
                    budget,
                    initial_backfill_done=state.initial_backfill_done,
                    backfilled=state.backfilled_locations,
                    next_allowed_at=window.expires_at,
                    last_429_at=state.last_429_at,
                ),
                mode=mode,
                outcome=OUTCOME_BUDGET_EXHAUSTED,
                correlation_id=correlation_id,
            )

        cursors = repair_corrupted_cursors(
            state.locations,
            initial_backfill_done=state.initial_backfill_done,
            backfilled_locations=state.backfilled_locations,
            correlation_id=correlation_id,
        )
        backfilled = set(state.backfilled_locations) if backfilling else set()
        initial_backfill_done = state.initial_backfill_done
        last_429_at = state.last_429_at
        next_allowed_at: datetime | None = None
        outcome = OUTCOME_COMPLETED
        results: list[LocationSyncResult] = []

        syncer = LocationSyncer(
            client,
            self._cache,
            user_id=state.user_id,
            page_size=self._page_size,
            html_normalizer=self._html_normalizer,
            clock=self._clock,
        )

        try:
            if backfilling:
                for location, enabled in self._plan():
                    if not enabled or isinstance(cursors[location], CompletedCursor):
                        continue
                    if not budget.can_request():
                        outcome = OUTCOME_DEFERRED
                        break
                    result = await syncer.sync(
                        location,
                        MODE_INITIAL,
                        cursors[location],
                        budget,
                        now=now,
                        correlation_id=correlation_id,
                    )
                    results.append(result)
                    cursors[location] = result.cursor
                    if not result.completed:
                        # Lower-precedence locations wait until this one finishes.
                        outcome = OUTCOME_DEFERRED
                        break
                    backfilled.add(location)

                if self._all_complete(cursors):
                    initial_backfill_done = True
                    backfilled.clear()
                    logger.info("readwise_sync_backfill_complete", extra=log_extra)
            else:
                for location, enabled in self._plan():
                    if not enabled:
                        continue
                    if not budget.can_request():
                        outcome = OUTCOME_DEFERRED
                        break
                    result = await syncer.sync(
                        location,
                        MODE_INCREMENTAL,
                        cursors[location],
                        budget,
                        now=now,
                        correlation_id=correlation_id,
                    )
                    results.append(result)
                    cursors[location] = result.cursor
                    if not result.completed:
                        outcome = OUTCOME_DEFERRED
        except ReaderApiError as exc:
            if exc.status_code != 429:
                raise self._fatal(
                    exc, state, cursors, window, budget, now, initial_backfill_done, backfilled, log_extra
                ) from exc
            _keep_checkpoint(syncer, cursors)
            last_429_at = now
            if exc.retry_after_seconds:
                next_allowed_at = now + timedelta(seconds=exc.retry_after_seconds)
            else:
                next_allowed_at = window.expires_at
            outcome = OUTCOME_RATE_LIMITED
            logger.warning(
                "readwise_sync_rate_limited",
                extra={
                    **log_extra,
                    "retry_after_seconds": exc.retry_after_seconds,
                    "next_allowed_at": to_iso(next_allowed_at),
                    "budget_used": budget.used(),
                },
            )
        except BudgetExceededError:
            _keep_checkpoint(syncer, cursors)
            next_allowed_at = window.expires_at
            outcome = OUTCOME_DEFERRED
            logger.info("readwise_sync_budget_exceeded", extra={**log_extra, "budget_used": budget.used()})
        except Exception as exc:
            raise self._fatal(
                exc, state, cursors, window, budget, now, initial_backfill_done, backfilled, log_extra
            ) from exc

        if next_allowed_at is None and budget.used() > 0:
            next_allowed_at = window.expires_at

        delta = self._delta(
            state,
            cursors,
            window,
            budget,
            initial_backfill_done=initial_backfill_done,
            backfilled=backfilled,
            next_allowed_at=next_allowed_at,
            last_429_at=last_429_at,
        )
        logger.info(
            "readwise_sync_run_complete",
            extra={
                **log_extra,
                "outcome": outcome,
                "documents": sum(result.documents_synced for result in results),
                "pages": sum(result.pages_fetched for result in results),
                "budget_used": budget.used(),
                "budget_limit": budget.limit,
                "initial_backfill_done": initial_backfill_done,
                "next_allowed_at": to_iso(next_allowed_at),
                "duration_ms": int((time.time() - start_time) * 1000),
            },
        )
        return SyncRunResult(
            delta=delta,
            mode=mode,
            outcome=outcome,
            correlation_id=correlation_id,
            locations=results,
        )

    def _all_complete(self, cursors: dict[SyncLocation, Cursor]) -> bool:
        return all(
            not enabled or isinstance(cursors[location], CompletedCursor)
            for location, enabled in self._plan()
        )

    def _fatal(
        self,
        exc: Exception,
        state: SyncState,
        cursors: dict[SyncLocation, Cursor],
        window: RateWindow,
        budget: RequestBudget,
        now: datetime,
        initial_backfill_done: bool,
        backfilled: set[SyncLocation],
        log_extra: dict[str, object],
    ) -> SyncRunError:
        logger.error(
            "readwise_sync_run_failed",
            extra={
                **log_extra,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "budget_used": budget.used(),
            },
        )
        delta = self._delta(
            state,
            cursors,
            window,
            budget,
            initial_backfill_done=initial_backfill_done,
            backfilled=backfilled,
            next_allowed_at=now + WINDOW,
            last_429_at=state.last_429_at,
        )
        return SyncRunError(f"Readwise sync failed: {exc}", delta)

    @staticmethod
    def _delta(
        state: SyncState,
        cursors: dict[SyncLocation, Cursor],
        window: RateWindow,
        budget: RequestBudget,
        *,
        initial_backfill_done: bool,
        backfilled: Iterable[SyncLocation],
        next_allowed_at: datetime | None,
        last_429_at: datetime | None,
    ) -> SyncStateDelta:
        return SyncStateDelta(
            locations={location: cursors.get(location, state.cursor(location)) for location in SYNC_ORDER},
            initial_backfill_done=initial_backfill_done,
            backfilled_locations=frozenset(backfilled),
            window_started_at=window.started_at,
            window_request_count=budget.used(),
            next_allowed_at=next_allowed_at,
            last_429_at=last_429_at,
        )


def _keep_checkpoint(syncer: LocationSyncer, cursors: dict[SyncLocation, Cursor]) -> None:
    """Move an interrupted location past the pages it already flushed."""
    if syncer.checkpoint is not None:
        location, cursor = syncer.checkpoint
        cursors[location] = cursor
