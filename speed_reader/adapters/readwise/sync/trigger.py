"""Lock-guarded entry points that run the orchestrator and persist its delta."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from speed_reader.adapters.readwise.client import ReaderClient
from speed_reader.adapters.readwise.sync.constants import FAILURE_BACKOFF_SECONDS
from speed_reader.adapters.readwise.sync.cursor import describe_cursor
from speed_reader.adapters.readwise.sync.errors import (
    ReaderNotConnectedError,
    SyncInProgressError,
    SyncLockError,
    SyncRateLimitedError,
    SyncRunError,
    SyncStateNotFoundError,
    SyncStateUpdateError,
)
from speed_reader.adapters.readwise.sync.orchestrator import SyncOrchestrator, SyncRunResult
from speed_reader.core.logging_utils import generate_correlation_id
from speed_reader.core.time_utils import to_iso, utc_now
from speed_reader.domain.sync_location import SYNC_ORDER

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from speed_reader.adapters.readwise.sync.protocols import (
        DocumentCacheRepository,
        ReaderClientFactory,
        SyncStateRepository,
    )
    from speed_reader.adapters.readwise.sync.state import SyncState
    from speed_reader.config.readwise import ReadwiseSyncConfig

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_UPDATE_FAILED = "update_failed"
STATUS_SYNC_FAILED = "sync_failed"
STATUS_LOCK_FAILED = "lock_failed"


@dataclass(slots=True)
class DueSyncOutcome:
    user_id: str
    status: str
    outcome: str | None = None
    error: str | None = None


class SyncTrigger:
    """The only supported way to run a sync.

    Every run happens under the account's conditional lock, and the lock is
    always released afterwards, with a back-off on failure so a broken
    account is not retried in a tight loop.
    """

    def __init__(
        self,
        state_repository: SyncStateRepository,
        cache_repository: DocumentCacheRepository,
        config: ReadwiseSyncConfig,
        *,
        client_factory: ReaderClientFactory | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._states = state_repository
        self._config = config
        self._clock = clock
        self._client_factory = client_factory or self._default_client_factory
        self._orchestrator = SyncOrchestrator.from_config(cache_repository, config, clock=clock)

    def _default_client_factory(self, access_token: str) -> ReaderClient:
        return ReaderClient(
            access_token,
            api_url=self._config.api_url,
            timeout=self._config.request_timeout_sec,
            max_requests_per_window=self._config.max_requests_per_window,
        )

    async def trigger(self, user_id: str) -> SyncRunResult:
        """Manually start a sync for one account.

        Raises:
            SyncStateNotFoundError: No sync state exists for the account.
            ReaderNotConnectedError: The account has no Reader token.
            SyncInProgressError: Another run holds a fresh lock.
            SyncRateLimitedError: ``next_allowed_at`` is still in the future.
            SyncLockError: The conditional lock update lost a race.
            SyncRunError: The run itself failed (lock already released).
        """
        now = self._clock()
        correlation_id = generate_correlation_id()
        log_extra = {"correlation_id": correlation_id, "user_id": user_id}

        state = await self._states.async_get_state(user_id)
        if state is None:
            raise SyncStateNotFoundError(f"Sync state not found for user {user_id}")

        token = await self._states.async_get_reader_token(user_id)
        if not token:
            raise ReaderNotConnectedError(f"Reader is not connected for user {user_id}")

        if state.in_progress:
            if not self._is_stale_lock(state, now):
                raise SyncInProgressError("Sync already in progress")
            logger.warning(
                "readwise_sync_stale_lock_released",
                extra={**log_extra, "lock_acquired_at": to_iso(state.lock_acquired_at)},
            )
            await self._states.async_release_stale_lock(
                user_id, older_than=now - timedelta(seconds=self._config.stale_lock_seconds)
            )

        if state.next_allowed_at is not None and state.next_allowed_at > now:
            wait_seconds = math.ceil((state.next_allowed_at - now).total_seconds())
            logger.info("readwise_sync_trigger_rate_limited", extra={**log_extra, "wait_seconds": wait_seconds})
            raise SyncRateLimitedError(state.next_allowed_at, wait_seconds)

        locked = await self._states.async_try_acquire_lock(user_id, now)
        if locked is None:
            raise SyncLockError("Failed to acquire sync lock")

        return await self._run_locked(locked, token, now, correlation_id)

    async def run_due(self) -> list[DueSyncOutcome]:
        """Sync every unlocked account whose back-off has elapsed.

        A failure for one account is recorded in its outcome and does not stop
        the others.
        """
        now = self._clock()
        outcomes: list[DueSyncOutcome] = []

        for user_id in await self._states.async_list_due_user_ids(now):
            token = await self._states.async_get_reader_token(user_id)
            if not token:
                continue

            locked = await self._states.async_try_acquire_lock(user_id, now)
            if locked is None:
                outcomes.append(DueSyncOutcome(user_id=user_id, status=STATUS_LOCK_FAILED))
                continue

            correlation_id = generate_correlation_id()
            try:
                result = await self._run_locked(locked, token, now, correlation_id)
            except SyncStateUpdateError as exc:
                outcomes.append(
                    DueSyncOutcome(user_id=user_id, status=STATUS_UPDATE_FAILED, error=str(exc))
                )
            except Exception as exc:
                outcomes.append(
                    DueSyncOutcome(user_id=user_id, status=STATUS_SYNC_FAILED, error=str(exc))
                )
            else:
                outcomes.append(
                    DueSyncOutcome(user_id=user_id, status=STATUS_OK, outcome=result.outcome)
                )

        logger.info(
            "readwise_sync_due_complete",
            extra={
                "accounts": len(outcomes),
                "ok": sum(1 for item in outcomes if item.status == STATUS_OK),
                "failed": sum(1 for item in outcomes if item.status != STATUS_OK),
            },
        )
        return outcomes

    async def status(self, user_id: str) -> dict[str, Any]:
        state = await self._states.async_get_state(user_id)
        if state is None:
            raise SyncStateNotFoundError(f"Sync state not found for user {user_id}")

        now = self._clock()
        return {
            "user_id": user_id,
            "in_progress": state.in_progress,
            "initial_backfill_done": state.initial_backfill_done,
            "last_sync_at": to_iso(state.last_sync_at),
            "next_allowed_at": to_iso(state.next_allowed_at),
            "rate_limited": bool(state.next_allowed_at and state.next_allowed_at > now),
            "last_429_at": to_iso(state.last_429_at),
            "window_started_at": to_iso(state.window_started_at),
            "window_request_count": state.window_request_count,
            "locations": {
                location.label: {
                    **describe_cursor(state.cursor(location)),
                    "enabled": location in self._config.allowed_locations,
                }
                for location in SYNC_ORDER
            },
        }

    def _is_stale_lock(self, state: SyncState, now: datetime) -> bool:
        if state.lock_acquired_at is None:
            return True
        return now - state.lock_acquired_at > timedelta(seconds=self._config.stale_lock_seconds)

    async def _run_locked(
        self, state: SyncState, token: str, now: datetime, correlation_id: str
    ) -> SyncRunResult:
        log_extra = {"correlation_id": correlation_id, "user_id": state.user_id}
        backoff_until = now + timedelta(seconds=FAILURE_BACKOFF_SECONDS)

        try:
            async with self._client_factory(token) as client:
                result = await self._orchestrator.run(
                    client, state, now=now, correlation_id=correlation_id
                )
        except SyncRunError as exc:
            logger.error("readwise_sync_failed", extra={**log_extra, "error": str(exc.__cause__ or exc)})
            await self._states.async_mark_failed(
                state.user_id, next_allowed_at=backoff_until, delta=exc.delta
            )
            raise
        except Exception as exc:
            logger.exception("readwise_sync_failed", extra={**log_extra, "error": str(exc)})
            await self._states.async_mark_failed(state.user_id, next_allowed_at=backoff_until)
            raise

        try:
            await self._states.async_apply_delta(state.user_id, result.delta, last_sync_at=now)
        except Exception as exc:
            logger.exception("readwise_sync_state_update_failed", extra=log_extra)
            await self._states.async_mark_failed(state.user_id, next_allowed_at=backoff_until)
            raise SyncStateUpdateError(str(exc)) from exc

        return result
