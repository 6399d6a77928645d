"""SQLite implementation of the Readwise sync state repository.

Cursors are decoded into their variants when a row is read and encoded back
to strings when a delta is written; nothing above this layer sees the
string form.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from speed_reader.adapters.readwise.sync.cursor import decode_cursor, encode_cursor
from speed_reader.adapters.readwise.sync.state import SyncState, SyncStateDelta
from speed_reader.core.time_utils import ensure_datetime, to_naive_utc
from speed_reader.db.models import ReadwiseSyncState, User, _utcnow
from speed_reader.domain.sync_location import SYNC_ORDER, SyncLocation
from speed_reader.infrastructure.persistence.sqlite.base import SqliteBaseRepository


def _row_to_state(row: ReadwiseSyncState) -> SyncState:
    backfilled = {
        location
        for label in row.backfilled_locations or []
        if (location := SyncLocation.parse(str(label))) is not None
    }
    return SyncState(
        user_id=row.__data__["user"],
        locations={
            location: decode_cursor(getattr(row, location.cursor_column)) for location in SYNC_ORDER
        },
        initial_backfill_done=bool(row.initial_backfill_done),
        backfilled_locations=frozenset(backfilled),
        in_progress=bool(row.in_progress),
        window_started_at=ensure_datetime(row.window_started_at),
        window_request_count=row.window_request_count or 0,
        next_allowed_at=ensure_datetime(row.next_allowed_at),
        last_429_at=ensure_datetime(row.last_429_at),
        last_sync_at=ensure_datetime(row.last_sync_at),
        lock_acquired_at=ensure_datetime(row.lock_acquired_at),
    )


def _delta_fields(delta: SyncStateDelta) -> dict[Any, Any]:
    fields: dict[Any, Any] = {
        getattr(ReadwiseSyncState, location.cursor_column): encode_cursor(cursor)
        for location, cursor in delta.locations.items()
    }
    fields.update(
        {
            ReadwiseSyncState.initial_backfill_done: delta.initial_backfill_done,
            ReadwiseSyncState.backfilled_locations: [
                location.label for location in SYNC_ORDER if location in delta.backfilled_locations
            ],
            ReadwiseSyncState.window_started_at: to_naive_utc(delta.window_started_at),
            ReadwiseSyncState.window_request_count: delta.window_request_count,
            ReadwiseSyncState.next_allowed_at: to_naive_utc(delta.next_allowed_at),
            ReadwiseSyncState.last_429_at: to_naive_utc(delta.last_429_at),
        }
    )
    return fields


def _is_due(row: ReadwiseSyncState, now: datetime) -> bool:
    next_allowed_at = ensure_datetime(row.next_allowed_at)
    return not row.in_progress and (next_allowed_at is None or next_allowed_at <= now)


class SqliteSyncStateRepositoryAdapter(SqliteBaseRepository):
    """Adapter for ReadwiseSyncState and the Reader token on User."""

    async def async_get_state(self, user_id: str) -> SyncState | None:
        def _query() -> SyncState | None:
            row = ReadwiseSyncState.get_or_none(ReadwiseSyncState.user == user_id)
            return _row_to_state(row) if row else None

        return await self._execute(_query, operation_name="get_sync_state", read_only=True)

    async def async_get_reader_token(self, user_id: str) -> str | None:
        def _query() -> str | None:
            user = User.get_or_none(User.id == user_id)
            return user.reader_access_token if user else None

        return await self._execute(_query, operation_name="get_reader_token", read_only=True)

    async def async_connect_reader(self, user_id: str, access_token: str) -> SyncState:
        """Store the Reader token and make sure a sync state row exists.

        A new row starts with every cursor empty; an existing row keeps its
        progress.
        """

        def _connect() -> SyncState:
            with ReadwiseSyncState._meta.database.atomic():
                user, created = User.get_or_create(
                    id=user_id, defaults={"reader_access_token": access_token}
                )
                if not created:
                    user.reader_access_token = access_token
                    user.save()
                row, _ = ReadwiseSyncState.get_or_create(user=user_id)
                return _row_to_state(row)

        return await self._execute(_connect, operation_name="connect_reader")

    async def async_try_acquire_lock(self, user_id: str, now: datetime) -> SyncState | None:
        """Set ``in_progress`` only if it is clear and the account is not backing off.

        The check and the update happen in one write transaction, so two
        callers can never both win. Returns the locked state, or None.
        """

        def _acquire() -> SyncState | None:
            with ReadwiseSyncState._meta.database.atomic():
                row = ReadwiseSyncState.get_or_none(ReadwiseSyncState.user == user_id)
                if row is None or not _is_due(row, now):
                    return None
                updated = (
                    ReadwiseSyncState.update(
                        {
                            ReadwiseSyncState.in_progress: True,
                            ReadwiseSyncState.lock_acquired_at: to_naive_utc(now),
                            ReadwiseSyncState.updated_at: _utcnow(),
                        }
                    )
                    .where(
                        (ReadwiseSyncState.user == user_id)
                        & (ReadwiseSyncState.in_progress == False)  # noqa: E712
                    )
                    .execute()
                )
                if not updated:
                    return None
                return _row_to_state(ReadwiseSyncState.get(ReadwiseSyncState.user == user_id))

        return await self._execute(_acquire, operation_name="acquire_sync_lock")

    async def async_release_stale_lock(self, user_id: str, *, older_than: datetime) -> bool:
        """Clear a lock taken before ``older_than`` (or with no timestamp at all)."""

        def _release() -> bool:
            with ReadwiseSyncState._meta.database.atomic():
                row = ReadwiseSyncState.get_or_none(ReadwiseSyncState.user == user_id)
                if row is None or not row.in_progress:
                    return False
                acquired_at = ensure_datetime(row.lock_acquired_at)
                if acquired_at is not None and acquired_at >= older_than:
                    return False
                ReadwiseSyncState.update(
                    {
                        ReadwiseSyncState.in_progress: False,
                        ReadwiseSyncState.lock_acquired_at: None,
                        ReadwiseSyncState.updated_at: _utcnow(),
                    }
                ).where(ReadwiseSyncState.user == user_id).execute()
                return True

        return await self._execute(_release, operation_name="release_stale_sync_lock")

    async def async_force_unlock(self, user_id: str) -> bool:
        def _unlock() -> bool:
            updated = (
                ReadwiseSyncState.update(
                    {
                        ReadwiseSyncState.in_progress: False,
                        ReadwiseSyncState.lock_acquired_at: None,
                        ReadwiseSyncState.updated_at: _utcnow(),
                    }
                )
                .where(ReadwiseSyncState.user == user_id)
                .execute()
            )
            return bool(updated)

        return await self._execute(_unlock, operation_name="force_unlock_sync_state")

    async def async_apply_delta(
        self, user_id: str, delta: SyncStateDelta, *, last_sync_at: datetime
    ) -> None:
        """Persist a successful run and release the lock."""

        def _apply() -> None:
            fields = _delta_fields(delta)
            fields.update(
                {
                    ReadwiseSyncState.in_progress: False,
                    ReadwiseSyncState.lock_acquired_at: None,
                    ReadwiseSyncState.last_sync_at: to_naive_utc(last_sync_at),
                    ReadwiseSyncState.updated_at: _utcnow(),
                }
            )
            ReadwiseSyncState.update(fields).where(ReadwiseSyncState.user == user_id).execute()

        await self._execute(_apply, operation_name="apply_sync_delta")

    async def async_mark_failed(
        self,
        user_id: str,
        *,
        next_allowed_at: datetime,
        delta: SyncStateDelta | None = None,
    ) -> None:
        """Release the lock after a failed run and back off until ``next_allowed_at``.

        When the run got far enough to produce a delta, its cursors and window
        counters are kept so finished work is not repeated.
        """

        def _mark() -> None:
            fields = _delta_fields(delta) if delta is not None else {}
            fields.update(
                {
                    ReadwiseSyncState.in_progress: False,
                    ReadwiseSyncState.lock_acquired_at: None,
                    ReadwiseSyncState.next_allowed_at: to_naive_utc(next_allowed_at),
                    ReadwiseSyncState.updated_at: _utcnow(),
                }
            )
            ReadwiseSyncState.update(fields).where(ReadwiseSyncState.user == user_id).execute()

        await self._execute(_mark, operation_name="mark_sync_failed")

    async def async_list_due_user_ids(self, now: datetime) -> list[str]:
        def _query() -> list[str]:
            rows = ReadwiseSyncState.select().where(ReadwiseSyncState.in_progress == False)  # noqa: E712
            return [row.__data__["user"] for row in rows if _is_due(row, now)]

        return await self._execute(_query, operation_name="list_due_sync_states", read_only=True)

    async def async_reset_state(self, user_id: str) -> bool:
        """Forget all progress so the next run performs a full backfill."""

        def _reset() -> bool:
            fields: dict[Any, Any] = {
                getattr(ReadwiseSyncState, location.cursor_column): None for location in SYNC_ORDER
            }
            fields.update(
                {
                    ReadwiseSyncState.initial_backfill_done: False,
                    ReadwiseSyncState.backfilled_locations: [],
                    ReadwiseSyncState.in_progress: False,
                    ReadwiseSyncState.lock_acquired_at: None,
                    ReadwiseSyncState.window_started_at: None,
                    ReadwiseSyncState.window_request_count: 0,
                    ReadwiseSyncState.next_allowed_at: None,
                    ReadwiseSyncState.updated_at: _utcnow(),
                }
            )
            updated = ReadwiseSyncState.update(fields).where(ReadwiseSyncState.user == user_id).execute()
            return bool(updated)

        return await self._execute(_reset, operation_name="reset_sync_state")
