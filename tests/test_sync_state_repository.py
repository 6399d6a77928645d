import os
import tempfile
import unittest
from datetime import timedelta

from speed_reader.adapters.readwise.sync.cursor import (
    EMPTY,
    CompletedCursor,
    ResumableCursor,
)
from speed_reader.adapters.readwise.sync.state import SyncStateDelta
from speed_reader.db.models import ReadwiseSyncState
from speed_reader.db.session import DatabaseSessionManager
from speed_reader.domain.sync_location import SYNC_ORDER, SyncLocation
from speed_reader.infrastructure.persistence.sqlite.repositories import (
    SqliteSyncStateRepositoryAdapter,
)
from tests.conftest import NOW


def _delta(**overrides):
    fields = {
        "locations": {
            **dict.fromkeys(SYNC_ORDER, EMPTY),
            SyncLocation.INBOX: CompletedCursor(NOW - timedelta(hours=1)),
            SyncLocation.LIBRARY: ResumableCursor("tok-2", NOW - timedelta(hours=3)),
        },
        "initial_backfill_done": False,
        "backfilled_locations": frozenset({SyncLocation.INBOX}),
        "window_started_at": NOW,
        "window_request_count": 7,
        "next_allowed_at": NOW + timedelta(seconds=60),
        "last_429_at": None,
    }
    fields.update(overrides)
    return SyncStateDelta(**fields)


class TestSyncStateRepository(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.session = DatabaseSessionManager(os.path.join(self.tmp.name, "app.db"))
        self.session.migrate()
        self.repo = SqliteSyncStateRepositoryAdapter(self.session)
        await self.repo.async_connect_reader("u1", "token-1")

    async def asyncTearDown(self):
        self.session.close()
        self.tmp.cleanup()

    async def test_connect_creates_empty_state(self):
        state = await self.repo.async_get_state("u1")

        self.assertIsNotNone(state)
        self.assertEqual(state.user_id, "u1")
        self.assertTrue(all(state.cursor(loc) == EMPTY for loc in SYNC_ORDER))
        self.assertFalse(state.initial_backfill_done)
        self.assertFalse(state.in_progress)
        self.assertEqual(await self.repo.async_get_reader_token("u1"), "token-1")

    async def test_reconnect_replaces_token_and_keeps_progress(self):
        await self.repo.async_apply_delta("u1", _delta(), last_sync_at=NOW)

        await self.repo.async_connect_reader("u1", "token-2")

        state = await self.repo.async_get_state("u1")
        self.assertEqual(await self.repo.async_get_reader_token("u1"), "token-2")
        self.assertEqual(state.cursor(SyncLocation.LIBRARY), ResumableCursor("tok-2", NOW - timedelta(hours=3)))

    async def test_unknown_user_has_no_state_or_token(self):
        self.assertIsNone(await self.repo.async_get_state("ghost"))
        self.assertIsNone(await self.repo.async_get_reader_token("ghost"))

    async def test_lock_is_exclusive(self):
        first = await self.repo.async_try_acquire_lock("u1", NOW)
        second = await self.repo.async_try_acquire_lock("u1", NOW)

        self.assertIsNotNone(first)
        self.assertTrue(first.in_progress)
        self.assertEqual(first.lock_acquired_at, NOW)
        self.assertIsNone(second)

    async def test_lock_refused_while_backing_off(self):
        await self.repo.async_mark_failed("u1", next_allowed_at=NOW + timedelta(seconds=30))

        self.assertIsNone(await self.repo.async_try_acquire_lock("u1", NOW))
        self.assertIsNotNone(
            await self.repo.async_try_acquire_lock("u1", NOW + timedelta(seconds=30))
        )

    async def test_apply_delta_round_trips_and_releases_lock(self):
        await self.repo.async_try_acquire_lock("u1", NOW)

        await self.repo.async_apply_delta("u1", _delta(), last_sync_at=NOW)

        state = await self.repo.async_get_state("u1")
        self.assertFalse(state.in_progress)
        self.assertIsNone(state.lock_acquired_at)
        self.assertEqual(state.cursor(SyncLocation.INBOX), CompletedCursor(NOW - timedelta(hours=1)))
        self.assertEqual(
            state.cursor(SyncLocation.LIBRARY), ResumableCursor("tok-2", NOW - timedelta(hours=3))
        )
        self.assertEqual(state.cursor(SyncLocation.FEED), EMPTY)
        self.assertEqual(state.backfilled_locations, frozenset({SyncLocation.INBOX}))
        self.assertEqual(state.window_started_at, NOW)
        self.assertEqual(state.window_request_count, 7)
        self.assertEqual(state.next_allowed_at, NOW + timedelta(seconds=60))
        self.assertEqual(state.last_sync_at, NOW)

    async def test_cursors_are_stored_in_encoded_form(self):
        await self.repo.async_apply_delta("u1", _delta(), last_sync_at=NOW)

        def _raw():
            with self.session.connection_context():
                return ReadwiseSyncState.get(ReadwiseSyncState.user == "u1")

        row = _raw()
        self.assertTrue(row.library_cursor.startswith("page:tok-2|updated:"))
        self.assertFalse(row.inbox_cursor.startswith("page:"))
        self.assertIsNone(row.feed_cursor)
        self.assertEqual(row.backfilled_locations, ["inbox"])

    async def test_mark_failed_keeps_delta_and_backs_off(self):
        await self.repo.async_try_acquire_lock("u1", NOW)
        backoff = NOW + timedelta(seconds=60)

        await self.repo.async_mark_failed(
            "u1", next_allowed_at=backoff, delta=_delta(next_allowed_at=NOW + timedelta(seconds=5))
        )

        state = await self.repo.async_get_state("u1")
        self.assertFalse(state.in_progress)
        self.assertEqual(state.next_allowed_at, backoff)
        self.assertEqual(state.cursor(SyncLocation.INBOX), CompletedCursor(NOW - timedelta(hours=1)))
        self.assertIsNone(state.last_sync_at)

    async def test_stale_lock_release_respects_age(self):
        await self.repo.async_try_acquire_lock("u1", NOW)

        released_fresh = await self.repo.async_release_stale_lock(
            "u1", older_than=NOW - timedelta(minutes=5)
        )
        released_old = await self.repo.async_release_stale_lock(
            "u1", older_than=NOW + timedelta(seconds=1)
        )

        self.assertFalse(released_fresh)
        self.assertTrue(released_old)
        self.assertFalse((await self.repo.async_get_state("u1")).in_progress)

    async def test_force_unlock(self):
        await self.repo.async_try_acquire_lock("u1", NOW)

        self.assertTrue(await self.repo.async_force_unlock("u1"))
        self.assertFalse(await self.repo.async_force_unlock("ghost"))
        self.assertFalse((await self.repo.async_get_state("u1")).in_progress)

    async def test_due_list_skips_locked_and_backing_off_accounts(self):
        await self.repo.async_connect_reader("u2", "t")
        await self.repo.async_connect_reader("u3", "t")
        await self.repo.async_try_acquire_lock("u2", NOW)
        await self.repo.async_mark_failed("u3", next_allowed_at=NOW + timedelta(minutes=1))

        due = await self.repo.async_list_due_user_ids(NOW)

        self.assertEqual(due, ["u1"])

    async def test_reset_forgets_progress(self):
        await self.repo.async_apply_delta(
            "u1", _delta(initial_backfill_done=True), last_sync_at=NOW
        )

        self.assertTrue(await self.repo.async_reset_state("u1"))

        state = await self.repo.async_get_state("u1")
        self.assertTrue(all(state.cursor(loc) == EMPTY for loc in SYNC_ORDER))
        self.assertFalse(state.initial_backfill_done)
        self.assertEqual(state.backfilled_locations, frozenset())
        self.assertIsNone(state.next_allowed_at)
        self.assertEqual(state.window_request_count, 0)
