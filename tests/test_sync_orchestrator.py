"""Tests for run-level sequencing, window handling and error classification."""

from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

import pytest

from speed_reader.adapters.readwise.client import (
    ReaderApiError,
    ReaderNotFoundError,
    ReaderRateLimitError,
)
from speed_reader.adapters.readwise.sync.budget import WINDOW, BudgetExceededError
from speed_reader.adapters.readwise.sync.constants import (
    MODE_INCREMENTAL,
    MODE_INITIAL,
    OUTCOME_BUDGET_EXHAUSTED,
    OUTCOME_COMPLETED,
    OUTCOME_DEFERRED,
    OUTCOME_RATE_LIMITED,
)
from speed_reader.adapters.readwise.sync.cursor import (
    EMPTY,
    CompletedCursor,
    ResumableCursor,
    decode_cursor,
)
from speed_reader.adapters.readwise.sync.errors import SyncRunError
from speed_reader.adapters.readwise.sync.location_syncer import LocationSyncer, LocationSyncResult
from speed_reader.adapters.readwise.sync.orchestrator import SyncOrchestrator
from speed_reader.adapters.readwise.sync.state import SyncState
from speed_reader.domain.sync_location import SYNC_ORDER, SyncLocation
from tests.conftest import NOW, FakeReaderClient, RecordingCache, make_document, make_page

WATERMARK = NOW - timedelta(days=7)


def _orchestrator(cache=None, *, max_requests=20, allowed=SYNC_ORDER):
    return SyncOrchestrator(
        cache or RecordingCache(),
        max_requests_per_window=max_requests,
        page_size=100,
        allowed_locations=allowed,
        clock=lambda: NOW,
    )


def _empty_pages():
    return {location: {None: make_page([])} for location in SYNC_ORDER}


class TestBackfill(unittest.IsolatedAsyncioTestCase):
    async def test_budget_of_one_only_touches_inbox(self):
        pages = _empty_pages()
        pages[SyncLocation.INBOX] = {None: make_page([make_document("a")], "c2")}
        client = FakeReaderClient(pages)

        result = await _orchestrator(max_requests=1).run(client, SyncState(user_id="u1"), now=NOW)

        assert client.listed_locations() == [SyncLocation.INBOX]
        assert isinstance(result.delta.locations[SyncLocation.INBOX], ResumableCursor)
        for location in SYNC_ORDER[1:]:
            assert result.delta.locations[location] == EMPTY
        assert result.delta.initial_backfill_done is False
        assert result.outcome == OUTCOME_DEFERRED
        assert result.mode == MODE_INITIAL

    async def test_all_locations_completing_flips_backfill_flag(self):
        client = FakeReaderClient(_empty_pages())

        result = await _orchestrator().run(client, SyncState(user_id="u1"), now=NOW)

        assert result.delta.initial_backfill_done is True
        assert result.delta.backfilled_locations == frozenset()
        assert all(isinstance(c, CompletedCursor) for c in result.delta.locations.values())
        assert client.listed_locations() == list(SYNC_ORDER)
        assert result.delta.window_request_count == 5
        assert result.delta.next_allowed_at == NOW + WINDOW
        assert result.outcome == OUTCOME_COMPLETED

    async def test_incomplete_location_blocks_lower_precedence(self):
        pages = _empty_pages()
        pages[SyncLocation.LIBRARY] = {
            None: make_page([make_document("a", html=None)], "c2"),
        }
        client = FakeReaderClient(pages, documents={})
        # inbox (1) + library list (2) leaves no budget for library's body fetch.
        result = await _orchestrator(max_requests=2).run(client, SyncState(user_id="u1"), now=NOW)

        assert client.listed_locations() == [SyncLocation.INBOX, SyncLocation.LIBRARY]
        assert isinstance(result.delta.locations[SyncLocation.INBOX], CompletedCursor)
        assert result.delta.locations[SyncLocation.LIBRARY] == ResumableCursor("c2", None)
        assert result.delta.locations[SyncLocation.ARCHIVE] == EMPTY
        assert result.delta.backfilled_locations == frozenset({SyncLocation.INBOX})

    async def test_locations_finished_in_earlier_runs_are_skipped(self):
        state = SyncState(
            user_id="u1",
            locations={
                **dict.fromkeys(SYNC_ORDER, EMPTY),
                SyncLocation.INBOX: CompletedCursor(WATERMARK),
            },
            backfilled_locations=frozenset({SyncLocation.INBOX}),
        )
        client = FakeReaderClient(_empty_pages())

        result = await _orchestrator().run(client, state, now=NOW)

        assert client.listed_locations() == list(SYNC_ORDER[1:])
        assert result.delta.locations[SyncLocation.INBOX] == CompletedCursor(WATERMARK)
        assert result.delta.initial_backfill_done is True

    async def test_corrupted_cursor_is_restarted_from_first_page(self):
        state = SyncState(
            user_id="u1",
            locations={
                **dict.fromkeys(SYNC_ORDER, EMPTY),
                SyncLocation.LIBRARY: decode_cursor("2024-01-01T00:00:00Z"),
            },
        )
        client = FakeReaderClient(_empty_pages())

        await _orchestrator().run(client, state, now=NOW)

        library_calls = [c for c in client.list_calls if c["location"] == "later"]
        assert len(library_calls) == 1
        assert library_calls[0]["page_cursor"] is None
        assert library_calls[0]["updated_after"] is None

    async def test_disallowed_locations_count_as_complete(self):
        client = FakeReaderClient(_empty_pages())

        result = await _orchestrator(allowed=[SyncLocation.LIBRARY]).run(
            client, SyncState(user_id="u1"), now=NOW
        )

        assert client.listed_locations() == [SyncLocation.LIBRARY]
        assert result.delta.initial_backfill_done is True
        assert result.delta.locations[SyncLocation.INBOX] == EMPTY

    async def test_nothing_to_do_leaves_next_allowed_unset(self):
        state = SyncState(
            user_id="u1",
            locations=dict.fromkeys(SYNC_ORDER, CompletedCursor(WATERMARK)),
            backfilled_locations=frozenset(SYNC_ORDER),
        )

        result = await _orchestrator().run(FakeReaderClient(), state, now=NOW)

        assert result.delta.initial_backfill_done is True
        assert result.delta.window_request_count == 0
        assert result.delta.next_allowed_at is None


class TestIncremental(unittest.IsolatedAsyncioTestCase):
    def _state(self, **kwargs):
        return SyncState(
            user_id="u1",
            locations=dict.fromkeys(SYNC_ORDER, CompletedCursor(WATERMARK)),
            initial_backfill_done=True,
            **kwargs,
        )

    async def test_every_enabled_location_is_filtered_by_its_watermark(self):
        client = FakeReaderClient(_empty_pages())

        result = await _orchestrator().run(client, self._state(), now=NOW)

        assert client.listed_locations() == list(SYNC_ORDER)
        assert all(call["updated_after"] == WATERMARK for call in client.list_calls)
        assert result.mode == MODE_INCREMENTAL
        assert result.delta.locations[SyncLocation.FEED] == CompletedCursor(WATERMARK)

    async def test_new_documents_advance_watermark(self):
        pages = _empty_pages()
        pages[SyncLocation.ARCHIVE] = {
            None: make_page([make_document("z", updated_at=NOW - timedelta(minutes=5))])
        }
        client = FakeReaderClient(pages)

        result = await _orchestrator().run(client, self._state(), now=NOW)

        assert result.delta.locations[SyncLocation.ARCHIVE] == CompletedCursor(
            NOW - timedelta(minutes=5)
        )

    async def test_stops_when_budget_runs_out(self):
        client = FakeReaderClient(_empty_pages())

        result = await _orchestrator(max_requests=3).run(client, self._state(), now=NOW)

        assert client.listed_locations() == list(SYNC_ORDER[:3])
        assert result.delta.locations[SyncLocation.SHORTLIST] == CompletedCursor(WATERMARK)
        assert result.outcome == OUTCOME_DEFERRED

    async def test_incremental_does_not_reset_bare_timestamps(self):
        client = FakeReaderClient(_empty_pages())

        await _orchestrator().run(client, self._state(), now=NOW)

        assert all(call["page_cursor"] is None for call in client.list_calls)
        assert all(call["updated_after"] is not None for call in client.list_calls)


class TestWindowAndErrors(unittest.IsolatedAsyncioTestCase):
    async def test_stale_window_gives_full_budget(self):
        state = SyncState(
            user_id="u1",
            window_started_at=NOW - timedelta(seconds=61),
            window_request_count=20,
        )
        client = FakeReaderClient(_empty_pages())

        result = await _orchestrator().run(client, state, now=NOW)

        assert result.delta.window_started_at == NOW
        assert result.delta.window_request_count == 5
        assert len(client.list_calls) == 5

    async def test_exhausted_window_returns_without_work(self):
        started = NOW - timedelta(seconds=10)
        state = SyncState(
            user_id="u1",
            locations={**dict.fromkeys(SYNC_ORDER, EMPTY), SyncLocation.INBOX: ResumableCursor("c3")},
            window_started_at=started,
            window_request_count=20,
        )
        client = FakeReaderClient(_empty_pages())

        result = await _orchestrator().run(client, state, now=NOW)

        assert client.list_calls == []
        assert result.outcome == OUTCOME_BUDGET_EXHAUSTED
        assert result.delta.next_allowed_at == started + WINDOW
        assert result.delta.window_request_count == 20
        assert result.delta.locations[SyncLocation.INBOX] == ResumableCursor("c3")

    async def test_remote_429_uses_retry_after(self):
        client = FakeReaderClient(
            _empty_pages(),
            errors={SyncLocation.LIBRARY: ReaderRateLimitError("slow down", retry_after_seconds=30)},
        )

        result = await _orchestrator().run(client, SyncState(user_id="u1"), now=NOW)

        assert result.outcome == OUTCOME_RATE_LIMITED
        assert result.delta.next_allowed_at == NOW + timedelta(seconds=30)
        assert result.delta.last_429_at == NOW
        # inbox page + the rejected library call
        assert result.delta.window_request_count == 2
        assert isinstance(result.delta.locations[SyncLocation.INBOX], CompletedCursor)
        assert result.delta.locations[SyncLocation.LIBRARY] == EMPTY

    async def test_remote_429_keeps_pages_already_cached(self):
        pages = _empty_pages()
        pages[SyncLocation.INBOX] = {
            None: make_page([make_document("a"), make_document("b")], "c2"),
            "c2": ReaderRateLimitError("slow down", retry_after_seconds=30),
        }
        cache = RecordingCache()

        result = await _orchestrator(cache).run(
            FakeReaderClient(pages), SyncState(user_id="u1"), now=NOW
        )

        assert result.outcome == OUTCOME_RATE_LIMITED
        assert [row["reader_document_id"] for row in cache.document_batches[0]] == ["a", "b"]
        assert result.delta.locations[SyncLocation.INBOX] == ResumableCursor(
            "c2", NOW - timedelta(days=1)
        )
        assert result.delta.window_request_count == 2

    async def test_remote_429_without_hint_waits_for_window(self):
        client = FakeReaderClient(
            _empty_pages(),
            errors={SyncLocation.INBOX: ReaderApiError("limited", 429)},
        )

        result = await _orchestrator().run(client, SyncState(user_id="u1"), now=NOW)

        assert result.delta.next_allowed_at == NOW + WINDOW
        assert result.delta.last_429_at == NOW

    async def test_unexpected_error_is_fatal_with_backoff(self):
        client = FakeReaderClient(_empty_pages(), errors={SyncLocation.ARCHIVE: RuntimeError("boom")})

        with pytest.raises(SyncRunError) as exc_info:
            await _orchestrator().run(client, SyncState(user_id="u1"), now=NOW)

        delta = exc_info.value.delta
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert delta.next_allowed_at == NOW + WINDOW
        assert delta.window_request_count == 3
        assert isinstance(delta.locations[SyncLocation.LIBRARY], CompletedCursor)
        assert delta.initial_backfill_done is False

    async def test_remote_404_mid_pull_is_fatal(self):
        client = FakeReaderClient(
            {SyncLocation.INBOX: {None: make_page([make_document("gone", html=None)])}},
            documents={},
        )

        with pytest.raises(SyncRunError) as exc_info:
            await _orchestrator().run(client, SyncState(user_id="u1"), now=NOW)

        assert isinstance(exc_info.value.__cause__, ReaderNotFoundError)

    async def test_last_429_is_carried_forward(self):
        earlier = NOW - timedelta(hours=1)
        client = FakeReaderClient(_empty_pages())

        result = await _orchestrator().run(
            client, SyncState(user_id="u1", last_429_at=earlier), now=NOW
        )

        assert result.delta.last_429_at == earlier

    async def test_local_budget_exhaustion_defers_and_keeps_finished_locations(self):
        async def _noop():
            return None

        async def _sync(self, location, mode, cursor, budget, **kwargs):
            if location is SyncLocation.INBOX:
                await budget.track(_noop)
                return LocationSyncResult(location, CompletedCursor(WATERMARK), WATERMARK, completed=True)
            raise BudgetExceededError(20, 20)

        with patch.object(LocationSyncer, "sync", _sync):
            result = await _orchestrator().run(FakeReaderClient(), SyncState(user_id="u1"), now=NOW)

        assert result.outcome == OUTCOME_DEFERRED
        assert result.delta.next_allowed_at == NOW + WINDOW
        assert result.delta.window_request_count == 1
        assert result.delta.locations[SyncLocation.INBOX] == CompletedCursor(WATERMARK)
        assert result.delta.locations[SyncLocation.LIBRARY] == EMPTY
        assert result.delta.backfilled_locations == frozenset({SyncLocation.INBOX})
        assert result.delta.initial_backfill_done is False
