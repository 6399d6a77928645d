"""Tests for the per-run request budget and window normalization."""

from __future__ import annotations

import unittest
from datetime import timedelta

import pytest

from speed_reader.adapters.readwise.sync.budget import (
    WINDOW,
    BudgetExceededError,
    RequestBudget,
    normalize_window,
)
from tests.conftest import NOW


class TestRequestBudget(unittest.IsolatedAsyncioTestCase):
    async def test_track_increments_before_calling(self):
        budget = RequestBudget(0, 3)
        seen: list[int] = []

        async def call():
            seen.append(budget.used())
            return "ok"

        assert await budget.track(call) == "ok"
        assert seen == [1]
        assert budget.used() == 1
        assert budget.remaining() == 2

    async def test_failing_call_still_consumes_budget(self):
        budget = RequestBudget(0, 2)

        async def boom():
            raise RuntimeError("remote down")

        with pytest.raises(RuntimeError):
            await budget.track(boom)

        assert budget.used() == 1

    async def test_exhausted_budget_refuses_without_calling(self):
        budget = RequestBudget(2, 2)
        called = False

        async def call():
            nonlocal called
            called = True

        with pytest.raises(BudgetExceededError) as exc_info:
            await budget.track(call)

        assert called is False
        assert budget.used() == 2
        assert exc_info.value.limit == 2

    async def test_used_is_monotonic_and_capped(self):
        budget = RequestBudget(0, 4)
        history = []

        async def call():
            return None

        for _ in range(7):
            try:
                await budget.track(call)
            except BudgetExceededError:
                pass
            history.append(budget.used())

        assert history == sorted(history)
        assert max(history) == 4
        assert not budget.can_request()
        assert budget.remaining() == 0


def test_negative_initial_count_is_clamped():
    budget = RequestBudget(-3, 5)
    assert budget.used() == 0
    assert budget.remaining() == 5


def test_normalize_window_starts_fresh_without_previous_window():
    window = normalize_window(None, 7, NOW)
    assert window.started_at == NOW
    assert window.request_count == 0
    assert window.expires_at == NOW + WINDOW


def test_normalize_window_carries_count_inside_window():
    started = NOW - timedelta(seconds=30)
    window = normalize_window(started, 12, NOW)
    assert window.started_at == started
    assert window.request_count == 12


def test_normalize_window_rolls_over_after_sixty_one_seconds():
    window = normalize_window(NOW - timedelta(seconds=61), 20, NOW)
    budget = RequestBudget(window.request_count, 20)

    assert window.started_at == NOW
    assert budget.remaining() == 20


def test_normalize_window_rolls_over_at_exact_boundary():
    window = normalize_window(NOW - timedelta(seconds=60), 20, NOW)
    assert window.request_count == 0


def test_normalize_window_treats_missing_count_as_zero():
    window = normalize_window(NOW - timedelta(seconds=5), None, NOW)
    assert window.request_count == 0
