"""
Tests for filtersync.decision: staleness policy and candidate selection.
"""

import asyncio

import pytest

from conftest import NOW, record
from filtersync.config import FiltersUpdateTime
from filtersync.decision import (
    RECENTLY_CHECKED_FILTER_TIMEOUT_MS,
    is_expired,
    merge_tasks,
)
from filtersync.models import FilterUpdateTask

SECOND = 1000
MINUTE = 60 * SECOND


def seed(versions, records):
    async def _seed():
        for filter_id, rec in records.items():
            await versions.set(filter_id, rec)
    asyncio.run(_seed())


class TestIsExpired:
    def test_list_ttl_expired(self):
        rec = record(expires=3600, last_check_time=NOW - 3700 * SECOND)
        assert is_expired(rec, FiltersUpdateTime.DEFAULT, NOW)

    def test_list_ttl_not_expired(self):
        rec = record(expires=3600, last_check_time=NOW - 3500 * SECOND)
        assert not is_expired(rec, FiltersUpdateTime.DEFAULT, NOW)

    def test_list_ttl_boundary_is_expired(self):
        rec = record(expires=3600, last_check_time=NOW - 3600 * SECOND)
        assert is_expired(rec, FiltersUpdateTime.DEFAULT, NOW)

    def test_fixed_period_ignores_expires(self):
        rec = record(expires=10, last_check_time=NOW - 30 * MINUTE)
        assert not is_expired(rec, FiltersUpdateTime.ONE_HOUR, NOW)
        assert is_expired(rec, 30 * MINUTE, NOW)

    def test_missing_record_is_expired(self):
        assert is_expired(None, FiltersUpdateTime.DEFAULT, NOW)
        assert is_expired(None, FiltersUpdateTime.ONE_HOUR, NOW)


class TestMergeTasks:
    def test_force_wins_over_patch(self):
        merged = merge_tasks(
            [FilterUpdateTask(1, False), FilterUpdateTask(2, False)],
            [FilterUpdateTask(2, True)],
        )
        assert merged == [FilterUpdateTask(1, False), FilterUpdateTask(2, True)]

    def test_patch_does_not_downgrade_force(self):
        merged = merge_tasks([FilterUpdateTask(3, True)], [FilterUpdateTask(3, False)])
        assert merged == [FilterUpdateTask(3, True)]


class TestSelectCandidates:
    def test_force_update_selects_everything(self, decision, versions):
        seed(versions, {1: record(last_check_time=NOW)})
        tasks = asyncio.run(decision.select_candidates([1, 2], True, FiltersUpdateTime.DEFAULT))
        assert tasks == [FilterUpdateTask(1, True), FilterUpdateTask(2, True)]

    def test_fresh_filter_without_diff_path_skipped(self, decision, versions):
        seed(versions, {1: record(expires=3600, last_check_time=NOW - 60 * SECOND)})
        tasks = asyncio.run(decision.select_candidates([1], False, FiltersUpdateTime.DEFAULT))
        assert tasks == []

    def test_fresh_filter_with_diff_path_gets_patch_task(self, decision, versions):
        seed(versions, {1: record(last_check_time=NOW, diff_path="../patches/1.patch")})
        tasks = asyncio.run(decision.select_candidates([1], False, FiltersUpdateTime.DEFAULT))
        assert tasks == [FilterUpdateTask(1, False)]

    def test_expired_filter_with_diff_path_is_forced(self, decision, versions):
        seed(versions, {
            1: record(expires=3600, last_check_time=NOW - 3700 * SECOND, diff_path="../p.patch"),
        })
        tasks = asyncio.run(decision.select_candidates([1], False, FiltersUpdateTime.DEFAULT))
        assert tasks == [FilterUpdateTask(1, True)]

    def test_unknown_filter_is_forced(self, decision):
        tasks = asyncio.run(decision.select_candidates([7], False, FiltersUpdateTime.DEFAULT))
        assert tasks == [FilterUpdateTask(7, True)]

    def test_fixed_update_period(self, decision, versions):
        seed(versions, {
            1: record(expires=999_999, last_check_time=NOW - 2 * 60 * MINUTE),
            2: record(expires=1, last_check_time=NOW - 10 * MINUTE),
        })
        tasks = asyncio.run(decision.select_candidates([1, 2], False, FiltersUpdateTime.ONE_HOUR))
        assert tasks == [FilterUpdateTask(1, True)]

    def test_duplicate_ids_collapse(self, decision):
        tasks = asyncio.run(decision.select_candidates([5, 5], False, FiltersUpdateTime.DEFAULT))
        assert tasks == [FilterUpdateTask(5, True)]


class TestSelectFilterIdsToCheck:
    @pytest.mark.parametrize("minutes_ago, expected", [(4, []), (6, [2])])
    def test_builtin_recency_window(self, decision, versions, minutes_ago, expected):
        seed(versions, {2: record(last_check_time=NOW - minutes_ago * MINUTE)})
        assert asyncio.run(decision.select_filter_ids_to_check([2])) == expected

    def test_custom_filter_always_selected(self, decision, versions):
        seed(versions, {1000: record(last_check_time=NOW)})
        assert asyncio.run(decision.select_filter_ids_to_check([1000])) == [1000]

    def test_never_checked_builtin_selected(self, decision):
        assert asyncio.run(decision.select_filter_ids_to_check([3])) == [3]

    def test_window_constant(self):
        assert RECENTLY_CHECKED_FILTER_TIMEOUT_MS == 5 * MINUTE
