"""
decision.py - Which Filters to Update, and How

Two selections over installed, enabled filters:

    select_candidates          periodic / manual "update all" cycle:
                               filters with a patch feed get a patch attempt,
                               expired filters get a full (forced) download
    select_filter_ids_to_check enable-triggered checks: custom filters always,
                               built-in filters unless checked in the last
                               five minutes

Staleness:
    update_period == FiltersUpdateTime.DEFAULT
        expired when last_check_time + expires * 1000 <= now
    any other period (ms)
        expired when last_check_time + update_period <= now

A filter without a version record has never been downloaded and is
always expired.
"""
from __future__ import annotations

import logging
from typing import Callable, Final, Iterable, Mapping

from filtersync.config import FiltersUpdateTime
from filtersync.models import Clock, FilterUpdateTask, FilterVersionRecord, now_ms
from filtersync.storage import VersionStore

logger = logging.getLogger(__name__)

#: Filters checked (added, enabled or updated) this recently are not rechecked
RECENTLY_CHECKED_FILTER_TIMEOUT_MS: Final[int] = 1000 * 60 * 5


def is_expired(
    record: FilterVersionRecord | None,
    update_period: int,
    now: int,
) -> bool:
    """
    Check whether a filter is due for a full update.

    Example:
        >>> rec = FilterVersionRecord("1.0", 3600, 0, 1_000_000)
        >>> is_expired(rec, FiltersUpdateTime.DEFAULT, 1_000_000 + 3_700_000)
        True
        >>> is_expired(rec, FiltersUpdateTime.DEFAULT, 1_000_000 + 3_500_000)
        False
    """
    if record is None:
        return True
    if update_period == FiltersUpdateTime.DEFAULT:
        # "expires" is declared in seconds
        return record.last_check_time + record.expires * 1000 <= now
    return record.last_check_time + update_period <= now


def merge_tasks(*groups: Iterable[FilterUpdateTask]) -> list[FilterUpdateTask]:
    """
    Merge task lists by filter id, keeping first-seen order.

    When the same filter appears more than once, a forced task wins.
    """
    merged: dict[int, FilterUpdateTask] = {}
    for group in groups:
        for task in group:
            if task.filter_id not in merged or task.force:
                merged[task.filter_id] = task
    return list(merged.values())


class UpdateDecisionEngine:
    """
    Classifies filters as "patch", "full update" or "skip".

    Args:
        versions: Version store the decisions are based on
        is_custom: Predicate telling custom filters from built-in ones
        clock: Source of the current time in ms
    """

    def __init__(
        self,
        versions: VersionStore,
        is_custom: Callable[[int], bool],
        clock: Clock = now_ms,
    ):
        self.versions = versions
        self.is_custom = is_custom
        self.clock = clock

    @staticmethod
    def select_filters_with_diff_path(
        filter_ids: Iterable[int],
        records: Mapping[int, FilterVersionRecord],
    ) -> list[FilterUpdateTask]:
        # Expiry is not checked here: the patch feed itself tells whether
        # a newer version is published.
        return [
            FilterUpdateTask(filter_id, force=False)
            for filter_id in filter_ids
            if (record := records.get(filter_id)) is not None and record.diff_path
        ]

    @staticmethod
    def select_expired_filters(
        filter_ids: Iterable[int],
        records: Mapping[int, FilterVersionRecord],
        update_period: int,
        now: int,
    ) -> list[FilterUpdateTask]:
        return [
            FilterUpdateTask(filter_id, force=True)
            for filter_id in filter_ids
            if is_expired(records.get(filter_id), update_period, now)
        ]

    async def select_candidates(
        self,
        filter_ids: Iterable[int],
        force_update: bool,
        update_period: int,
    ) -> list[FilterUpdateTask]:
        """
        Build the task list for an update cycle.

        Args:
            filter_ids: Installed and enabled filters
            force_update: Update everything fully, ignoring staleness
            update_period: Update period setting in ms, or FiltersUpdateTime.DEFAULT

        Returns:
            One task per filter to update; filters not due are left out
        """
        ids = list(dict.fromkeys(filter_ids))
        if force_update:
            return [FilterUpdateTask(filter_id, force=True) for filter_id in ids]

        records = await self.versions.get_all()
        now = self.clock()

        with_diff_path = self.select_filters_with_diff_path(ids, records)
        expired = self.select_expired_filters(ids, records, update_period, now)
        tasks = merge_tasks(with_diff_path, expired)

        logger.debug(
            "Selected %d of %d filters (%d patchable, %d expired)",
            len(tasks), len(ids), len(with_diff_path), len(expired),
        )
        return tasks

    async def select_filter_ids_to_check(self, filter_ids: Iterable[int]) -> list[int]:
        """
        Keep custom filters and built-in filters not checked recently.

        Custom filters have no trusted patch feed, so they are always
        rechecked.
        """
        records = await self.versions.get_all()
        now = self.clock()

        selected = []
        for filter_id in dict.fromkeys(filter_ids):
            record = records.get(filter_id)
            outdated = (
                record is None
                or now - record.last_check_time > RECENTLY_CHECKED_FILTER_TIMEOUT_MS
            )
            if self.is_custom(filter_id) or outdated:
                selected.append(filter_id)
        return selected
