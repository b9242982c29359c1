"""
orchestrator.py - Update Cycles Over Many Filters

Drives one update cycle: picks the filters to update, refreshes the
built-in catalog when needed, runs every filter's task concurrently,
waits for all of them (a failed filter never stops its siblings) and
tells the rule engine to rebuild when anything changed.

Entry points:
    auto_update_filters(force_update)   scheduler tick, or "update all"
    check_for_filters_updates(ids)      filters just enabled or added
    run(tasks)                          a given task list
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Iterable

from filtersync.catalog import FilterCatalog
from filtersync.config import Settings
from filtersync.decision import UpdateDecisionEngine
from filtersync.downloader import FetchError
from filtersync.engine import DebouncedEngine
from filtersync.models import (
    FilterMetadata,
    FilterUpdateTask,
    UpdateError,
    UpdateReport,
    UpdateResult,
)
from filtersync.patcher import PatchExecutor
from filtersync.storage import VersionStore

logger = logging.getLogger(__name__)


class UpdateOrchestrator:
    """
    Runs update cycles.

    Args:
        executor: Per-filter update executor
        decision: Candidate selection
        catalog: Filter catalog (metadata refresh, installed filters)
        versions: Version store
        engine: Debounced rule engine signal
        settings: Returns the current settings
    """

    def __init__(
        self,
        executor: PatchExecutor,
        decision: UpdateDecisionEngine,
        catalog: FilterCatalog,
        versions: VersionStore,
        engine: DebouncedEngine,
        settings: Callable[[], Settings] = Settings,
    ):
        self.executor = executor
        self.decision = decision
        self.catalog = catalog
        self.versions = versions
        self.engine = engine
        self.settings = settings

    async def _refresh_catalog(self, tasks: list[FilterUpdateTask]) -> None:
        # The catalog cannot be fetched per filter; load it once when a
        # built-in filter is about to be fully downloaded.
        if not any(task.force and not self.catalog.is_custom(task.filter_id) for task in tasks):
            return
        try:
            await self.catalog.refresh()
        except (FetchError, ValueError, OSError) as e:
            logger.warning("Cannot refresh filters catalog, using cached metadata: %s", e)

    async def _refresh_check_times(self, filter_ids: Iterable[int]) -> None:
        try:
            await self.versions.refresh_last_check_time(filter_ids)
        except OSError as e:
            logger.warning("Cannot refresh last check time: %s", e)

    async def run(self, tasks: Iterable[FilterUpdateTask]) -> UpdateReport:
        """
        Update the given filters concurrently.

        Returns:
            Report with updated filters' metadata, failed tasks and
            filters that were already up to date
        """
        tasks = list(tasks)
        report = UpdateReport()
        if not tasks:
            return report

        await self._refresh_catalog(tasks)

        results = await asyncio.gather(
            *(self.executor.apply(task) for task in tasks),
            return_exceptions=True,
        )

        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                error = UpdateError(task.filter_id, repr(result))
                result = UpdateResult(task.filter_id, error=error)

            if result.metadata is not None:
                report.succeeded.append(result.metadata)
            elif result.error is not None:
                logger.error("Cannot update filter %d due to: %s", task.filter_id, result.error.reason)
                report.failed.append(result)
            else:
                report.unchanged.append(task.filter_id)

        return report

    async def update_filters(self, tasks: Iterable[FilterUpdateTask]) -> list[FilterMetadata]:
        return (await self.run(tasks)).succeeded

    async def auto_update_filters(self, force_update: bool = False) -> list[FilterMetadata]:
        """
        Update installed and enabled filters that are due.

        Does nothing when filtering or auto updates are disabled, unless
        ``force_update`` is set, in which case every filter is fully updated.

        Returns:
            Metadata of updated filters
        """
        settings = self.settings()
        if settings.filtering_disabled and not force_update:
            logger.debug("Filtering is disabled, skipping update")
            return []
        if settings.auto_update_disabled and not force_update:
            logger.debug("Auto update is disabled, skipping update")
            return []

        start = time.monotonic()
        filter_ids = await self.catalog.get_installed_and_enabled_filter_ids()
        tasks = await self.decision.select_candidates(
            filter_ids, force_update, settings.update_period
        )

        report = await self.run(tasks)
        await self._refresh_check_times(task.filter_id for task in tasks)

        if report.succeeded:
            self.engine.debounce_update()

        logger.info(
            "Update cycle: %d checked, %d updated, %d unchanged, %d failed (%.1fs)",
            len(tasks), len(report.succeeded), len(report.unchanged),
            len(report.failed), time.monotonic() - start,
        )
        return report.succeeded

    async def check_for_filters_updates(self, filter_ids: Iterable[int]) -> list[FilterMetadata]:
        """
        Fully update just-enabled filters unless they were checked recently.

        Custom filters are always checked. Every selected filter has its
        last check time refreshed afterwards, updated or not.

        Returns:
            Metadata of updated filters
        """
        selected = await self.decision.select_filter_ids_to_check(filter_ids)
        report = await self.run(FilterUpdateTask(filter_id, force=True) for filter_id in selected)
        await self._refresh_check_times(selected)

        if report.succeeded:
            self.engine.debounce_update()
        return report.succeeded
