"""
patcher.py - Per-Filter Update: Patch or Full Download, Validate, Commit

Runs one FilterUpdateTask end to end:

    1. read the cached content of the filter
    2. resolve the list URL (custom subscription URL, or built-in URL in
       optimized/full format)
    3. not forced: try the patch feed; no feed means a full download
    4. forced, or no feed: download the full list
    5. resolve directives and parse the header (Version is mandatory)
    6. commit resolved content, raw content and the version record

Nothing is written unless every earlier step succeeded. Any failure is
logged and returned as the task's error, so sibling tasks are unaffected.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import AbstractAsyncContextManager
from typing import Callable, Mapping, Protocol

from filtersync.catalog import FilterCatalog
from filtersync.config import Settings
from filtersync.directives import DEFAULT_CONDITIONS, DirectiveError
from filtersync.downloader import FetchError
from filtersync.header import FilterHeader, parse_header, split_lines
from filtersync.models import (
    Clock,
    DownloadFailure,
    FilterMetadata,
    FilterUpdateTask,
    FilterVersionRecord,
    MetadataUnavailable,
    ParseFailure,
    PatchApplicationFailure,
    UpdateError,
    UpdateResult,
    now_ms,
)
from filtersync.patches import PatchError
from filtersync.storage import ContentStore, VersionStore

logger = logging.getLogger(__name__)


class FilterFetcher(Protocol):
    """Network operations the executor depends on."""

    async def apply_patch(self, url: str, content: str) -> str | None: ...

    async def download_full(self, url: str) -> list[str]: ...

    async def resolve_directives(
        self, url: str, lines: list[str], conditions: Mapping[str, bool]
    ) -> list[str]: ...


class CommitLocks:
    """
    Per-filter-id locks held around the commit step.

    One process shares a single instance. Deployments with several
    processes writing the same stores can substitute a lock provider
    with the same ``__call__`` signature.
    """

    def __init__(self) -> None:
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, filter_id: int) -> AbstractAsyncContextManager:
        return self._locks[filter_id]


class PatchExecutor:
    """
    Applies update tasks one filter at a time.

    Args:
        fetcher: Network operations (downloader)
        catalog: Source of filter URLs
        versions: Version store
        contents: Resolved content store
        raw_contents: Raw (pre-directive) content store
        settings: Returns the current settings
        clock: Source of the current time in ms
        conditions: Directive condition constants
        commit_lock: Per-filter lock provider around the commit
    """

    def __init__(
        self,
        fetcher: FilterFetcher,
        catalog: FilterCatalog,
        versions: VersionStore,
        contents: ContentStore,
        raw_contents: ContentStore,
        settings: Callable[[], Settings] = Settings,
        clock: Clock = now_ms,
        conditions: Mapping[str, bool] = DEFAULT_CONDITIONS,
        commit_lock: Callable[[int], AbstractAsyncContextManager] | None = None,
    ):
        self.fetcher = fetcher
        self.catalog = catalog
        self.versions = versions
        self.contents = contents
        self.raw_contents = raw_contents
        self.settings = settings
        self.clock = clock
        self.conditions = conditions
        self.commit_lock = commit_lock or CommitLocks()

    async def resolve_url(self, filter_id: int) -> str:
        if self.catalog.is_custom(filter_id):
            url = await self.catalog.get_custom_filter_url(filter_id)
            if not url:
                raise MetadataUnavailable(filter_id, "cannot find custom filter metadata")
            return url
        return self.catalog.filter_url(filter_id, self.settings().use_optimized_filters)

    async def _fetch_patched(self, filter_id: int, url: str, current: list[str]) -> list[str] | None:
        """Raw content after applying the patch feed, or None without a feed."""
        try:
            patched = await self.fetcher.apply_patch(url, "\n".join(current))
        except (PatchError, FetchError) as e:
            raise PatchApplicationFailure(filter_id, str(e)) from e
        return None if patched is None else split_lines(patched)

    async def _fetch_full(self, filter_id: int, url: str) -> list[str]:
        try:
            return await self.fetcher.download_full(url)
        except FetchError as e:
            raise DownloadFailure(filter_id, str(e)) from e

    async def _resolve(self, filter_id: int, url: str, raw: list[str]) -> list[str]:
        try:
            return await self.fetcher.resolve_directives(url, raw, self.conditions)
        except (DirectiveError, FetchError) as e:
            raise DownloadFailure(filter_id, f"cannot resolve directives: {e}") from e

    async def _commit(
        self,
        filter_id: int,
        resolved: list[str],
        raw: list[str],
        header: FilterHeader,
        previous: FilterVersionRecord | None,
        content_changed: bool,
    ) -> FilterMetadata:
        now = self.clock()
        changed = previous is None or content_changed or previous.version != header.version
        last_update_time = header.time_updated if changed else previous.last_update_time

        record = FilterVersionRecord(
            version=header.version,
            expires=header.expires,
            last_update_time=min(last_update_time, now),
            last_check_time=now,
            diff_path=header.diff_path,
        )
        async with self.commit_lock(filter_id):
            await self.contents.set(filter_id, resolved)
            await self.raw_contents.set(filter_id, raw)
            await self.versions.set(filter_id, record)

        return FilterMetadata(
            filter_id=filter_id,
            version=header.version,
            expires=header.expires,
            time_updated=record.last_update_time,
            diff_path=header.diff_path,
            title=header.title,
        )

    async def _update(self, task: FilterUpdateTask) -> FilterMetadata | None:
        filter_id = task.filter_id
        current = await self.raw_contents.get(filter_id) or await self.contents.get(filter_id)
        url = await self.resolve_url(filter_id)

        raw: list[str] | None = None
        if not task.force and current:
            raw = await self._fetch_patched(filter_id, url, current)
            if raw is not None and raw == current:
                logger.debug("Filter %d is up to date", filter_id)
                return None
        if raw is None:
            raw = await self._fetch_full(filter_id, url)

        resolved = await self._resolve(filter_id, url, raw)
        header = parse_header(resolved, self.clock()) or parse_header(raw, self.clock())
        if header is None:
            raise ParseFailure(filter_id, "no version found in filter header")

        previous = await self.versions.get(filter_id)
        return await self._commit(filter_id, resolved, raw, header, previous, raw != current)

    async def apply(self, task: FilterUpdateTask) -> UpdateResult:
        """
        Update one filter.

        Returns:
            UpdateResult with metadata if the content was committed, an error
            if the task failed, or neither if the filter was already current
        """
        try:
            metadata = await self._update(task)
        except UpdateError as e:
            logger.error("Cannot update filter %d: %s", task.filter_id, e.reason)
            return UpdateResult(task.filter_id, error=e)
        except Exception as e:
            logger.exception("Unexpected error updating filter %d", task.filter_id)
            return UpdateResult(task.filter_id, error=UpdateError(task.filter_id, repr(e)))

        if metadata is not None:
            logger.info("Updated filter %d to version %s", task.filter_id, metadata.version)
        return UpdateResult(task.filter_id, metadata=metadata)
