"""
catalog.py - Filter Catalog, Subscriptions and Installation State

Knows where every filter comes from and which filters take part in
updates:

    - built-in filters are listed in the remote metadata catalog
      (``filters.json``) and downloaded from ``<base>/filters/<id>.txt``
    - custom filters are user subscriptions to arbitrary URLs, with ids
      starting at ``CUSTOM_FILTERS_START_ID``
    - a filter is updated only while it is installed, enabled and its
      group is enabled
"""
from __future__ import annotations

import json
import logging
from typing import Any

from filtersync.config import CUSTOM_FILTERS_START_ID, DEFAULT_FILTERS_URL
from filtersync.downloader import FilterDownloader
from filtersync.storage import KeyValueStorage

logger = logging.getLogger(__name__)

METADATA_KEY = "filters-metadata"
METADATA_CACHE_KEY = "filters-metadata-http"
CUSTOM_FILTERS_KEY = "custom-filters"
FILTERS_STATE_KEY = "filters-state"
GROUPS_STATE_KEY = "groups-state"

#: Group that holds every custom filter
CUSTOM_FILTERS_GROUP_ID = 0


class FilterCatalog:
    """
    Catalog of built-in and custom filters.

    Args:
        storage: Key/value storage holding catalog, subscriptions and state
        downloader: Fetcher used to refresh the remote catalog
        base_url: Base URL of the built-in filter distribution
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        downloader: FilterDownloader,
        base_url: str = DEFAULT_FILTERS_URL,
    ):
        self.storage = storage
        self.downloader = downloader
        self.base_url = base_url.rstrip("/")

    @staticmethod
    def is_custom(filter_id: int) -> bool:
        return filter_id >= CUSTOM_FILTERS_START_ID

    def filter_url(self, filter_id: int, optimized: bool) -> str:
        """URL of a built-in filter, in optimized or full format."""
        suffix = "_optimized" if optimized else ""
        return f"{self.base_url}/filters/{filter_id}{suffix}.txt"

    @property
    def metadata_url(self) -> str:
        return f"{self.base_url}/filters.json"

    # -------------------------------------------------------------------------
    # Remote metadata
    # -------------------------------------------------------------------------

    async def refresh(self) -> bool:
        """
        Reload the built-in filters catalog from the remote server.

        Conditional headers from the previous download are sent so an
        unchanged catalog costs a 304 and no body.

        Returns:
            True if a new catalog was stored

        Raises:
            FetchError: If the catalog cannot be downloaded
            ValueError: If the downloaded catalog is not valid JSON
        """
        validators = await self.storage.get(METADATA_CACHE_KEY, {}) or {}
        response = await self.downloader.fetch_if_modified(
            self.metadata_url,
            etag=validators.get("etag"),
            last_modified=validators.get("last_modified"),
        )
        if not response.changed:
            logger.debug("Filters catalog not modified")
            return False

        metadata = json.loads(response.text or "")
        if not isinstance(metadata, dict) or not isinstance(metadata.get("filters"), list):
            raise ValueError("filters catalog has no 'filters' list")

        await self.storage.set(METADATA_KEY, metadata)
        await self.storage.set(METADATA_CACHE_KEY, {
            "etag": response.etag,
            "last_modified": response.last_modified,
        })
        logger.info("Loaded filters catalog with %d filters", len(metadata["filters"]))
        return True

    async def get_filter_metadata(self, filter_id: int) -> dict[str, Any] | None:
        metadata = await self.storage.get(METADATA_KEY, {}) or {}
        for entry in metadata.get("filters", []):
            if entry.get("filterId") == filter_id:
                return entry
        return None

    async def _group_of(self, filter_id: int) -> int | None:
        if self.is_custom(filter_id):
            return CUSTOM_FILTERS_GROUP_ID
        entry = await self.get_filter_metadata(filter_id)
        return entry.get("groupId") if entry else None

    # -------------------------------------------------------------------------
    # Custom filters
    # -------------------------------------------------------------------------

    async def get_custom_filter(self, filter_id: int) -> dict[str, Any] | None:
        custom = await self.storage.get(CUSTOM_FILTERS_KEY, {}) or {}
        return custom.get(str(filter_id))

    async def get_custom_filter_url(self, filter_id: int) -> str | None:
        entry = await self.get_custom_filter(filter_id)
        return entry.get("customUrl") if entry else None

    async def add_custom_filter(self, url: str, title: str | None = None) -> int:
        """Subscribe to a list at ``url``; returns the allocated filter id."""
        allocated: list[int] = []

        def add(current: Any) -> dict[str, Any]:
            custom = dict(current or {})
            ids = [int(key) for key in custom] or [CUSTOM_FILTERS_START_ID - 1]
            filter_id = max(max(ids) + 1, CUSTOM_FILTERS_START_ID)
            custom[str(filter_id)] = {"customUrl": url, "title": title or url}
            allocated.append(filter_id)
            return custom

        await self.storage.update(CUSTOM_FILTERS_KEY, add, {})
        filter_id = allocated[0]
        await self.set_filter_state(filter_id, installed=True, enabled=True)
        return filter_id

    async def remove_custom_filter(self, filter_id: int) -> None:
        await self.storage.update(
            CUSTOM_FILTERS_KEY,
            lambda current: {k: v for k, v in (current or {}).items() if k != str(filter_id)},
            {},
        )
        await self.storage.update(
            FILTERS_STATE_KEY,
            lambda current: {k: v for k, v in (current or {}).items() if k != str(filter_id)},
            {},
        )

    # -------------------------------------------------------------------------
    # Installation state
    # -------------------------------------------------------------------------

    async def set_filter_state(self, filter_id: int, installed: bool, enabled: bool) -> None:
        def put(current: Any) -> dict[str, Any]:
            state = dict(current or {})
            state[str(filter_id)] = {"installed": installed, "enabled": enabled}
            return state

        await self.storage.update(FILTERS_STATE_KEY, put, {})

    async def set_group_enabled(self, group_id: int, enabled: bool) -> None:
        def put(current: Any) -> dict[str, Any]:
            state = dict(current or {})
            state[str(group_id)] = {"enabled": enabled}
            return state

        await self.storage.update(GROUPS_STATE_KEY, put, {})

    async def get_installed_and_enabled_filter_ids(self) -> list[int]:
        """Ids of installed, enabled filters whose group is enabled, sorted."""
        filters_state = await self.storage.get(FILTERS_STATE_KEY, {}) or {}
        groups_state = await self.storage.get(GROUPS_STATE_KEY, {}) or {}

        ids = []
        for key, state in filters_state.items():
            if not (state.get("installed") and state.get("enabled")):
                continue
            filter_id = int(key)
            group_id = await self._group_of(filter_id)
            if group_id is not None:
                group = groups_state.get(str(group_id), {})
                if group.get("enabled", True) is False:
                    continue
            ids.append(filter_id)
        return sorted(ids)

