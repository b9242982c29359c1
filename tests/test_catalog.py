"""
Tests for filtersync.catalog
"""

import asyncio

import pytest

from conftest import BASE_URL
from filtersync.catalog import METADATA_CACHE_KEY, FilterCatalog
from filtersync.config import CUSTOM_FILTERS_START_ID
from filtersync.downloader import FetchResponse


class TestUrls:
    def test_builtin_urls(self, catalog):
        assert catalog.filter_url(2, optimized=False) == f"{BASE_URL}/filters/2.txt"
        assert catalog.filter_url(2, optimized=True) == f"{BASE_URL}/filters/2_optimized.txt"
        assert catalog.metadata_url == f"{BASE_URL}/filters.json"

    def test_custom_id_boundary(self):
        assert not FilterCatalog.is_custom(CUSTOM_FILTERS_START_ID - 1)
        assert FilterCatalog.is_custom(CUSTOM_FILTERS_START_ID)


class TestCustomFilters:
    def test_ids_are_allocated_from_start(self, catalog):
        async def scenario():
            first = await catalog.add_custom_filter("https://lists.example/a.txt")
            second = await catalog.add_custom_filter("https://lists.example/b.txt", title="B")
            return first, second, await catalog.get_custom_filter(second)

        first, second, entry = asyncio.run(scenario())
        assert (first, second) == (CUSTOM_FILTERS_START_ID, CUSTOM_FILTERS_START_ID + 1)
        assert entry == {"customUrl": "https://lists.example/b.txt", "title": "B"}

    def test_added_filter_is_enabled_until_removed(self, catalog):
        async def scenario():
            filter_id = await catalog.add_custom_filter("https://lists.example/a.txt")
            enabled = await catalog.get_installed_and_enabled_filter_ids()
            await catalog.remove_custom_filter(filter_id)
            after = await catalog.get_installed_and_enabled_filter_ids()
            url = await catalog.get_custom_filter_url(filter_id)
            return filter_id, enabled, after, url

        filter_id, enabled, after, url = asyncio.run(scenario())
        assert enabled == [filter_id]
        assert after == []
        assert url is None


class TestInstalledAndEnabled:
    def test_filter_and_group_state(self, catalog, fetcher):
        fetcher.catalog = {"filters": [
            {"filterId": 2, "groupId": 1},
            {"filterId": 14, "groupId": 4},
            {"filterId": 3, "groupId": 1},
        ]}

        async def scenario():
            await catalog.refresh()
            await catalog.set_filter_state(14, installed=True, enabled=True)
            await catalog.set_filter_state(2, installed=True, enabled=True)
            await catalog.set_filter_state(3, installed=True, enabled=False)
            await catalog.set_filter_state(5, installed=False, enabled=True)
            before = await catalog.get_installed_and_enabled_filter_ids()
            await catalog.set_group_enabled(4, False)
            return before, await catalog.get_installed_and_enabled_filter_ids()

        before, after = asyncio.run(scenario())
        assert before == [2, 14]
        assert after == [2]


class TestRefresh:
    def test_stores_catalog_and_validators(self, catalog, fetcher, storage):
        fetcher.catalog = {"filters": [{"filterId": 2, "groupId": 1, "name": "Base"}]}

        async def scenario():
            changed = await catalog.refresh()
            return changed, await catalog.get_filter_metadata(2), await storage.get(METADATA_CACHE_KEY)

        changed, entry, validators = asyncio.run(scenario())
        assert changed
        assert entry["name"] == "Base"
        assert validators["etag"] == '"v1"'

    def test_not_modified_keeps_catalog(self, catalog, fetcher):
        async def not_modified(url, etag=None, last_modified=None):
            return FetchResponse(url, changed=False)

        fetcher.fetch_if_modified = not_modified
        assert asyncio.run(catalog.refresh()) is False

    def test_invalid_catalog(self, catalog, fetcher):
        fetcher.catalog = {"groups": []}
        with pytest.raises(ValueError):
            asyncio.run(catalog.refresh())
