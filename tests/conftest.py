"""
Shared fixtures: temporary stores, a controllable clock and an in-memory
stand-in for the network layer.
"""

import json

import pytest

from filtersync.catalog import FilterCatalog
from filtersync.config import Settings
from filtersync.decision import UpdateDecisionEngine
from filtersync.directives import resolve_conditions
from filtersync.downloader import FetchError, FetchResponse
from filtersync.engine import DebouncedEngine
from filtersync.models import FilterVersionRecord
from filtersync.orchestrator import UpdateOrchestrator
from filtersync.patcher import PatchExecutor
from filtersync.patches import PatchError
from filtersync.storage import ContentStore, KeyValueStorage, VersionStore

NOW = 1_700_000_000_000
BASE_URL = "https://filters.test/extension/chromium"


def filter_text(version, title="Test filter", expires="4 days", diff_path=None, rules=("||ads.example^",)):
    lines = [
        f"! Title: {title}",
        f"! Version: {version}",
        "! TimeUpdated: 2023-11-14T00:00:00+00:00",
        f"! Expires: {expires}",
    ]
    if diff_path:
        lines.append(f"! Diff-Path: {diff_path}")
    return lines + list(rules)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeFetcher:
    """
    Network stand-in.

    full:      url -> lines served by download_full
    patched:   url -> patched content (str), or None for "no patch feed"
    failures:  url -> exception raised by download_full / apply_patch
    """

    def __init__(self):
        self.full = {}
        self.patched = {}
        self.failures = {}
        self.catalog = {"filters": [], "groups": []}
        self.calls = []

    async def download_full(self, url):
        self.calls.append(("full", url))
        if url in self.failures:
            raise self.failures[url]
        if url not in self.full:
            raise FetchError(url, "HTTP 404")
        return list(self.full[url])

    async def apply_patch(self, url, content):
        self.calls.append(("patch", url))
        if url in self.failures:
            raise self.failures[url]
        return self.patched.get(url)

    async def resolve_directives(self, url, lines, conditions):
        return resolve_conditions(lines, conditions)

    async def fetch_if_modified(self, url, etag=None, last_modified=None):
        self.calls.append(("catalog", url))
        return FetchResponse(url, changed=True, text=json.dumps(self.catalog), etag='"v1"')

    def patch_failure(self, url, message="checksum mismatch after applying patch"):
        self.failures[url] = PatchError(message)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    return KeyValueStorage(tmp_path / "storage.json")


@pytest.fixture
def versions(storage, clock):
    return VersionStore(storage, clock=clock)


@pytest.fixture
def contents(tmp_path):
    return ContentStore(tmp_path / "filters", prefix="filterrules")


@pytest.fixture
def raw_contents(tmp_path):
    return ContentStore(tmp_path / "filters", prefix="raw_filterrules")


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def catalog(storage, fetcher):
    return FilterCatalog(storage, fetcher, base_url=BASE_URL)


@pytest.fixture
def executor(fetcher, catalog, versions, contents, raw_contents, settings, clock):
    return PatchExecutor(
        fetcher, catalog, versions, contents, raw_contents,
        settings=lambda: settings, clock=clock,
    )


@pytest.fixture
def rebuilds():
    return []


@pytest.fixture
def engine(rebuilds):
    return DebouncedEngine(lambda: rebuilds.append(1), delay=0.01)


@pytest.fixture
def decision(versions, catalog, clock):
    return UpdateDecisionEngine(versions, catalog.is_custom, clock=clock)


@pytest.fixture
def orchestrator(executor, decision, catalog, versions, engine, settings):
    return UpdateOrchestrator(
        executor, decision, catalog, versions, engine, settings=lambda: settings,
    )


def record(version="1.0", expires=3600, last_update_time=None, last_check_time=NOW, diff_path=None):
    return FilterVersionRecord(
        version=version,
        expires=expires,
        last_update_time=last_check_time if last_update_time is None else last_update_time,
        last_check_time=last_check_time,
        diff_path=diff_path,
    )
