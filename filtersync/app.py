#!/usr/bin/env python3
"""
app.py - Composition Root and Command Line Entry Point

Wires storage, downloader, catalog, consent tracker, decision engine,
executor, orchestrator and scheduler into one application object, and
exposes them through a small CLI.

Usage:
    python -m filtersync.app --data-dir .filtersync --enable 2 --once
    python -m filtersync.app --add-custom https://example.org/list.txt --once
    python -m filtersync.app --force --once
    python -m filtersync.app                # run the periodic scheduler
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

import aiofiles

from filtersync.catalog import FilterCatalog
from filtersync.config import (
    ANNOYANCES_FILTER_IDS,
    DEFAULT_CONCURRENCY,
    DEFAULT_DATA_DIR,
    DEFAULT_ENGINE_DEBOUNCE,
    DEFAULT_FILTERS_URL,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    Settings,
)
from filtersync.consent import ConsentTracker
from filtersync.decision import UpdateDecisionEngine
from filtersync.downloader import FilterDownloader
from filtersync.engine import DebouncedEngine
from filtersync.models import FilterMetadata, now_ms
from filtersync.orchestrator import UpdateOrchestrator
from filtersync.patcher import PatchExecutor
from filtersync.scheduler import FilterUpdateScheduler
from filtersync.storage import STORAGE_FILE, ContentStore, KeyValueStorage, VersionStore

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
RULES_FILE = "rules.txt"


class Application:
    """
    Process-wide components, constructed once.

    Use as an async context manager so the HTTP session is closed.
    """

    def __init__(
        self,
        data_dir: Path | str = DEFAULT_DATA_DIR,
        filters_url: str = DEFAULT_FILTERS_URL,
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout: int = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        debounce: float = DEFAULT_ENGINE_DEBOUNCE,
    ):
        self.data_dir = Path(data_dir)
        self.settings = Settings()

        self.storage = KeyValueStorage(self.data_dir / STORAGE_FILE)
        self.versions = VersionStore(self.storage, clock=now_ms)
        self.contents = ContentStore(self.data_dir / "filters", prefix="filterrules")
        self.raw_contents = ContentStore(self.data_dir / "filters", prefix="raw_filterrules")

        self.downloader = FilterDownloader(concurrency=concurrency, timeout=timeout, retries=retries)
        self.catalog = FilterCatalog(self.storage, self.downloader, base_url=filters_url)
        self.consent = ConsentTracker(self.storage)
        self.engine = DebouncedEngine(self.rebuild_rules, delay=debounce)

        self.decision = UpdateDecisionEngine(self.versions, self.catalog.is_custom, clock=now_ms)
        self.executor = PatchExecutor(
            self.downloader,
            self.catalog,
            self.versions,
            self.contents,
            self.raw_contents,
            settings=self.get_settings,
        )
        self.orchestrator = UpdateOrchestrator(
            self.executor,
            self.decision,
            self.catalog,
            self.versions,
            self.engine,
            settings=self.get_settings,
        )
        self.scheduler = FilterUpdateScheduler(self.orchestrator, settings=self.get_settings)

    def get_settings(self) -> Settings:
        return self.settings

    async def load_settings(self) -> Settings:
        self.settings = Settings.from_dict(await self.storage.get(SETTINGS_KEY))
        return self.settings

    async def save_settings(self) -> None:
        await self.storage.set(SETTINGS_KEY, self.settings.to_dict())

    async def __aenter__(self) -> Application:
        await self.load_settings()
        await self.downloader.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.scheduler.stop()
        await self.engine.flush()
        await self.downloader.close()

    async def enable_filter(self, filter_id: int) -> bool:
        """
        Enable a filter and check it for updates.

        Filters that require consent are left disabled until consent is
        granted.

        Returns:
            True if the filter was enabled
        """
        if filter_id in ANNOYANCES_FILTER_IDS and not await self.consent.is_consented_filter(filter_id):
            logger.warning("Filter %d requires consent before it can be enabled", filter_id)
            return False
        await self.catalog.set_filter_state(filter_id, installed=True, enabled=True)
        await self.scheduler.check([filter_id])
        return True

    async def rebuild_rules(self) -> None:
        """Write the merged resolved rules of every enabled filter."""
        output_path = self.data_dir / RULES_FILE
        temp_path = output_path.with_suffix(".tmp")
        total = 0
        self.data_dir.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(temp_path, "w", encoding="utf-8", newline="\n") as f:
            for filter_id in await self.catalog.get_installed_and_enabled_filter_ids():
                for line in await self.contents.get(filter_id):
                    await f.write(line + "\n")
                    total += 1
        temp_path.replace(output_path)
        logger.info("Wrote %d rules to %s", total, output_path)


def print_summary(updated: list[FilterMetadata], elapsed: float) -> None:
    print(f"✅ Updated: {len(updated)} filter(s) in {elapsed:.1f}s")
    for meta in updated:
        title = f" ({meta.title})" if meta.title else ""
        print(f"   - {meta.filter_id}{title}: version {meta.version}")


async def run(args: argparse.Namespace) -> int:
    async with Application(
        data_dir=args.data_dir,
        filters_url=args.filters_url,
        concurrency=args.concurrency,
        timeout=args.timeout,
        retries=args.retries,
    ) as app:
        if args.update_period is not None:
            app.settings.update_period = args.update_period
            await app.save_settings()

        for filter_id in args.consent:
            await app.consent.add_filter_ids([filter_id])

        for url in args.add_custom:
            filter_id = await app.catalog.add_custom_filter(url)
            print(f"➕ Subscribed to {url} as filter {filter_id}")
            args.check.append(filter_id)

        for filter_id in args.disable:
            await app.catalog.set_filter_state(filter_id, installed=True, enabled=False)

        start = time.time()
        updated: list[FilterMetadata] = []
        for filter_id in args.enable:
            if await app.enable_filter(filter_id):
                print(f"🔌 Enabled filter {filter_id}")

        if args.check:
            updated += await app.scheduler.check(args.check)

        if args.once or args.force:
            updated += await app.scheduler.update(force_update=args.force)
            print_summary(updated, time.time() - start)
            return 0

        if updated:
            print_summary(updated, time.time() - start)

        print(f"🔄 Checking for filter updates every {app.settings.check_period}s")
        app.scheduler.start()
        await app.scheduler.wait()
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Keep filter lists up to date")
    parser.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Directory for storage and filter files")
    parser.add_argument("--filters-url", default=DEFAULT_FILTERS_URL, help="Base URL of built-in filters")
    parser.add_argument("--once", action="store_true", help="Run a single update cycle and exit")
    parser.add_argument("--force", action="store_true", help="Fully update every enabled filter and exit")
    parser.add_argument("--check", type=int, nargs="*", default=[], help="Filter ids to check now")
    parser.add_argument("--enable", type=int, action="append", default=[], help="Enable a filter id")
    parser.add_argument("--disable", type=int, action="append", default=[], help="Disable a filter id")
    parser.add_argument("--consent", type=int, action="append", default=[], help="Grant consent for a filter id")
    parser.add_argument("--add-custom", action="append", default=[], metavar="URL", help="Subscribe to a custom list")
    parser.add_argument("--update-period", type=int, help="Update period in ms (-1: list default, 0: disabled)")
    parser.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY, help="Max concurrent downloads")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT, help="Request timeout in seconds")
    parser.add_argument("--retries", type=int, default=DEFAULT_RETRIES, help="Number of retries per URL")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
