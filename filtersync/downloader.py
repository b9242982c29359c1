#!/usr/bin/env python3
"""
downloader.py - Async Filter List Fetcher

Network side of the update core: full downloads, patch feeds, included
lists and the metadata catalog, all over one pooled aiohttp session with
retries and exponential backoff. ``file://`` URLs are read from disk so
local lists can be subscribed to like remote ones.

Usage:
    python -m filtersync.downloader https://example.org/filter.txt
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Mapping, NamedTuple
from urllib.parse import unquote, urlparse

import aiofiles
import aiohttp

from filtersync import directives, patches
from filtersync.config import DEFAULT_CONCURRENCY, DEFAULT_RETRIES, DEFAULT_TIMEOUT
from filtersync.header import split_lines

logger = logging.getLogger(__name__)

#: Seconds; doubled on every retry
DEFAULT_BACKOFF = 1.0

#: 4xx statuses worth retrying; every 5xx is retried too
RETRY_STATUSES = frozenset({408, 429} | set(range(500, 600)))


class FetchError(Exception):
    """A URL could not be fetched (after retries, for transient errors)."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


class FetchResponse(NamedTuple):
    """Result of a conditional fetch."""
    url: str
    changed: bool
    text: str | None = None
    etag: str | None = None
    last_modified: str | None = None


class FilterDownloader:
    """
    Pooled HTTP client for filter lists.

    Use as an async context manager, or call ``start``/``close``.

    Args:
        concurrency: Max simultaneous requests
        timeout: Per-request timeout in seconds
        retries: Attempts per URL
        backoff: Base backoff in seconds between attempts
    """

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout: int = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF,
    ):
        self.concurrency = concurrency
        self.timeout = timeout
        self.retries = max(1, retries)
        self.backoff = backoff
        self._semaphore = asyncio.Semaphore(concurrency)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=self.concurrency, limit_per_host=2)
            self._session = aiohttp.ClientSession(connector=connector)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> FilterDownloader:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Raw fetching
    # -------------------------------------------------------------------------

    async def _read_file(self, url: str, optional: bool) -> str | None:
        path = Path(unquote(urlparse(url).path))
        if not path.exists():
            if optional:
                return None
            raise FetchError(url, "file not found")
        try:
            async with aiofiles.open(path, encoding="utf-8-sig", errors="replace") as f:
                return await f.read()
        except OSError as e:
            raise FetchError(url, str(e)) from e

    async def _request(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        optional: bool = False,
    ) -> FetchResponse | None:
        if self._session is None:
            await self.start()
        assert self._session is not None

        error = "max retries exceeded"
        for attempt in range(self.retries):
            try:
                async with self._semaphore:
                    async with self._session.get(
                        url,
                        headers=dict(headers or {}),
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                        allow_redirects=True,
                    ) as response:
                        # 304 Not Modified - caller keeps its cached copy
                        if response.status == 304:
                            return FetchResponse(url, changed=False)

                        if response.status == 404 and optional:
                            return None

                        if response.status >= 400 and response.status not in RETRY_STATUSES:
                            # Other 4xx responses are final
                            raise FetchError(url, f"HTTP {response.status}")

                        if response.status >= 400:
                            error = f"HTTP {response.status}"
                        else:
                            text = await response.text(encoding="utf-8", errors="replace")
                            return FetchResponse(
                                url,
                                changed=True,
                                text=text,
                                etag=response.headers.get("ETag"),
                                last_modified=response.headers.get("Last-Modified"),
                            )

            except asyncio.TimeoutError:
                error = "timeout"
            except aiohttp.ClientError as e:
                error = str(e) or type(e).__name__

            if attempt < self.retries - 1:
                logger.debug("Fetching %s failed (%s), retry %d", url, error, attempt + 1)
                await asyncio.sleep(self.backoff * 2 ** attempt)

        raise FetchError(url, error)

    async def fetch_text(self, url: str, optional: bool = False) -> str | None:
        """
        Fetch a URL as text.

        Args:
            url: ``http(s)://`` or ``file://`` URL
            optional: Return None instead of raising when the resource is missing

        Raises:
            FetchError: On network failure or an error status
        """
        if urlparse(url).scheme == "file":
            return await self._read_file(url, optional)
        response = await self._request(url, optional=optional)
        return None if response is None else response.text

    async def fetch_if_modified(
        self,
        url: str,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> FetchResponse:
        """Conditional GET using cached ETag/Last-Modified validators."""
        headers = {}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified
        response = await self._request(url, headers=headers)
        assert response is not None
        return response

    # -------------------------------------------------------------------------
    # Filter operations
    # -------------------------------------------------------------------------

    async def download_full(self, url: str) -> list[str]:
        """Download the full, unresolved content of a filter list."""
        text = await self.fetch_text(url)
        return split_lines(text or "")

    async def _fetch_include(self, url: str) -> list[str]:
        return split_lines(await self.fetch_text(url) or "")

    async def apply_patch(self, url: str, content: str) -> str | None:
        """
        Apply the published patch chain to ``content``.

        Returns None when the list has no patch feed, in which case the
        caller falls back to a full download.
        """
        return await patches.apply_patch(
            url, content, lambda patch_url: self.fetch_text(patch_url, optional=True)
        )

    async def resolve_directives(
        self,
        url: str,
        lines: list[str],
        conditions: Mapping[str, bool] = directives.DEFAULT_CONDITIONS,
    ) -> list[str]:
        return await directives.resolve_directives(url, lines, conditions, self._fetch_include)


async def _download(url: str, resolve: bool) -> list[str]:
    async with FilterDownloader() as downloader:
        lines = await downloader.download_full(url)
        if resolve:
            lines = await downloader.resolve_directives(url, lines)
        return lines


def main() -> int:
    """Download one filter list and print it."""
    parser = argparse.ArgumentParser(description="Download a filter list")
    parser.add_argument("url", help="Filter list URL (http, https or file)")
    parser.add_argument("--raw", action="store_true", help="Do not resolve directives")
    args = parser.parse_args()

    try:
        lines = asyncio.run(_download(args.url, resolve=not args.raw))
    except (FetchError, directives.DirectiveError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    for line in lines:
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
