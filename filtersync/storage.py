"""
storage.py - Durable Stores for Filter Content and Version Metadata

Three layers, all async:

    KeyValueStorage   one JSON document on disk, loaded once, rewritten
                      atomically on every change (``.tmp`` then replace)
    VersionStore      filter id -> FilterVersionRecord, under one key
    ContentStore      filter id -> list of lines, one text file per filter;
                      two instances are used, for resolved and raw content

I/O failures in the version and content stores surface as
``StorageUnavailable`` so a single filter's task can fail in isolation.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable

import aiofiles
import aiofiles.os

from filtersync.header import split_lines
from filtersync.models import Clock, FilterVersionRecord, StorageUnavailable, now_ms

logger = logging.getLogger(__name__)

STORAGE_FILE = "storage.json"
FILTERS_VERSION_KEY = "filters-version"


# =============================================================================
# KEY/VALUE STORAGE
# =============================================================================

class KeyValueStorage:
    """
    JSON-file backed key/value storage.

    The file is read lazily on first access. A missing or corrupt file is
    treated as empty storage. Writes are serialized and atomic.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._data: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, Any]:
        """Read the file once; callers hold ``self._lock``."""
        if self._data is not None:
            return self._data

        data: dict[str, Any] = {}
        if self.path.exists():
            try:
                async with aiofiles.open(self.path, encoding="utf-8") as f:
                    loaded = json.loads(await f.read())
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    logger.warning("Ignoring %s: top-level value is not an object", self.path)
            except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
                logger.warning("Could not load %s: %s", self.path, e)
        self._data = data
        return data

    async def _save(self, data: dict[str, Any]) -> None:
        """Write ``data`` to disk, then make it the in-memory copy."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2, sort_keys=True))
        await aiofiles.os.replace(temp_path, self.path)
        self._data = data

    async def get(self, key: str, default: Any = None) -> Any:
        data = self._data
        if data is None:
            async with self._lock:
                data = await self._load()
        return data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = dict(await self._load())
            data[key] = value
            await self._save(data)

    async def update(self, key: str, mutate: Callable[[Any], Any], default: Any = None) -> Any:
        """
        Read-modify-write ``key`` atomically with respect to other writers.

        The in-memory copy changes only after the new document is on disk.

        Args:
            key: Storage key
            mutate: Receives the current value (or ``default``), returns the new one
            default: Value passed to ``mutate`` when the key is absent

        Returns:
            The stored value
        """
        async with self._lock:
            data = dict(await self._load())
            value = mutate(data.get(key, default))
            data[key] = value
            await self._save(data)
            return value

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = dict(await self._load())
            if data.pop(key, None) is not None:
                await self._save(data)


# =============================================================================
# VERSION STORE
# =============================================================================

class VersionStore:
    """Filter id -> FilterVersionRecord mapping kept under one storage key."""

    def __init__(self, storage: KeyValueStorage, clock: Clock = now_ms):
        self.storage = storage
        self.clock = clock

    async def get_all(self) -> dict[int, FilterVersionRecord]:
        raw = await self.storage.get(FILTERS_VERSION_KEY, {})
        if not isinstance(raw, dict):
            return {}

        records: dict[int, FilterVersionRecord] = {}
        for key, value in raw.items():
            try:
                records[int(key)] = FilterVersionRecord.from_dict(value)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Dropping malformed version record for filter %s: %s", key, e)
        return records

    async def get(self, filter_id: int) -> FilterVersionRecord | None:
        return (await self.get_all()).get(filter_id)

    async def _update(self, mutate: Callable[[dict[str, Any]], None]) -> None:
        def apply(current: Any) -> dict[str, Any]:
            raw = dict(current) if isinstance(current, dict) else {}
            mutate(raw)
            return raw

        await self.storage.update(FILTERS_VERSION_KEY, apply, {})

    async def set(self, filter_id: int, record: FilterVersionRecord) -> None:
        def put(raw: dict[str, Any]) -> None:
            raw[str(filter_id)] = record.to_dict()

        try:
            await self._update(put)
        except OSError as e:
            raise StorageUnavailable(filter_id, f"cannot write version: {e}") from e

    async def remove(self, filter_id: int) -> None:
        await self._update(lambda raw: raw.pop(str(filter_id), None))

    async def refresh_last_check_time(self, filter_ids: Iterable[int]) -> None:
        """
        Mark the given filters as checked now.

        Filters without a record are skipped: there is nothing to refresh
        until their first successful download creates one.
        """
        now = self.clock()
        ids = {str(filter_id) for filter_id in filter_ids}

        def touch(raw: dict[str, Any]) -> None:
            for key in raw.keys() & ids:
                try:
                    record = FilterVersionRecord.from_dict(raw[key])
                except (KeyError, TypeError, ValueError):
                    continue
                raw[key] = record.checked_at(now).to_dict()

        if ids:
            await self._update(touch)


# =============================================================================
# CONTENT STORE
# =============================================================================

class ContentStore:
    """
    One text file per filter under ``directory``.

    Args:
        directory: Directory holding the filter files
        prefix: File name prefix; distinguishes the resolved and raw keyspaces
    """

    def __init__(self, directory: Path | str, prefix: str = "filterrules"):
        self.directory = Path(directory)
        self.prefix = prefix

    def path_for(self, filter_id: int) -> Path:
        return self.directory / f"{self.prefix}_{filter_id}.txt"

    async def get(self, filter_id: int) -> list[str]:
        """Cached lines of the filter, or an empty list if nothing is cached."""
        path = self.path_for(filter_id)
        if not path.exists():
            return []
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                text = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise StorageUnavailable(filter_id, f"cannot read {path.name}: {e}") from e
        return split_lines(text)

    async def set(self, filter_id: int, lines: list[str]) -> None:
        path = self.path_for(filter_id)
        temp_path = path.with_suffix(".tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "w", encoding="utf-8", newline="\n") as f:
                await f.write("\n".join(lines))
            await aiofiles.os.replace(temp_path, path)
        except OSError as e:
            raise StorageUnavailable(filter_id, f"cannot write {path.name}: {e}") from e

    async def remove(self, filter_id: int) -> None:
        path = self.path_for(filter_id)
        if path.exists():
            await aiofiles.os.remove(path)
