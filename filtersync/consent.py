"""
consent.py - Consent Tracking for Filters Requiring Extra Disclosure

Some filters (e.g. annoyance lists that inject content into pages) may only
be enabled after the user explicitly agrees. The tracker keeps the set of
consented filter ids.

The set is read from storage once, on first use, and then served from
memory. Every change is written straight back to storage.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Iterable

from filtersync.storage import KeyValueStorage

logger = logging.getLogger(__name__)

ANNOYANCES_CONSENT_KEY = "annoyances-consent"


class ConsentTracker:
    """Set of filter ids the user consented to, backed by one storage key."""

    def __init__(self, storage: KeyValueStorage, key: str = ANNOYANCES_CONSENT_KEY):
        self.storage = storage
        self.key = key
        self._consented: set[int] | None = None
        self._lock = asyncio.Lock()

    async def _read_from_storage(self) -> list[int]:
        raw = await self.storage.get(self.key)
        try:
            if not isinstance(raw, str):
                raise TypeError(f"expected JSON string, got {type(raw).__name__}")
            data = json.loads(raw)
            if not isinstance(data, list) or not all(
                isinstance(item, int) and not isinstance(item, bool) for item in data
            ):
                raise ValueError("expected a list of filter ids")
        except (TypeError, ValueError) as e:
            if raw is not None:
                logger.warning(
                    'Cannot parse data from "%s" storage, set default states. Origin error: %s',
                    self.key, e,
                )
            data = []
            await self._write(data)
        return data

    async def _write(self, filter_ids: Iterable[int]) -> None:
        await self.storage.set(self.key, json.dumps(sorted(filter_ids)))

    async def _materialize(self) -> set[int]:
        if self._consented is None:
            self._consented = set(await self._read_from_storage())
        return self._consented

    async def add_filter_ids(self, filter_ids: Iterable[int]) -> None:
        """Grant consent for ``filter_ids``; existing grants are kept."""
        async with self._lock:
            consented = await self._materialize() | set(filter_ids)
            await self._write(consented)
            self._consented = consented

    async def is_consented_filter(self, filter_id: int) -> bool:
        consented = self._consented
        if consented is None:
            async with self._lock:
                consented = await self._materialize()
        return filter_id in consented

    async def reset(self) -> None:
        """Revoke every grant."""
        async with self._lock:
            await self._write([])
            self._consented = None
