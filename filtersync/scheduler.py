"""
scheduler.py - Periodic and On-Demand Update Cycles

A single loop runs ``auto_update_filters`` every ``check_period`` seconds.
The next tick is armed only after the running cycle has fully finished,
and on-demand cycles queue behind an in-flight one, so two cycles never
touch the same filter at the same time.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable

from filtersync.config import Settings
from filtersync.models import FilterMetadata
from filtersync.orchestrator import UpdateOrchestrator

logger = logging.getLogger(__name__)


class FilterUpdateScheduler:
    """
    Timer-driven caller of the orchestrator.

    Args:
        orchestrator: Runs the cycles
        settings: Returns the current settings (``check_period`` is read
            before every tick)
    """

    def __init__(
        self,
        orchestrator: UpdateOrchestrator,
        settings: Callable[[], Settings] = Settings,
    ):
        self.orchestrator = orchestrator
        self.settings = settings
        self.cycles = 0
        self._cycle_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        """True while a cycle is in flight."""
        return self._cycle_lock.locked()

    async def update(self, force_update: bool = False) -> list[FilterMetadata]:
        """Run one update cycle, waiting for an in-flight cycle first."""
        async with self._cycle_lock:
            self.cycles += 1
            return await self.orchestrator.auto_update_filters(force_update)

    async def check(self, filter_ids: Iterable[int]) -> list[FilterMetadata]:
        """Check just-enabled filters, serialized with the periodic cycle."""
        async with self._cycle_lock:
            self.cycles += 1
            return await self.orchestrator.check_for_filters_updates(filter_ids)

    async def _loop(self) -> None:
        while True:
            try:
                await self.update()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Update cycle failed")
            await asyncio.sleep(max(1, self.settings().check_period))

    def start(self) -> None:
        """Start the periodic loop; the first cycle runs immediately."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        """
        Stop the periodic loop.

        A cycle in flight is allowed to finish first.
        """
        task, self._task = self._task, None
        if task is None:
            return
        async with self._cycle_lock:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait(self) -> None:
        """Block until the loop stops."""
        if self._task is not None:
            await self._task
