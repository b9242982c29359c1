"""
engine.py - Debounced Rebuild Signal for the Rule Engine

The rule engine recompiles every enabled filter when it rebuilds, so
several updates landing close together should trigger one rebuild, not
one per filter. ``debounce_update`` restarts a short timer on every call;
the rebuild runs once the timer expires without another call.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

from filtersync.config import DEFAULT_ENGINE_DEBOUNCE

logger = logging.getLogger(__name__)

RebuildCallback = Callable[[], Union[Awaitable[None], None]]


class DebouncedEngine:
    """
    Coalesces rebuild requests.

    Args:
        rebuild: Called (or awaited, if it is a coroutine function) once per
            burst of ``debounce_update`` calls
        delay: Quiet period in seconds that ends a burst
    """

    def __init__(self, rebuild: RebuildCallback, delay: float = DEFAULT_ENGINE_DEBOUNCE):
        self.rebuild = rebuild
        self.delay = delay
        self.rebuild_count = 0
        self._handle: asyncio.TimerHandle | None = None
        self._running: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def debounce_update(self) -> None:
        """Request a rebuild. Must be called from within the event loop."""
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.ensure_future(self._run())
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self) -> None:
        self.rebuild_count += 1
        logger.info("Rebuilding rule engine")
        try:
            result = self.rebuild()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Rule engine rebuild failed")

    async def flush(self) -> None:
        """Run a pending rebuild now and wait for running rebuilds to finish."""
        if self._handle is not None:
            self._handle.cancel()
            self._fire()
        if self._running:
            await asyncio.gather(*self._running)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
