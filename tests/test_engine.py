"""
Tests for filtersync.engine: debounced rebuild signal.
"""

import asyncio

from filtersync.engine import DebouncedEngine


def test_burst_collapses_to_one_rebuild():
    calls = []
    engine = DebouncedEngine(lambda: calls.append(1), delay=0.1)

    async def scenario():
        for _ in range(5):
            engine.debounce_update()
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.3)

    asyncio.run(scenario())
    assert calls == [1]
    assert engine.rebuild_count == 1


def test_separate_bursts_rebuild_separately():
    calls = []
    engine = DebouncedEngine(lambda: calls.append(1), delay=0.02)

    async def scenario():
        engine.debounce_update()
        await asyncio.sleep(0.1)
        engine.debounce_update()
        await asyncio.sleep(0.1)

    asyncio.run(scenario())
    assert len(calls) == 2


def test_async_rebuild_and_flush():
    calls = []

    async def rebuild():
        await asyncio.sleep(0)
        calls.append("rebuilt")

    engine = DebouncedEngine(rebuild, delay=60)

    async def scenario():
        engine.debounce_update()
        assert engine.pending
        await engine.flush()

    asyncio.run(scenario())
    assert calls == ["rebuilt"]
    assert not engine.pending


def test_failing_rebuild_is_logged(caplog):
    def rebuild():
        raise RuntimeError("engine exploded")

    engine = DebouncedEngine(rebuild, delay=0)

    async def scenario():
        engine.debounce_update()
        await engine.flush()

    asyncio.run(scenario())
    assert "Rule engine rebuild failed" in caplog.text
