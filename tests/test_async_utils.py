"""
Tests for async_utils module.

Covers run_sync and gather_limited.
"""

import asyncio
import threading

from discord_archiver.core.async_utils import gather_limited, run_sync


def _sync_add(a: int, b: int) -> int:
    """Simple sync function for testing."""
    return a + b


async def test_run_sync_calls_function():
    """run_sync delegates to a worker thread with correct args."""
    result = await run_sync(_sync_add, 3, 4)
    assert result == 7


async def test_run_sync_passes_kwargs():
    """run_sync forwards keyword arguments."""

    def _kw_func(*, name: str) -> str:
        return f"hello {name}"

    assert await run_sync(_kw_func, name="world") == "hello world"


async def test_run_sync_runs_off_the_event_loop_thread():
    loop_thread = threading.get_ident()
    worker_thread = await run_sync(threading.get_ident)
    assert worker_thread != loop_thread


async def test_gather_limited_preserves_order():
    """Results come back in input order regardless of completion order."""

    def _factory(value: int, delay: float):
        async def _run():
            await asyncio.sleep(delay)
            return value

        return _run

    results = await gather_limited(
        [_factory(1, 0.03), _factory(2, 0.0), _factory(3, 0.01)], 3
    )
    assert results == [1, 2, 3]


async def test_gather_limited_respects_bound():
    """No more than max_parallel factories run at the same time."""
    running = 0
    peak = 0

    def _factory():
        async def _run():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        return _run

    await gather_limited([_factory() for _ in range(6)], 2)
    assert peak == 2


async def test_gather_limited_treats_zero_as_one():
    results = await gather_limited([lambda: asyncio.sleep(0, "x")], 0)
    assert results == ["x"]


async def test_gather_limited_empty():
    assert await gather_limited([], 4) == []
