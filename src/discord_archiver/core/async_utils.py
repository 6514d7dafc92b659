"""Async utilities for running blocking file I/O from the event loop."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a worker thread.

    Archive documents and the checkpoint store do blocking file I/O; this
    keeps the Discord gateway heartbeat responsive while they run.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        action = await run_sync(document.insert, record, reply_state)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    factories: Sequence[Callable[[], Awaitable[T]]],
    max_parallel: int,
) -> list[T]:
    """Run coroutine factories concurrently, at most *max_parallel* at once.

    Factories are called lazily, only once a slot is free.  Returns results
    in input order.  Exceptions propagate from the first failure.

    Args:
        factories: Zero-argument callables returning awaitables.
        max_parallel: Concurrency bound (values below 1 are treated as 1).

    Returns:
        List of results in the same order as *factories*.
    """
    semaphore = asyncio.Semaphore(max(1, max_parallel))

    async def _run(factory: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await factory()

    logger.debug(
        "Running %d tasks with max_parallel=%d",
        len(factories),
        max_parallel,
    )
    return list(await asyncio.gather(*(_run(f) for f in factories)))
