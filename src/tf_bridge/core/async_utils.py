"""Async helpers for running the synchronous remote clients concurrently."""

import asyncio
import logging
from typing import Any, Callable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def download_all(
    func: Callable[[T], R],
    items: Sequence[T],
    max_parallel: int = 4,
) -> list[R]:
    """Call *func* on every item in worker threads, bounded by a semaphore.

    The semaphore is created per call, so concurrent fetches against
    different repositories do not share a budget.

    Returns results in input order. The first exception propagates; the
    remaining calls are cancelled.

    Args:
        func: Synchronous callable (typically ``download_file``).
        items: Work items.
        max_parallel: Maximum number of calls in flight.

    Returns:
        List of results in the same order as *items*.
    """
    if not items:
        return []
    semaphore = asyncio.Semaphore(max(1, max_parallel))

    async def limited(item: T) -> R:
        async with semaphore:
            return await asyncio.to_thread(func, item)

    logger.debug(
        "Running %d calls with max_parallel=%d", len(items), max_parallel
    )
    tasks = [asyncio.ensure_future(limited(item)) for item in items]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        raise


def download_all_blocking(
    func: Callable[[T], R],
    items: Sequence[T],
    max_parallel: int = 4,
) -> list[R]:
    """Synchronous entry point for ``download_all`` used by the tasks."""
    return asyncio.run(download_all(func, items, max_parallel))
