"""Bridges between the daemon's event loop and its blocking work.

Disk access and the ``requests``-based wiki client are synchronous; the
engine and watcher run on an asyncio loop.  Two helpers move blocking calls
onto worker threads:

- ``run_sync`` for local work (hashing, file reads/writes, state saves);
- ``run_sync_limited`` for wiki requests, which additionally share a
  process-wide semaphore so that a burst of watcher events or a large
  reconciliation pass cannot flood the server.
"""

import asyncio
import logging
from typing import Any, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Created by init_semaphore() on the daemon's loop; None means unbounded.
_semaphore: asyncio.Semaphore | None = None


def init_semaphore(max_parallel: int = 4) -> None:
    """Bound concurrent wiki requests to *max_parallel*.

    Must be called from the loop that will await ``run_sync_limited``.
    """
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.info("Concurrent wiki requests limited to %d", max_parallel)


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Await ``func(*args, **kwargs)`` executed on a worker thread.

    Example:
        digest = await run_sync(detector.compute_hash, path)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Like ``run_sync``, but holds a request slot while *func* runs.

    Without ``init_semaphore`` the call is not limited.

    Example:
        documents = await run_sync_limited(client.list_documents, space_id)
    """
    if _semaphore is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    if _semaphore.locked():
        logger.debug(
            "All request slots busy, %s waits", getattr(func, "__name__", func)
        )
    async with _semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)
