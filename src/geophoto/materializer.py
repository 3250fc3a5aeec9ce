"""Bounded-concurrency resolution of store paths into download URLs."""

import asyncio
import itertools
import logging
from typing import Awaitable, Callable, List, Optional, Tuple, Union


logger = logging.getLogger(__name__)


DEFAULT_POOL_SIZE = 6
PROGRESS_EVERY = 10

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]


class ConcurrentURLMaterializer:
    """Resolve N paths with at most ``pool_size`` requests in flight.

    Workers claim indices from a shared counter and write into the slot with
    the same index, so the output order always matches the input order.
    """

    def __init__(self, resolver, pool_size: int = DEFAULT_POOL_SIZE, progress: Optional[ProgressCallback] = None):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self.resolver = resolver
        self.pool_size = pool_size
        self.progress = progress
        self._background: set = set()

    def _report_progress(self, done: int, total: int) -> None:
        if self.progress is None:
            return
        try:
            outcome = self.progress(done, total)
            if asyncio.iscoroutine(outcome):
                task = asyncio.ensure_future(outcome)
                self._background.add(task)
                task.add_done_callback(self._progress_done)
        except Exception as e:
            logger.warning(f"Progress callback failed at {done}/{total}: {e}")

    def _progress_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Progress callback failed: {task.exception()}")

    async def materialize(self, paths: List[str]) -> List[Optional[str]]:
        """Return one URL (or None when unresolvable) per input path, index-aligned."""
        total = len(paths)
        slots: List[Optional[str]] = [None] * total
        if total == 0:
            return slots

        claims = itertools.count()
        completed = 0

        async def worker() -> None:
            nonlocal completed
            while True:
                index = next(claims)
                if index >= total:
                    return
                try:
                    slots[index] = await self.resolver.download_url(paths[index])
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.debug(f"Could not resolve {paths[index]}: {e}")
                    slots[index] = None
                completed += 1
                if completed % PROGRESS_EVERY == 0:
                    self._report_progress(completed, total)

        workers = min(self.pool_size, total)
        await asyncio.gather(*(worker() for _ in range(workers)))
        unresolved = sum(1 for url in slots if url is None)
        if unresolved:
            logger.info(f"Materialized {total - unresolved}/{total} URLs ({unresolved} unresolvable)")
        return slots

    async def resolved_pairs(self, paths: List[str]) -> List[Tuple[str, str]]:
        """Return ``(path, url)`` for each resolvable path, in input order."""
        slots = await self.materialize(paths)
        return [(path, url) for path, url in zip(paths, slots) if url is not None]

    async def resolved_urls(self, paths: List[str]) -> List[str]:
        return [url for _, url in await self.resolved_pairs(paths)]
