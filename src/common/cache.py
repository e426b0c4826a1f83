from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .log import get_logger


QueryKey = Tuple[str, ...]

logger = get_logger(__name__)


@dataclass
class _Entry:
    data: Any
    fetched_at: float  # monotonic seconds
    stale_time: float
    stale: bool = False


class QueryCache:
    """
    In-memory cache of backend read views keyed by tuples such as ("portfolio", "summary").

    - `fetch(key, loader)` returns fresh cached data, joins an in-flight load for
      the same key, or starts exactly one new load.
    - `invalidate(prefix)` marks every entry under `prefix` stale; it never
      starts a load itself, so repeated invalidation still yields a single
      re-fetch per key on the next read.
    - A load that was in flight when its key was invalidated is stored stale,
      since it may predate the change that caused the invalidation.
    - `clear()` drops every entry and detaches in-flight loads; their results are
      returned to whoever awaited them but never written back.
    """

    def __init__(self, *, default_stale_time: float = 0.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._default_stale_time = default_stale_time
        self._clock = clock
        self._entries: Dict[QueryKey, _Entry] = {}
        self._inflight: Dict[QueryKey, asyncio.Future[Any]] = {}
        self._generations: Dict[QueryKey, int] = {}
        self._epoch = 0
        self.load_count = 0

    @staticmethod
    def _matches(key: QueryKey, prefix: QueryKey) -> bool:
        return key[: len(prefix)] == prefix

    def _is_fresh(self, entry: _Entry) -> bool:
        if entry.stale:
            return False
        return (self._clock() - entry.fetched_at) < entry.stale_time

    def get(self, key: QueryKey) -> Optional[Any]:
        """Peek at cached data regardless of freshness."""
        entry = self._entries.get(key)
        return entry.data if entry else None

    def is_stale(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or not self._is_fresh(entry)

    def set(self, key: QueryKey, data: Any, *, stale_time: Optional[float] = None) -> None:
        self._entries[key] = _Entry(
            data=data,
            fetched_at=self._clock(),
            stale_time=self._default_stale_time if stale_time is None else stale_time,
        )

    async def fetch(
        self,
        key: QueryKey,
        loader: Callable[[], Awaitable[Any]],
        *,
        stale_time: Optional[float] = None,
    ) -> Any:
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            return entry.data

        task = self._inflight.get(key)
        if task is None:
            generation = self._generations.get(key, 0)
            task = asyncio.ensure_future(self._load(key, loader, stale_time, generation, self._epoch))
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def _load(
        self,
        key: QueryKey,
        loader: Callable[[], Awaitable[Any]],
        stale_time: Optional[float],
        generation: int,
        epoch: int,
    ) -> Any:
        self.load_count += 1
        try:
            data = await loader()
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]
        if epoch != self._epoch:
            logger.debug("cache_load_discarded", key="/".join(key))
            return data
        self.set(key, data, stale_time=stale_time)
        if self._generations.get(key, 0) != generation:
            self._entries[key].stale = True
        return data

    def invalidate(self, prefix: QueryKey = ()) -> int:
        """Mark every entry (and in-flight load) under `prefix` stale; return how many."""
        count = 0
        for key, entry in self._entries.items():
            if self._matches(key, prefix):
                entry.stale = True
                count += 1
        for key in list(self._inflight):
            if self._matches(key, prefix):
                self._generations[key] = self._generations.get(key, 0) + 1
        logger.debug("cache_invalidated", prefix="/".join(prefix) or "*", entries=count)
        return count

    def clear(self) -> None:
        self._epoch += 1
        self._entries.clear()
        self._inflight.clear()
        self._generations.clear()


__all__ = ["QueryCache", "QueryKey"]
