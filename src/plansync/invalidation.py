import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

from .protocols import QueryCache, QueryKey
from .registry import FAMILIES, get_spec

ALL = "all"


def collection_key(project_id: str, collection: str) -> QueryKey:
    spec = get_spec(collection)
    return (spec.family, project_id, spec.query_key)


def family_key(project_id: str, family: str) -> QueryKey:
    return (family, project_id)


class CacheInvalidationBridge:
    """
    Signals the bulk-fetch cache that what it holds for a collection is stale,
    so the next read refetches from the remote layer and overwrites the
    optimistic current snapshot with server truth.
    """

    def __init__(self, cache: QueryCache, project_id: str):
        self.cache = cache
        self.project_id = project_id

    def keys_for(self, collection: str) -> List[QueryKey]:
        if collection == ALL:
            return [family_key(self.project_id, family) for family in FAMILIES]
        spec = get_spec(collection)
        return [
            collection_key(self.project_id, collection),
            family_key(self.project_id, spec.family),
        ]

    def invalidate(self, collection: str) -> None:
        for key in self.keys_for(collection):
            self.cache.invalidate(key)


class _Entry:
    __slots__ = ("value", "stale")

    def __init__(self, value: Any):
        self.value = value
        self.stale = False


class BulkFetchCache:
    """
    An in-process query cache keyed by tuples.

    Invalidating a key marks it and every key it prefixes as stale, the way a
    family aggregate key covers all of its collection keys. Subscribers receive
    each invalidated key on their queue so they can refetch eagerly.

    Every covered key also gets its generation bumped, and a fetch only lands in
    the cache if its key's generation did not move while it was running.
    """

    def __init__(self):
        self._entries: Dict[QueryKey, _Entry] = {}
        self._inflight: Dict[QueryKey, asyncio.Task] = {}
        self._generations: Dict[QueryKey, int] = {}
        self._watchers: List[asyncio.Queue] = []

    def peek(self, key: QueryKey) -> Any:
        entry = self._entries.get(key)
        return None if entry is None else entry.value

    def is_stale(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.stale

    def set(self, key: QueryKey, value: Any):
        self._entries[key] = _Entry(value)

    async def get(self, key: QueryKey, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        """
        Returns the cached value, refetching it first if it is missing or stale.
        A fetch overtaken by an invalidation of its key is thrown away and run again.
        """
        key = tuple(key)
        while self.is_stale(key):
            generation = self._generations.get(key, 0)
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(fetcher())
                self._inflight[key] = task
            try:
                value = await asyncio.shield(task)
            finally:
                if task.done() and self._inflight.get(key) is task:
                    del self._inflight[key]
            if self._generations.get(key, 0) == generation:
                self.set(key, value)
                return value
            logging.debug(f"Discarding fetch of {key!r} overtaken by an invalidation")
        return self._entries[key].value

    def invalidate(self, key: QueryKey) -> None:
        key = tuple(key)
        covered = [k for k in {*self._entries, *self._inflight} if k[: len(key)] == key]
        for covered_key in covered:
            self._generations[covered_key] = self._generations.get(covered_key, 0) + 1
            # Later readers start a fresh fetch instead of joining the outdated one.
            self._inflight.pop(covered_key, None)
            entry = self._entries.get(covered_key)
            if entry is not None:
                entry.stale = True
        logging.debug(f"Invalidated {key!r} ({len(covered)} cached entries)")
        for queue in self._watchers:
            queue.put_nowait(key)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._watchers:
            self._watchers.remove(queue)
