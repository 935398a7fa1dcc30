"""
Rehydration of the current snapshot from the remote layer, and application of
realtime row changes pushed by it.
"""
import asyncio
import logging
from typing import Optional

import pydantic_core

from .invalidation import BulkFetchCache, collection_key
from .models import Entity, RealtimeChange
from .protocols import RemoteStore
from .registry import COLLECTION_NAMES, family_collections, find_by_query_key
from .snapshot import EntityCollection, ProjectState


def apply_realtime_change(collection: EntityCollection, change: RealtimeChange) -> EntityCollection:
    """Returns `collection` with one INSERT/UPDATE/DELETE applied. Unknown ids are tolerated."""
    if change.event_type == "DELETE":
        entity_id = (change.old or {}).get("id")
        if entity_id is None or entity_id not in collection:
            return collection
        return collection.remove(entity_id)

    entity = Entity.model_validate(change.new or {})
    if entity.id in collection:
        return collection.replace(entity.id, entity)
    # An UPDATE for a row we never saw is kept as well.
    return collection.append(entity)


class ProjectSync:
    """
    Keeps a project's current snapshot in line with the remote layer.

    `load` and `refetch` replace collections with server truth, going through the
    bulk-fetch cache when one is given so stale keys are the ones refetched.
    """

    def __init__(self, state: ProjectState, remote: RemoteStore, cache: Optional[BulkFetchCache] = None):
        self.state = state
        self.remote = remote
        self.cache = cache

    async def _fetch(self, name: str) -> EntityCollection:
        project_id = self.state.project_id

        async def fetcher():
            return EntityCollection(await self.remote.list(name, project_id))

        if self.cache is None:
            return await fetcher()
        return await self.cache.get(collection_key(project_id, name), fetcher)

    async def refetch(self, name: str) -> EntityCollection:
        if not self.state.project_id:
            return self.state.current[name]
        collection = await self._fetch(name)
        self.state.set_current_collection(name, collection)
        return collection

    async def load(self):
        """Rehydrates every collection of the current snapshot."""
        if not self.state.project_id:
            return
        collections = await asyncio.gather(*(self._fetch(name) for name in COLLECTION_NAMES))
        for name, collection in zip(COLLECTION_NAMES, collections):
            self.state.set_current_collection(name, collection)
        logging.info(f"Loaded project {self.state.project_id}")

    def apply(self, change: RealtimeChange):
        live = self.state.current[change.collection]
        self.state.set_current_collection(change.collection, apply_realtime_change(live, change))

    async def handle_invalidation(self, key: tuple):
        """Refetches whatever an invalidated cache key covers for this project."""
        if len(key) < 2 or key[1] != self.state.project_id:
            return
        family = key[0]
        if len(key) >= 3:
            spec = find_by_query_key(family, key[2])
            if spec is not None:
                await self.refetch(spec.name)
            return
        for spec in family_collections(family):
            await self.refetch(spec.name)

    async def follow(self, queue: asyncio.Queue):
        """
        Consumes realtime changes and invalidated cache keys from `queue` until cancelled.
        A failing refetch is logged and left for the next invalidation to repair.
        """
        while True:
            item = await queue.get()
            try:
                if isinstance(item, RealtimeChange):
                    self.apply(item)
                else:
                    await self.handle_invalidation(tuple(item))
            except (pydantic_core.ValidationError, KeyError, ValueError) as e:
                logging.warning(f"Skipping malformed sync item {item!r}: {e}")
            except Exception as e:
                logging.error(f"Refetch for project {self.state.project_id} failed: {e}")
