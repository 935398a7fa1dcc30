"""
The optimistic mutation pipeline.

Every add/update/delete is applied to the current snapshot synchronously, then
persisted through the retry executor. On success a new entity has its temporary
id swapped for the server id in place and the bulk-fetch cache is invalidated; on
failure the invocation undoes exactly what it changed and re-raises.

Mutations of the same `(collection, id)` are serialised with a lock, and an
update or delete aimed at an entity that is still waiting for its server id is
held until the pending add settles.
"""
import asyncio
import itertools
import logging
import time
import weakref
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .config import EngineConfig
from .invalidation import CacheInvalidationBridge
from .models import SYSTEM_FIELDS, Entity, MutationIntent, Operation, is_temporary_id
from .protocols import RemoteStore
from .registry import get_spec
from .retry import execute_with_retry, retry_all
from .snapshot import EntityCollection, ProjectState

SETTLED_ID_LIMIT = 1024


def _strip_system_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in dict(payload).items() if key not in SYSTEM_FIELDS}


class OptimisticPipeline:
    def __init__(
        self,
        state: ProjectState,
        remote: RemoteStore,
        bridge: Optional[CacheInvalidationBridge] = None,
        config: Optional[EngineConfig] = None,
        *,
        is_retryable: Callable[[BaseException], bool] = retry_all,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state = state
        self.remote = remote
        self.bridge = bridge
        self.config = config or EngineConfig()
        self.is_retryable = is_retryable
        self._sleep = sleep
        self._locks: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._pending_adds: Dict[str, asyncio.Future] = {}
        # Temporary ids of settled adds mapped to their server ids, oldest first.
        self._settled_ids: Dict[str, str] = {}
        self._temp_counter = itertools.count(1)
        self.in_flight = 0

    def new_temp_id(self) -> str:
        return f"{self.config.temp_id_prefix}{time.time_ns()}-{next(self._temp_counter)}"

    def _lock_for(self, collection: str, entity_id: str) -> asyncio.Lock:
        key = (collection, entity_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _resolve_id(self, entity_id: str) -> Optional[str]:
        """Maps a temporary id to its server id once the add that created it settles."""
        if not is_temporary_id(entity_id, self.config.temp_id_prefix):
            return entity_id
        if entity_id in self._settled_ids:
            return self._settled_ids[entity_id]
        pending = self._pending_adds.get(entity_id)
        if pending is None:
            return entity_id
        return await asyncio.shield(pending)

    def _settle(self, temp_id: str, server_id: Optional[str]):
        if server_id is not None:
            self._settled_ids[temp_id] = server_id
            if len(self._settled_ids) > SETTLED_ID_LIMIT:
                del self._settled_ids[next(iter(self._settled_ids))]
        pending = self._pending_adds.pop(temp_id, None)
        if pending is not None and not pending.done():
            pending.set_result(server_id)

    async def _persist(self, intent: MutationIntent, thunk: Callable[[], Awaitable[Any]]) -> Any:
        self.in_flight += 1
        try:
            return await execute_with_retry(
                thunk,
                self.config.max_attempts,
                self.config.base_delay,
                is_retryable=self.is_retryable,
                sleep=self._sleep,
                description=f"{intent.operation.value} {intent.collection}",
            )
        finally:
            self.in_flight -= 1

    def _invalidate(self, collection: str):
        if self.bridge is not None:
            self.bridge.invalidate(collection)

    def _restore(
        self, collection: str, before: EntityCollection, after: EntityCollection,
        undo: Callable[[EntityCollection], EntityCollection],
    ):
        live = self.state.current[collection]
        if live is after:
            # Nothing else touched the collection; put the exact pre-mutation object back.
            self.state.set_current_collection(collection, before)
        else:
            self.state.set_current_collection(collection, undo(live))

    async def add(self, collection: str, payload: Mapping[str, Any]) -> Optional[Entity]:
        get_spec(collection)
        project_id = self.state.project_id
        if not project_id:
            return None

        payload = _strip_system_fields(payload)
        temp_id = self.new_temp_id()
        now = datetime.now(timezone.utc)
        placeholder = Entity.model_validate(
            {**payload, "id": temp_id, "project_id": project_id, "created_at": now, "updated_at": now}
        )
        intent = MutationIntent(
            collection=collection, operation=Operation.ADD, payload=payload, temp_id=temp_id
        )

        before = self.state.current[collection]
        after = before.append(placeholder)
        self.state.set_current_collection(collection, after)
        self._pending_adds[temp_id] = asyncio.get_running_loop().create_future()

        server_id = None
        try:
            result = await self._persist(
                intent, lambda: self.remote.add(collection, project_id, dict(payload))
            )
        except Exception:
            logging.warning(f"Rolling back add of {temp_id} to {collection}")
            self._restore(
                collection, before, after,
                lambda live: live.remove(temp_id) if temp_id in live else live,
            )
            raise
        else:
            self._reconcile_add(collection, temp_id, result)
            server_id = result.id
        finally:
            self._settle(temp_id, server_id)

        self._invalidate(collection)
        return result

    def _reconcile_add(self, collection: str, temp_id: str, result: Entity):
        live = self.state.current[collection]
        placeholder = live.get(temp_id)
        if placeholder is None:
            # A refetch already replaced the collection with server data.
            return
        if result.id in live:
            self.state.set_current_collection(collection, live.remove(temp_id))
            return
        confirmed = placeholder.merged(
            {"id": result.id, "created_at": result.created_at, "updated_at": result.updated_at}
        )
        self.state.set_current_collection(collection, live.replace(temp_id, confirmed))

    async def update(
        self, collection: str, entity_id: str, changes: Mapping[str, Any]
    ) -> Optional[Entity]:
        get_spec(collection)
        if not self.state.project_id:
            return None
        entity_id = await self._resolve_id(entity_id)
        if entity_id is None:
            return None

        changes = _strip_system_fields(changes)
        async with self._lock_for(collection, entity_id):
            before = self.state.current[collection]
            original = before.get(entity_id)
            if original is None:
                return None

            optimistic = original.merged(changes)
            after = before.replace(entity_id, optimistic)
            self.state.set_current_collection(collection, after)
            intent = MutationIntent(
                collection=collection, operation=Operation.UPDATE, payload=changes, entity_id=entity_id
            )

            def undo(live: EntityCollection) -> EntityCollection:
                # Only revert our own write; anything newer came from the server.
                if live.get(entity_id) is optimistic:
                    return live.replace(entity_id, original)
                return live

            try:
                result = await self._persist(
                    intent, lambda: self.remote.update(collection, entity_id, dict(changes))
                )
            except Exception:
                logging.warning(f"Rolling back update of {entity_id} in {collection}")
                self._restore(collection, before, after, undo)
                raise

        self._invalidate(collection)
        return result

    async def delete(self, collection: str, entity_id: str) -> bool:
        get_spec(collection)
        if not self.state.project_id:
            return False
        entity_id = await self._resolve_id(entity_id)
        if entity_id is None:
            return False

        async with self._lock_for(collection, entity_id):
            before = self.state.current[collection]
            original = before.get(entity_id)
            if original is None:
                return False

            position = before.index_of(entity_id)
            after = before.remove(entity_id)
            self.state.set_current_collection(collection, after)
            intent = MutationIntent(
                collection=collection, operation=Operation.DELETE, entity_id=entity_id
            )

            def undo(live: EntityCollection) -> EntityCollection:
                if entity_id in live:
                    return live
                return live.insert(position, original)

            try:
                await self._persist(intent, lambda: self.remote.delete(collection, entity_id))
            except Exception:
                logging.warning(f"Rolling back delete of {entity_id} in {collection}")
                self._restore(collection, before, after, undo)
                raise

        self._invalidate(collection)
        return True

    async def move(self, collection: str, entity_id: str, new_parent_id: str) -> Optional[Entity]:
        """Re-parents an entity of a nested collection (e.g. a canvas item to another section)."""
        spec = get_spec(collection)
        if spec.parent is None:
            raise ValueError(f"Collection {collection!r} has no parent collection")
        return await self.update(collection, entity_id, {spec.parent_field: new_parent_id})

    async def mutate(self, intent: MutationIntent):
        if intent.operation is Operation.ADD:
            return await self.add(intent.collection, intent.payload)
        if intent.entity_id is None:
            raise ValueError(f"{intent.operation.value} requires an entity_id")
        if intent.operation is Operation.UPDATE:
            return await self.update(intent.collection, intent.entity_id, intent.payload)
        return await self.delete(intent.collection, intent.entity_id)
