"""
The project store: the single object UI code is handed to read, mutate and
classify one project's data.

It owns the project state (current + staged snapshots, comparison mode), the
optimistic pipeline that writes to the current snapshot, and the promotion of
staged changes back through that pipeline when the user accepts them.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from .classifier import calculate_diff, classify, diff_entity, iter_changes
from .config import EngineConfig
from .errors import StagedChangesError
from .invalidation import BulkFetchCache, CacheInvalidationBridge
from .models import (
    ChangeRecord,
    ChangeType,
    DiffMetadata,
    Entity,
    ItemDiff,
    MutationIntent,
)
from .pipeline import OptimisticPipeline
from .protocols import QueryCache, RemoteStore
from .registry import COLLECTIONS, get_spec, locate_parent
from .retry import retry_all
from .snapshot import CollectionCheckpoint, DataSnapshot, EntityCollection, ProjectState
from .sync import ProjectSync


class ProjectStore:
    def __init__(
        self,
        project_id: Optional[str],
        remote: RemoteStore,
        cache: Optional[QueryCache] = None,
        config: Optional[EngineConfig] = None,
        *,
        is_retryable: Callable[[BaseException], bool] = retry_all,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or EngineConfig()
        self.state = ProjectState(project_id)
        self.cache = cache
        bridge = CacheInvalidationBridge(cache, project_id) if cache is not None and project_id else None
        self.bridge = bridge
        self.pipeline = OptimisticPipeline(
            self.state, remote, bridge, self.config, is_retryable=is_retryable, sleep=sleep
        )
        self.sync = ProjectSync(
            self.state, remote, cache if isinstance(cache, BulkFetchCache) else None
        )

    @property
    def project_id(self) -> Optional[str]:
        return self.state.project_id

    # Reads

    def read(self, collection: str) -> EntityCollection:
        return self.state.select(collection)

    select = read

    def get(self, collection: str, entity_id: str) -> Optional[Entity]:
        return self.read(collection).get(entity_id)

    @property
    def comparison_mode(self) -> bool:
        return self.state.comparison_mode

    @property
    def has_staged(self) -> bool:
        return self.state.staged is not None

    @property
    def is_submitting(self) -> bool:
        return self.pipeline.in_flight > 0

    def parent_of(self, collection: str, entity_id: str) -> Optional[Entity]:
        snapshot = self.state.staged if self.state.in_comparison else self.state.current
        return locate_parent(snapshot, collection, entity_id)[1]

    # Mutations

    async def add(self, collection: str, payload: Mapping[str, Any]) -> Optional[Entity]:
        return await self.pipeline.add(collection, payload)

    async def update(self, collection: str, entity_id: str, changes: Mapping[str, Any]) -> Optional[Entity]:
        return await self.pipeline.update(collection, entity_id, changes)

    async def delete(self, collection: str, entity_id: str) -> bool:
        return await self.pipeline.delete(collection, entity_id)

    async def move(self, collection: str, entity_id: str, new_parent_id: str) -> Optional[Entity]:
        return await self.pipeline.move(collection, entity_id, new_parent_id)

    async def mutate(self, intent: MutationIntent):
        return await self.pipeline.mutate(intent)

    def checkpoint(self, collection: str) -> CollectionCheckpoint:
        return self.state.checkpoint(collection)

    def restore(self, checkpoint: CollectionCheckpoint):
        self.state.restore(checkpoint)

    # Comparison

    def set_staged(self, snapshot):
        self.state.set_staged(snapshot)

    def set_comparison_mode(self, enabled: bool):
        self.state.set_comparison_mode(enabled)

    def toggle_comparison_mode(self) -> bool:
        return self.state.toggle_comparison_mode()

    def classify(self, collection: str, entity_id: str) -> ChangeType:
        return classify(
            self.state.current, self.state.staged, self.state.comparison_mode, collection, entity_id
        )

    def diff_item(self, collection: str, entity_id: str) -> ItemDiff:
        spec = get_spec(collection)
        staged = self.state.staged[collection].get(entity_id) if self.state.staged is not None else None
        current = self.state.current[collection].get(entity_id)
        if current is None and staged is None:
            return ItemDiff(id=entity_id, change_type=ChangeType.UNCHANGED)
        return diff_entity(current, staged, spec)

    def calculate_diff(self) -> DiffMetadata:
        return calculate_diff(self.state.current, self.state.staged)

    def pending_changes(self) -> List[ChangeRecord]:
        if self.state.staged is None:
            return []
        return list(iter_changes(self.state.current, self.state.staged))

    # Staged promotion

    def reject_staged(self):
        self.state.discard_staged()
        logging.info(f"Discarded staged changes for project {self.project_id}")

    async def accept_staged(self) -> List[ChangeRecord]:
        """Promotes every staged change into the current snapshot through the pipeline."""
        return await self._promote(lambda record: True)

    async def apply_selected_changes(self, selection: Mapping[str, bool]) -> List[ChangeRecord]:
        """Promotes the staged changes whose id is selected and drops the rest."""
        return await self._promote(lambda record: bool(selection.get(record.id)))

    def discard_selected_changes(self, selection: Mapping[str, bool]):
        """
        Takes the selected changes out of the staged snapshot, so they no longer
        show in the diff, by replacing staged with a copy that agrees with current
        on those ids.
        """
        staged = self.state.staged
        if staged is None:
            return
        current = self.state.current
        for record in list(iter_changes(current, staged)):
            if not selection.get(record.id):
                continue
            collection = staged[record.collection]
            if record.type is ChangeType.NEW:
                collection = collection.remove(record.id)
            elif record.type is ChangeType.MODIFIED:
                collection = collection.replace(record.id, current[record.collection].get(record.id))
            else:
                position = current[record.collection].index_of(record.id)
                collection = collection.insert(position, current[record.collection].get(record.id))
            staged = staged.with_collection(record.collection, collection)
        self.state.set_staged(staged)

    def _ordered_changes(self, accept: Callable[[ChangeRecord], bool]) -> List[ChangeRecord]:
        records = [record for record in self.pending_changes() if accept(record)]
        order = {spec.name: i for i, spec in enumerate(COLLECTIONS)}
        upserts = [r for r in records if r.type is not ChangeType.REMOVED]
        removals = [r for r in records if r.type is ChangeType.REMOVED]
        # Parents are created before their children, children deleted before their parents.
        upserts.sort(key=lambda r: order[r.collection])
        removals.sort(key=lambda r: -order[r.collection])
        return upserts + removals

    async def _promote(self, accept: Callable[[ChangeRecord], bool]) -> List[ChangeRecord]:
        staged = self.state.staged
        if staged is None:
            return []

        records = self._ordered_changes(accept)
        id_map: Dict[str, str] = {}
        applied: List[ChangeRecord] = []
        failures: List[Tuple[ChangeRecord, BaseException]] = []

        for record in records:
            try:
                await self._promote_one(staged, record, id_map)
            except Exception as e:
                failures.append((record, e))
            else:
                applied.append(record)

        self.state.discard_staged()
        logging.info(
            f"Promoted {len(applied)} staged change(s) for project {self.project_id}"
            f" ({len(failures)} failed)"
        )
        if failures:
            raise StagedChangesError(failures)
        return applied

    async def _promote_one(self, staged: DataSnapshot, record: ChangeRecord, id_map: Dict[str, str]):
        spec = get_spec(record.collection)
        if record.type is ChangeType.REMOVED:
            await self.pipeline.delete(record.collection, record.id)
            return

        entity = staged[record.collection].get(record.id)
        child_fields = frozenset(spec.child_fields)
        payload = entity.domain_fields(exclude=child_fields)
        if spec.parent_field and payload.get(spec.parent_field) in id_map:
            payload[spec.parent_field] = id_map[payload[spec.parent_field]]

        if record.type is ChangeType.NEW:
            created = await self.pipeline.add(record.collection, payload)
            if created is not None:
                id_map[record.id] = created.id
            return

        current = self.state.current[record.collection].get(record.id)
        before = current.domain_fields(exclude=child_fields) if current is not None else {}
        changes = {key: value for key, value in payload.items() if before.get(key) != value}
        # Fields the staged version no longer carries are cleared.
        changes.update({key: None for key in before if key not in payload})
        if changes:
            await self.pipeline.update(record.collection, record.id, changes)

