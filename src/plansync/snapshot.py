"""
Entity collections, data snapshots and the per-project state holding them.

Collections and snapshots are immutable. Every change produces a new object and
leaves the untouched collections shared with the previous snapshot, so a reader
that memoizes on identity sees a new object only for the collection that changed.
"""
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from .models import Entity
from .registry import COLLECTION_NAMES, get_spec


def _coerce(entity: Any) -> Entity:
    if isinstance(entity, Entity):
        return entity
    return Entity.model_validate(entity)


class EntityCollection:
    """An insertion-ordered, id-unique, immutable sequence of entities."""

    __slots__ = ("_entities", "_index")

    def __init__(self, entities: Iterable[Any] = ()):
        self._entities: Tuple[Entity, ...] = tuple(_coerce(e) for e in entities)
        self._index: Dict[str, int] | None = None
        if len(self._ids()) != len(self._entities):
            raise ValueError("Entity ids must be unique within a collection")

    def _ids(self) -> Dict[str, int]:
        if self._index is None:
            self._index = {entity.id: i for i, entity in enumerate(self._entities)}
        return self._index

    def __iter__(self) -> Iterator[Entity]:
        return iter(self._entities)

    def __len__(self) -> int:
        return len(self._entities)

    def __getitem__(self, position: int) -> Entity:
        return self._entities[position]

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._ids()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, EntityCollection):
            return self._entities == other._entities
        return NotImplemented

    __hash__ = None

    def __repr__(self):
        return f"EntityCollection({list(self._ids())!r})"

    @property
    def entities(self) -> Tuple[Entity, ...]:
        return self._entities

    def ids(self) -> Tuple[str, ...]:
        return tuple(self._ids())

    def get(self, entity_id: str) -> Entity | None:
        position = self._ids().get(entity_id)
        return None if position is None else self._entities[position]

    def index_of(self, entity_id: str) -> int | None:
        return self._ids().get(entity_id)

    def append(self, entity: Entity) -> "EntityCollection":
        if entity.id in self:
            raise ValueError(f"Entity {entity.id!r} already present")
        return EntityCollection(self._entities + (entity,))

    def insert(self, position: int, entity: Entity) -> "EntityCollection":
        if entity.id in self:
            raise ValueError(f"Entity {entity.id!r} already present")
        position = max(0, min(position, len(self._entities)))
        entities = self._entities[:position] + (entity,) + self._entities[position:]
        return EntityCollection(entities)

    def replace(self, entity_id: str, entity: Entity) -> "EntityCollection":
        """Swaps the entity with `entity_id` for `entity` at the same position."""
        position = self._ids()[entity_id]
        if entity.id != entity_id and entity.id in self:
            raise ValueError(f"Entity {entity.id!r} already present")
        entities = self._entities[:position] + (entity,) + self._entities[position + 1:]
        return EntityCollection(entities)

    def remove(self, entity_id: str) -> "EntityCollection":
        position = self._ids()[entity_id]
        return EntityCollection(self._entities[:position] + self._entities[position + 1:])


EMPTY_COLLECTION = EntityCollection()


class DataSnapshot:
    """All entity collections of one project at one instant."""

    __slots__ = ("_collections",)

    def __init__(self, collections: Mapping[str, EntityCollection] | None = None):
        resolved: Dict[str, EntityCollection] = {}
        collections = collections or {}
        for name in collections:
            get_spec(name)
        for name in COLLECTION_NAMES:
            resolved[name] = collections.get(name, EMPTY_COLLECTION)
        self._collections = resolved

    @classmethod
    def from_mapping(cls, data: Mapping[str, Iterable[Any]]) -> "DataSnapshot":
        """Builds a snapshot from plain lists of dicts or entities keyed by collection name."""
        return cls({name: EntityCollection(items) for name, items in data.items()})

    def __getitem__(self, name: str) -> EntityCollection:
        get_spec(name)
        return self._collections[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._collections)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DataSnapshot):
            return self._collections == other._collections
        return NotImplemented

    def with_collection(self, name: str, collection: EntityCollection) -> "DataSnapshot":
        get_spec(name)
        if self._collections[name] is collection:
            return self
        return DataSnapshot({**self._collections, name: collection})


class CollectionCheckpoint:
    """A saved copy of one collection that can be restored wholesale."""

    __slots__ = ("collection_name", "collection")

    def __init__(self, collection_name: str, collection: EntityCollection):
        self.collection_name = collection_name
        self.collection = collection


class ProjectState:
    """
    Holds the current and staged snapshots of one project plus the comparison-mode
    flag that selects which of the two is served to readers.
    """

    def __init__(self, project_id: str | None, current: DataSnapshot | None = None):
        self.project_id = project_id
        self.current = current or DataSnapshot()
        self.staged: Optional[DataSnapshot] = None
        self.comparison_mode = False

    def select(self, name: str) -> EntityCollection:
        if self.comparison_mode and self.staged is not None:
            return self.staged[name]
        return self.current[name]

    @property
    def in_comparison(self) -> bool:
        return self.comparison_mode and self.staged is not None

    def set_current_collection(self, name: str, collection: EntityCollection):
        self.current = self.current.with_collection(name, collection)

    def set_staged(self, snapshot: DataSnapshot | Mapping[str, Iterable[Any]] | None):
        if snapshot is not None and not isinstance(snapshot, DataSnapshot):
            snapshot = DataSnapshot.from_mapping(snapshot)
        self.staged = snapshot

    def set_comparison_mode(self, enabled: bool):
        self.comparison_mode = bool(enabled)

    def toggle_comparison_mode(self) -> bool:
        self.comparison_mode = not self.comparison_mode
        return self.comparison_mode

    def discard_staged(self):
        self.staged = None
        self.comparison_mode = False

    def checkpoint(self, name: str) -> CollectionCheckpoint:
        return CollectionCheckpoint(name, self.current[name])

    def restore(self, checkpoint: CollectionCheckpoint):
        self.set_current_collection(checkpoint.collection_name, checkpoint.collection)
