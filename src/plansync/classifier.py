"""
Change classification between the current and staged snapshots.

Everything here is a pure function of its arguments. Lookups go through the
collection id index, which lives on the (immutable) collection object itself, so
repeated classification against unchanged snapshots does not rebuild anything.
"""
from typing import Any, Dict, Iterator, Optional

from .models import ChangeRecord, ChangeType, DiffMetadata, Entity, FeatureDiff, ItemDiff
from .registry import COLLECTIONS, CollectionSpec, get_spec
from .snapshot import DataSnapshot, EntityCollection


def comparable_fields(entity: Entity, spec: CollectionSpec) -> Dict[str, Any]:
    """The fields that take part in equality, i.e. everything but nested child lists."""
    return entity.fields(exclude=frozenset(spec.child_fields))


def classify_entity(
    current: Optional[Entity], staged: Optional[Entity], spec: CollectionSpec
) -> ChangeType:
    if current is None and staged is None:
        return ChangeType.UNCHANGED
    if current is None:
        return ChangeType.NEW
    if staged is None:
        return ChangeType.REMOVED
    if current is staged:
        return ChangeType.UNCHANGED
    if comparable_fields(current, spec) != comparable_fields(staged, spec):
        return ChangeType.MODIFIED
    return ChangeType.UNCHANGED


def classify(
    current: DataSnapshot,
    staged: Optional[DataSnapshot],
    comparison_mode: bool,
    collection: str,
    entity_id: str,
) -> ChangeType:
    spec = get_spec(collection)
    if not comparison_mode or staged is None:
        return ChangeType.UNCHANGED
    current_collection = current[collection]
    staged_collection = staged[collection]
    if current_collection is staged_collection:
        return ChangeType.UNCHANGED
    return classify_entity(current_collection.get(entity_id), staged_collection.get(entity_id), spec)


def diff_entity(
    current: Optional[Entity], staged: Optional[Entity], spec: CollectionSpec
) -> ItemDiff:
    change_type = classify_entity(current, staged, spec)
    entity_id = (staged or current).id
    if change_type is ChangeType.NEW:
        return ItemDiff(id=entity_id, change_type=change_type, new_values=comparable_fields(staged, spec))
    if change_type is ChangeType.REMOVED:
        return ItemDiff(
            id=entity_id, change_type=change_type, previous_values=comparable_fields(current, spec)
        )
    if change_type is ChangeType.UNCHANGED:
        return ItemDiff(id=entity_id, change_type=change_type)

    before = comparable_fields(current, spec)
    after = comparable_fields(staged, spec)
    changed = [key for key in dict.fromkeys([*before, *after]) if before.get(key) != after.get(key)]
    return ItemDiff(
        id=entity_id,
        change_type=change_type,
        previous_values={key: before.get(key) for key in changed},
        new_values={key: after.get(key) for key in changed},
    )


def iter_collection_changes(
    name: str, current: EntityCollection, staged: EntityCollection
) -> Iterator[ChangeRecord]:
    """Yields every non-unchanged record, staged order first, then removals in current order."""
    if current is staged:
        return
    spec = get_spec(name)
    for entity in staged:
        change_type = classify_entity(current.get(entity.id), entity, spec)
        if change_type is not ChangeType.UNCHANGED:
            yield ChangeRecord(id=entity.id, collection=name, type=change_type)
    for entity in current:
        if entity.id not in staged:
            yield ChangeRecord(id=entity.id, collection=name, type=ChangeType.REMOVED)


def iter_changes(current: DataSnapshot, staged: DataSnapshot) -> Iterator[ChangeRecord]:
    for spec in COLLECTIONS:
        yield from iter_collection_changes(spec.name, current[spec.name], staged[spec.name])


def diff_collection(name: str, current: EntityCollection, staged: EntityCollection) -> FeatureDiff:
    diff = FeatureDiff()
    for record in iter_collection_changes(name, current, staged):
        if record.type is ChangeType.NEW:
            diff.additions.append(record.id)
        elif record.type is ChangeType.MODIFIED:
            diff.modifications.append(record.id)
        else:
            diff.deletions.append(record.id)
    return diff


def calculate_diff(current: DataSnapshot, staged: Optional[DataSnapshot]) -> DiffMetadata:
    metadata = DiffMetadata()
    if staged is None:
        return metadata
    for spec in COLLECTIONS:
        diff = diff_collection(spec.name, current[spec.name], staged[spec.name])
        if diff.has_changes:
            metadata.features[spec.name] = diff
    return metadata
