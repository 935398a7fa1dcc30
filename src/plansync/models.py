"""
This module defines the core data models for the synchronization engine using Pydantic.
These models describe the records held in each entity collection and the small
value objects (change records, diffs, mutation intents, realtime changes) that
flow between the store, the classifier and the remote persistence layer.
"""
import enum
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

TEMP_ID_PREFIX = "temp-"

# Keys every entity carries; they are never sent as part of a remote payload.
SYSTEM_FIELDS = frozenset({"id", "project_id", "created_at", "updated_at"})


def is_temporary_id(entity_id: str, prefix: str = TEMP_ID_PREFIX) -> bool:
    return isinstance(entity_id, str) and entity_id.startswith(prefix)


class Entity(BaseModel):
    """
    A single record of an entity collection. Domain fields are kept as extra
    attributes so one model serves every collection.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    id: str
    project_id: str
    created_at: datetime
    updated_at: datetime

    @property
    def is_temporary(self) -> bool:
        return is_temporary_id(self.id)

    def fields(self, exclude: frozenset = frozenset()) -> Dict[str, Any]:
        """All fields (system and domain) as a plain dict."""
        return self.model_dump(exclude=set(exclude) or None)

    def domain_fields(self, exclude: frozenset = frozenset()) -> Dict[str, Any]:
        return self.model_dump(exclude=set(SYSTEM_FIELDS | exclude))

    def merged(self, changes: Dict[str, Any]) -> "Entity":
        """
        Returns a new entity with `changes` applied on top of this one. A domain
        field set to None is cleared.
        """
        data = {**self.model_dump(), **changes}
        return Entity.model_validate(
            {key: value for key, value in data.items() if value is not None or key in SYSTEM_FIELDS}
        )


class ChangeType(str, enum.Enum):
    NEW = "new"
    MODIFIED = "modified"
    REMOVED = "removed"
    UNCHANGED = "unchanged"


class Operation(str, enum.Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class ChangeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    collection: str
    type: ChangeType


class MutationIntent(BaseModel):
    """Describes one optimistic mutation for the duration of a pipeline run."""

    collection: str
    operation: Operation
    payload: Dict[str, Any] = Field(default_factory=dict)
    entity_id: Optional[str] = None
    temp_id: Optional[str] = None


class ItemDiff(BaseModel):
    id: str
    change_type: ChangeType
    previous_values: Optional[Dict[str, Any]] = None  # Only the fields that differ
    new_values: Optional[Dict[str, Any]] = None


class FeatureDiff(BaseModel):
    additions: List[str] = Field(default_factory=list)
    modifications: List[str] = Field(default_factory=list)
    deletions: List[str] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.additions or self.modifications or self.deletions)


class DiffMetadata(BaseModel):
    # One diff object per collection that has at least one change
    features: Dict[str, FeatureDiff] = Field(default_factory=dict)

    @property
    def total_added(self) -> int:
        return sum(len(d.additions) for d in self.features.values())

    @property
    def total_modified(self) -> int:
        return sum(len(d.modifications) for d in self.features.values())

    @property
    def total_removed(self) -> int:
        return sum(len(d.deletions) for d in self.features.values())

    @property
    def total_changes(self) -> int:
        return self.total_added + self.total_modified + self.total_removed


class RealtimeChange(BaseModel):
    """A row-level change pushed by the remote persistence layer."""

    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    collection: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
