"""
This module exports the project store, its models and the SQLite-backed factory.
"""
from .config import EngineConfig
from .errors import (
    EntityNotFoundError,
    MaxRetriesExceeded,
    PlanSyncError,
    StagedChangesError,
    UnknownCollectionError,
)
from .models import (
    ChangeRecord,
    ChangeType,
    DiffMetadata,
    Entity,
    FeatureDiff,
    ItemDiff,
    MutationIntent,
    Operation,
    RealtimeChange,
    is_temporary_id,
)
from .retry import execute_with_retry
from .snapshot import DataSnapshot, EntityCollection, ProjectState
from .store import ProjectStore
from .adaptors.sqlite import sqlite_store_factory

__all__ = [
    "EngineConfig",
    "EntityNotFoundError",
    "MaxRetriesExceeded",
    "PlanSyncError",
    "StagedChangesError",
    "UnknownCollectionError",
    "ChangeRecord",
    "ChangeType",
    "DiffMetadata",
    "Entity",
    "FeatureDiff",
    "ItemDiff",
    "MutationIntent",
    "Operation",
    "RealtimeChange",
    "is_temporary_id",
    "execute_with_retry",
    "DataSnapshot",
    "EntityCollection",
    "ProjectState",
    "ProjectStore",
    "sqlite_store_factory",
]
