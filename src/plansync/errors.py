from typing import List, Tuple


class PlanSyncError(Exception):
    """Base class for errors raised by the engine itself."""


class UnknownCollectionError(PlanSyncError, KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self):
        return f"Unknown collection: {self.name!r}"


class EntityNotFoundError(PlanSyncError, LookupError):
    def __init__(self, collection: str, entity_id: str):
        super().__init__(f"No entity {entity_id!r} in collection {collection!r}")
        self.collection = collection
        self.entity_id = entity_id


class MaxRetriesExceeded(PlanSyncError):
    pass


class StagedChangesError(PlanSyncError):
    """
    Raised when promoting staged changes leaves some of them unapplied.
    `failures` holds (ChangeRecord, exception) pairs; every other change was applied.
    """

    def __init__(self, failures: List[Tuple[object, BaseException]]):
        super().__init__(f"{len(failures)} staged change(s) could not be applied")
        self.failures = failures
