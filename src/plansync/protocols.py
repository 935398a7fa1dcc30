"""
This module defines the protocols for the engine's external collaborators.

The optimistic pipeline and the invalidation bridge only talk to these
interfaces, so the remote persistence backend and the bulk-fetch cache can be
swapped (the bundled SQLite adaptor, an HTTP client, an in-test fake) without
touching the engine.
"""
from typing import Any, Dict, Hashable, List, Protocol, Tuple

from .models import Entity

QueryKey = Tuple[Hashable, ...]


class RemoteStore(Protocol):
    """
    CRUD contract of the remote persistence layer, shared by every collection.
    `add` must return the complete stored entity, server id and timestamps included.
    """

    async def add(self, collection: str, project_id: str, payload: Dict[str, Any]) -> Entity:
        ...

    async def update(self, collection: str, entity_id: str, changes: Dict[str, Any]) -> Entity:
        ...

    async def delete(self, collection: str, entity_id: str) -> None:
        ...

    async def list(self, collection: str, project_id: str) -> List[Entity]:
        ...


class QueryCache(Protocol):
    """The only part of the bulk-fetch cache the engine uses: marking keys stale."""

    def invalidate(self, key: QueryKey) -> None:
        ...
