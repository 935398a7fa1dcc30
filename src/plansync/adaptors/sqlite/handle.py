from typing import Any, AsyncIterator, Dict, List
from contextlib import asynccontextmanager
import aiosqlite
import asyncio
import json
import logging
import pydantic_core
import uuid
from datetime import datetime, timezone

from plansync.errors import EntityNotFoundError
from plansync.models import SYSTEM_FIELDS, Entity
from plansync.registry import get_spec


def _row_to_entity(row) -> Entity:
    entity_id, project_id, data_json, created_at, updated_at = row
    return Entity.model_validate(
        {
            **json.loads(data_json),
            "id": entity_id,
            "project_id": project_id,
            "created_at": datetime.fromisoformat(created_at),
            "updated_at": datetime.fromisoformat(updated_at),
        }
    )


class SQLiteRemoteStore:
    """
    A `RemoteStore` backed by SQLite.

    Writes go through a single dedicated connection guarded by a lock; reads
    borrow a connection from a pool. Every write also appends a row to
    `entity_changes` inside the same transaction, which the notifier turns into
    realtime changes.
    """

    def __init__(
        self,
        write_conn: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        read_pool: asyncio.Queue,
    ):
        self.write_conn = write_conn
        self.write_lock = write_lock
        self.read_pool = read_pool

    @asynccontextmanager
    async def _read_conn(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self.read_pool.get()
        try:
            yield conn
        finally:
            await self.read_pool.put(conn)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self.write_lock:
            try:
                # Manually handle the transaction, as `async with conn` has changed
                # behaviour across aiosqlite versions.
                await self.write_conn.execute("BEGIN")
                yield self.write_conn
                await self.write_conn.commit()
            except Exception as e:
                await self.write_conn.rollback()
                logging.error(f"SQLite write failed: {e}")
                raise

    async def _fetch_row(self, conn: aiosqlite.Connection, collection: str, entity_id: str):
        async with conn.execute(
            "SELECT id, project_id, data, created_at, updated_at FROM entities"
            " WHERE collection = ? AND id = ?",
            (collection, entity_id),
        ) as cursor:
            return await cursor.fetchone()

    async def _log_change(
        self, conn: aiosqlite.Connection, collection: str, project_id: str, event_type: str,
        new: Entity | None, old: Entity | None,
    ):
        await conn.execute(
            """
            INSERT INTO entity_changes (project_id, collection, event_type, new, old)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                project_id,
                collection,
                event_type,
                new.model_dump_json() if new is not None else None,
                old.model_dump_json() if old is not None else None,
            ),
        )

    async def add(self, collection: str, project_id: str, payload: Dict[str, Any]) -> Entity:
        get_spec(collection)
        data = {k: v for k, v in payload.items() if k not in SYSTEM_FIELDS}
        now = datetime.now(timezone.utc).isoformat()
        entity_id = uuid.uuid4().hex
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO entities (id, collection, project_id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (entity_id, collection, project_id, json.dumps(data), now, now),
            )
            entity = _row_to_entity((entity_id, project_id, json.dumps(data), now, now))
            await self._log_change(conn, collection, project_id, "INSERT", entity, None)
        return entity

    async def update(self, collection: str, entity_id: str, changes: Dict[str, Any]) -> Entity:
        get_spec(collection)
        async with self._transaction() as conn:
            row = await self._fetch_row(conn, collection, entity_id)
            if row is None:
                raise EntityNotFoundError(collection, entity_id)
            old = _row_to_entity(row)
            merged = {**json.loads(row[2]), **{k: v for k, v in changes.items() if k not in SYSTEM_FIELDS}}
            # None clears a field, matching `Entity.merged`.
            data = {k: v for k, v in merged.items() if v is not None}
            now = datetime.now(timezone.utc).isoformat()
            await conn.execute(
                "UPDATE entities SET data = ?, updated_at = ? WHERE collection = ? AND id = ?",
                (json.dumps(data), now, collection, entity_id),
            )
            entity = _row_to_entity((entity_id, row[1], json.dumps(data), row[3], now))
            await self._log_change(conn, collection, row[1], "UPDATE", entity, old)
        return entity

    async def delete(self, collection: str, entity_id: str) -> None:
        get_spec(collection)
        async with self._transaction() as conn:
            row = await self._fetch_row(conn, collection, entity_id)
            if row is None:
                raise EntityNotFoundError(collection, entity_id)
            await conn.execute(
                "DELETE FROM entities WHERE collection = ? AND id = ?", (collection, entity_id)
            )
            await self._log_change(conn, collection, row[1], "DELETE", None, _row_to_entity(row))

    async def list(self, collection: str, project_id: str) -> List[Entity]:
        get_spec(collection)
        entities = []
        async with self._read_conn() as conn:
            async with conn.execute(
                "SELECT id, project_id, data, created_at, updated_at FROM entities"
                " WHERE collection = ? AND project_id = ? ORDER BY seq",
                (collection, project_id),
            ) as cursor:
                async for row in cursor:
                    try:
                        entities.append(_row_to_entity(row))
                    except (json.JSONDecodeError, pydantic_core.ValidationError, ValueError) as e:
                        logging.warning(f"Skipping invalid row {row[0]} in {collection}: {e}")
        return entities
