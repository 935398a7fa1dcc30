from typing import Dict, List
import aiosqlite
import json
import logging
import asyncio
import pydantic_core
from collections import defaultdict

from plansync.models import RealtimeChange


class SQLiteChangeNotifier:
    """
    Turns rows of the `entity_changes` log into `RealtimeChange`s.

    One polling task serves every open project of a database; each change goes
    to the queues subscribed to the project it belongs to. Rows of projects
    nobody follows are skipped without being decoded.
    """

    def __init__(self, conn: aiosqlite.Connection, polling_interval: float = 0.2):
        self._polling_interval = polling_interval
        self._conn = conn
        self._watchers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._last_id = 0
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def _create_schema(self):
        # The notifier connection is opened first, so it owns the schema.
        await self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS entities (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                collection TEXT NOT NULL,
                project_id TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """
        )
        await self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_entities_project_collection
            ON entities (project_id, collection)
            """
        )
        await self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS entity_changes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                collection TEXT NOT NULL,
                event_type TEXT NOT NULL,
                new TEXT,
                old TEXT
            )
        """
        )
        await self._conn.commit()

    async def start(self):
        """Creates the tables if needed and begins polling after the newest logged change."""
        if self._task:
            return
        await self._create_schema()
        async with self._conn.execute("SELECT COALESCE(MAX(id), 0) FROM entity_changes") as cursor:
            (self._last_id,) = await cursor.fetchone()
        self._task = asyncio.create_task(self._poll_for_changes())
        logging.info(f"Entity change notifier watching from change {self._last_id}")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logging.info("Entity change notifier stopped")

    def _dispatch(self, project_id: str, collection: str, event_type: str, new: str | None, old: str | None):
        queues = self._watchers.get(project_id)
        if not queues:
            return
        change = RealtimeChange(
            event_type=event_type,
            collection=collection,
            new=json.loads(new) if new else None,
            old=json.loads(old) if old else None,
        )
        for queue in queues:
            queue.put_nowait(change)

    async def _poll_for_changes(self):
        """Forwards every change logged since the last poll to the subscribers of its project."""
        query = (
            "SELECT id, project_id, collection, event_type, new, old"
            " FROM entity_changes WHERE id > ? ORDER BY id"
        )
        while True:
            try:
                async with self._conn.execute(query, (self._last_id,)) as cursor:
                    async for change_id, project_id, collection, event_type, new, old in cursor:
                        try:
                            self._dispatch(project_id, collection, event_type, new, old)
                        except (json.JSONDecodeError, pydantic_core.ValidationError) as e:
                            logging.warning(f"Skipping unreadable entity change {change_id}: {e}")
                        self._last_id = change_id
            except Exception as e:
                logging.error(f"Polling entity_changes failed: {e}")
            await asyncio.sleep(self._polling_interval)

    async def subscribe(self, project_id: str) -> asyncio.Queue:
        """Returns a queue that receives a `RealtimeChange` for every write to the project."""
        queue: asyncio.Queue = asyncio.Queue()
        async with self._lock:
            self._watchers[project_id].append(queue)
        return queue

    async def unsubscribe(self, project_id: str, queue: asyncio.Queue):
        async with self._lock:
            queues = self._watchers.get(project_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._watchers.pop(project_id, None)
