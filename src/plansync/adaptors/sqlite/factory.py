from typing import AsyncIterator, Awaitable, Callable, Dict
from contextlib import asynccontextmanager
import aiosqlite
import asyncio
import logging

from plansync.config import EngineConfig
from plansync.invalidation import BulkFetchCache
from plansync.retry import retry_all
from plansync.store import ProjectStore
from plansync.adaptors.sqlite.handle import SQLiteRemoteStore
from plansync.adaptors.sqlite.notifier import SQLiteChangeNotifier


async def _tune(conn: aiosqlite.Connection, wal: bool = False):
    if wal:
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA synchronous = NORMAL;")
    await conn.execute("PRAGMA busy_timeout = 5000;")


@asynccontextmanager
async def sqlite_store_factory(
    db_path: str,
    *,
    config: EngineConfig | None = None,
    polling_interval: float | None = None,
    pool_size: int | None = None,
    is_retryable: Callable[[BaseException], bool] = retry_all,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncIterator[Callable]:
    """
    A factory for project stores backed by a SQLite database.

    Used as an async context manager it owns the connections, the change
    notifier and the bulk-fetch cache shared by every project it opens, and
    yields an `open_project` function that hands out wired `ProjectStore`s.
    """
    if not db_path:
        raise ValueError("`db_path` must be provided.")

    config = config or EngineConfig()
    updates = {}
    if polling_interval is not None:
        updates["polling_interval"] = polling_interval
    if pool_size is not None:
        updates["pool_size"] = pool_size
    if updates:
        config = config.model_copy(update=updates)

    is_memory_db = db_path == ":memory:"
    db_connect_string = "file:plansync_shared?mode=memory&cache=shared" if is_memory_db else db_path

    notifier_conn = await aiosqlite.connect(db_connect_string, uri=is_memory_db)
    await _tune(notifier_conn, wal=not is_memory_db)
    notifier = SQLiteChangeNotifier(notifier_conn, polling_interval=config.polling_interval)
    await notifier.start()

    write_conn = await aiosqlite.connect(db_connect_string, uri=is_memory_db)
    await _tune(write_conn, wal=not is_memory_db)
    write_lock = asyncio.Lock()

    read_pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
    read_connect_string = db_connect_string if is_memory_db else f"file:{db_connect_string}?mode=ro"
    for _ in range(config.pool_size):
        conn = await aiosqlite.connect(read_connect_string, uri=True)
        await _tune(conn)
        await read_pool.put(conn)

    remote = SQLiteRemoteStore(write_conn, write_lock, read_pool)
    cache = BulkFetchCache()
    followers: Dict[int, asyncio.Task] = {}

    async def cleanup():
        """Stops followers and the notifier, then closes every connection."""
        for task in followers.values():
            task.cancel()
        await asyncio.gather(*followers.values(), return_exceptions=True)
        await notifier.stop()

        connection_tasks = [notifier_conn.close(), write_conn.close()]
        while not read_pool.empty():
            conn = await read_pool.get()
            connection_tasks.append(conn.close())
        await asyncio.gather(*connection_tasks)

    @asynccontextmanager
    async def open_project(project_id: str, *, follow: bool = False) -> AsyncIterator[ProjectStore]:
        store = ProjectStore(
            project_id, remote, cache, config, is_retryable=is_retryable, sleep=sleep
        )
        await store.sync.load()
        if not follow:
            yield store
            return

        changes = await notifier.subscribe(project_id)
        invalidations = cache.subscribe()
        tasks = [
            asyncio.create_task(store.sync.follow(changes)),
            asyncio.create_task(store.sync.follow(invalidations)),
        ]
        for task in tasks:
            followers[id(task)] = task
        try:
            yield store
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            for task in tasks:
                followers.pop(id(task), None)
            cache.unsubscribe(invalidations)
            await notifier.unsubscribe(project_id, changes)
            logging.info(f"Stopped following project {project_id}")

    try:
        yield open_project
    finally:
        await cleanup()
