import asyncio

import pytest
from pytest_asyncio import fixture

from plansync.adaptors.sqlite import sqlite_store_factory
from plansync.errors import EntityNotFoundError, UnknownCollectionError


@fixture
async def open_project(tmp_path, sleeper):
    """
    Provides the `open_project` function of a factory backed by a fresh database
    file for each test function.
    """
    db_path = str(tmp_path / "plans.db")
    async with sqlite_store_factory(db_path, polling_interval=0.01, pool_size=2, sleep=sleeper) as factory:
        yield factory


async def eventually(predicate, timeout=2.0):
    async def wait():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(wait(), timeout)


@pytest.mark.asyncio
async def test_add_update_delete(open_project):
    async with open_project("p1") as store:
        created = await store.add("team_members", {"name": "Ada", "skills": ["pitch", "sql"]})
        assert not created.is_temporary
        assert store.read("team_members").ids() == (created.id,)

        await store.update("team_members", created.id, {"name": "Ada L."})
        (row,) = await store.pipeline.remote.list("team_members", "p1")
        assert row.name == "Ada L."
        assert row.skills == ["pitch", "sql"]
        assert row.updated_at >= row.created_at

        assert await store.delete("team_members", created.id) is True
        assert await store.pipeline.remote.list("team_members", "p1") == []
        assert store.read("team_members").ids() == ()


@pytest.mark.asyncio
async def test_update_with_none_clears_field(open_project):
    async with open_project("p1") as store:
        created = await store.add("grp_items", {"title": "Founder", "note": "draft"})
        await store.update("grp_items", created.id, {"note": None})

        assert "note" not in store.get("grp_items", created.id).fields()
        (row,) = await store.pipeline.remote.list("grp_items", "p1")
        assert "note" not in row.fields()
        assert row.title == "Founder"


@pytest.mark.asyncio
async def test_open_project_loads_only_its_own_rows(open_project):
    async with open_project("p1") as store:
        first = await store.add("grp_categories", {"name": "generation"})
        second = await store.add("grp_categories", {"name": "remuneration"})

    async with open_project("p2") as other:
        assert len(other.read("grp_categories")) == 0

    async with open_project("p1") as store:
        assert store.read("grp_categories").ids() == (first.id, second.id)
        assert store.get("grp_categories", second.id).name == "remuneration"


@pytest.mark.asyncio
async def test_missing_rows_and_unknown_collections_raise(open_project):
    async with open_project("p1") as store:
        remote = store.pipeline.remote
        with pytest.raises(EntityNotFoundError):
            await remote.update("team_tasks", "ghost", {"title": "x"})
        with pytest.raises(EntityNotFoundError):
            await remote.delete("team_tasks", "ghost")
        with pytest.raises(UnknownCollectionError):
            await remote.add("canvas", "p1", {})
        # The failed writes left the connection usable.
        created = await remote.add("team_tasks", "p1", {"title": "ok"})
        assert [e.id for e in await remote.list("team_tasks", "p1")] == [created.id]


@pytest.mark.asyncio
async def test_system_fields_are_not_stored_as_data(open_project):
    async with open_project("p1") as store:
        created = await store.pipeline.remote.add(
            "documents", "p1", {"id": "client-id", "project_id": "p9", "title": "Deck"}
        )
        assert created.id != "client-id"
        assert created.project_id == "p1"
        assert created.title == "Deck"


@pytest.mark.asyncio
async def test_follow_mode_receives_changes_from_other_sessions(open_project):
    async with open_project("p1", follow=True) as watcher:
        async with open_project("p1") as writer:
            created = await writer.add("market_trends", {"name": "Remote work"})
            await eventually(lambda: created.id in watcher.read("market_trends"))
            assert watcher.get("market_trends", created.id).name == "Remote work"

            await writer.update("market_trends", created.id, {"name": "Hybrid work"})
            await eventually(lambda: watcher.get("market_trends", created.id).name == "Hybrid work")

            await writer.delete("market_trends", created.id)
            await eventually(lambda: created.id not in watcher.read("market_trends"))


@pytest.mark.asyncio
async def test_follow_mode_ignores_other_projects(open_project):
    async with open_project("p1", follow=True) as watcher:
        async with open_project("p2") as writer:
            await writer.add("market_trends", {"name": "Elsewhere"})
            await asyncio.sleep(0.1)
        assert len(watcher.read("market_trends")) == 0
