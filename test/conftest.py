import asyncio
from collections import defaultdict
from datetime import datetime, timezone
import itertools

import pytest

from plansync.errors import EntityNotFoundError
from plansync.models import Entity


class FakeRemote:
    """
    An in-memory RemoteStore. `fail_next[op]` makes the next N calls of that
    operation raise; `gates[op]` holds calls until the event is set (a `list`
    call reads its rows before waiting).
    """

    def __init__(self):
        self.rows = defaultdict(dict)
        self.calls = []
        self.fail_next = defaultdict(int)
        self.fail_if = None
        self.gates = {}
        self._ids = itertools.count(1)

    async def _enter(self, op, *args):
        self.calls.append((op, *args))
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        if self.fail_next[op] > 0:
            self.fail_next[op] -= 1
            raise ConnectionError(f"{op} failed")
        if self.fail_if is not None and self.fail_if(op, *args):
            raise ConnectionError(f"{op} rejected")

    def seed(self, collection, project_id, **fields):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        entity = Entity.model_validate(
            {"project_id": project_id, "created_at": now, "updated_at": now, **fields}
        )
        self.rows[collection][entity.id] = entity
        return entity

    async def add(self, collection, project_id, payload):
        await self._enter("add", collection, dict(payload))
        now = datetime.now(timezone.utc)
        entity = Entity.model_validate(
            {**payload, "id": f"srv-{next(self._ids)}", "project_id": project_id,
             "created_at": now, "updated_at": now}
        )
        self.rows[collection][entity.id] = entity
        return entity

    async def update(self, collection, entity_id, changes):
        await self._enter("update", collection, entity_id, dict(changes))
        if entity_id not in self.rows[collection]:
            raise EntityNotFoundError(collection, entity_id)
        entity = self.rows[collection][entity_id].merged(changes)
        self.rows[collection][entity_id] = entity
        return entity

    async def delete(self, collection, entity_id):
        await self._enter("delete", collection, entity_id)
        if self.rows[collection].pop(entity_id, None) is None:
            raise EntityNotFoundError(collection, entity_id)

    async def list(self, collection, project_id):
        rows = [e for e in self.rows[collection].values() if e.project_id == project_id]
        gate = self.gates.get("list")
        if gate is not None:
            await gate.wait()
        return rows


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class RecordingCache:
    def __init__(self):
        self.keys = []

    def invalidate(self, key):
        self.keys.append(tuple(key))


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def cache():
    return RecordingCache()
