import asyncio
import sys
import pathlib

import pytest
import pytest_asyncio

# Ensure project root is on sys.path so tests can import the package
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from guildkeeper.core.db import SqliteDatabase  # noqa: E402
from guildkeeper.core.storage import MemoryStore, RelationalStore, Storage  # noqa: E402


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest_asyncio.fixture
async def sqlite_store(clock):
    store = RelationalStore(SqliteDatabase(":memory:"), clock=clock)
    await store.connect()
    yield store
    await store.close()


class YieldingStore(MemoryStore):
    """Memory store that gives up the event loop on every read and write, like a networked backend."""

    async def get(self, key, default=None):
        await asyncio.sleep(0)
        return await super().get(key, default)

    async def set(self, key, value, ttl=None):
        await asyncio.sleep(0)
        return await super().set(key, value, ttl)


@pytest.fixture
def yielding_storage(clock):
    return Storage(primary=YieldingStore(clock=clock), clock=clock)
