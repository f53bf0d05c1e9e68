import pytest

from guildkeeper.core.storage import MISSING


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "value",
    [0, 1.5, "123", "", None, True, [1, "two", {"three": 3}], {"nested": {"list": [1, 2]}, "n": None}],
)
async def test_values_round_trip(memory_store, value):
    assert await memory_store.set("temp:k", value) is True
    assert await memory_store.get("temp:k", MISSING) == value


@pytest.mark.asyncio
async def test_missing_key_returns_default(memory_store):
    assert await memory_store.get("nope") is None
    assert await memory_store.get("nope", "fallback") == "fallback"
    assert await memory_store.exists("nope") is False
    assert await memory_store.ttl("nope") == -2


@pytest.mark.asyncio
async def test_stored_values_are_isolated_from_callers(memory_store):
    value = {"items": [1]}
    await memory_store.set("k", value)
    value["items"].append(2)
    fetched = await memory_store.get("k")
    fetched["items"].append(3)
    assert await memory_store.get("k") == {"items": [1]}


@pytest.mark.asyncio
async def test_ttl_expiry(memory_store, clock):
    await memory_store.set("temp:short", "v", ttl=1)
    assert await memory_store.ttl("temp:short") == 1
    assert await memory_store.exists("temp:short")
    clock.advance(1.5)
    assert await memory_store.get("temp:short") is None
    assert await memory_store.exists("temp:short") is False
    assert await memory_store.list("temp:") == []


@pytest.mark.asyncio
async def test_set_overwrites_and_clears_ttl(memory_store, clock):
    await memory_store.set("k", 1, ttl=1)
    await memory_store.set("k", 2)
    clock.advance(5)
    assert await memory_store.get("k") == 2
    assert await memory_store.ttl("k") == -1


@pytest.mark.asyncio
async def test_list_by_prefix(memory_store):
    await memory_store.set("guild:1:config", {})
    await memory_store.set("guild:1:welcome", {})
    await memory_store.set("guild:2:config", {})
    assert sorted(await memory_store.list("guild:1:")) == ["guild:1:config", "guild:1:welcome"]
    assert len(await memory_store.list("")) == 3


@pytest.mark.asyncio
async def test_increment_and_decrement(memory_store):
    assert await memory_store.increment("counter") == 1
    assert await memory_store.increment("counter", 5) == 6
    assert await memory_store.decrement("counter", 2) == 4
    await memory_store.set("text", "abc")
    assert await memory_store.increment("text", 3) == 3


@pytest.mark.asyncio
async def test_increment_keeps_expiry(memory_store, clock):
    await memory_store.set("counter", 1, ttl=10)
    await memory_store.increment("counter")
    assert 0 < await memory_store.ttl("counter") <= 10


@pytest.mark.asyncio
async def test_delete_and_expire(memory_store, clock):
    await memory_store.set("k", "v")
    assert await memory_store.expire("k", 2) is True
    assert await memory_store.expire("missing", 2) is False
    clock.advance(3)
    assert await memory_store.get("k") is None
    await memory_store.set("k2", "v")
    assert await memory_store.delete("k2") is True
    assert await memory_store.get("k2") is None


@pytest.mark.asyncio
async def test_purge_expired(memory_store, clock):
    await memory_store.set("a", 1, ttl=1)
    await memory_store.set("b", 1)
    clock.advance(2)
    assert await memory_store.purge_expired() == 1
    memory_store.clear()
    assert await memory_store.list("") == []
