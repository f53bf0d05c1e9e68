import pytest
import pytest_asyncio

from guildkeeper.core.db import SqliteDatabase
from guildkeeper.core.errors import StorageError
from guildkeeper.core.storage import MISSING, RelationalStore


STRUCTURED_VALUES = {
    "guild:1:config": {"prefix": "!", "modules": {"tickets": True}},
    "guild:1:welcome": {"channelId": "55", "message": "hi {user}"},
    "guild:1:leveling:config": {"enabled": True, "xpPerMessage": [15, 25]},
    "guild:1:leveling:users:7": {"xp": 120, "level": 3, "totalXp": 900, "rank": None},
    "guild:1:economy:7": {"balance": 50, "bank": 1000, "inventory": ["fish"]},
    "guild:1:afk:7": {"reason": "lunch", "since": 1700000000000},
    "guild:1:ticket:99": {"ownerId": "7", "status": "open", "claimedBy": None},
}


@pytest.mark.asyncio
@pytest.mark.parametrize("key, value", list(STRUCTURED_VALUES.items()))
async def test_structured_values_round_trip(sqlite_store, key, value):
    assert await sqlite_store.set(key, value) is True
    assert await sqlite_store.get(key) == value
    assert await sqlite_store.exists(key)


@pytest.mark.asyncio
@pytest.mark.parametrize("value", ["123", 123, 1.25, None, [1, {"a": "b"}], {"x": {"y": []}}, ""])
async def test_catch_all_values_keep_their_type(sqlite_store, value):
    await sqlite_store.set("temp:value", value)
    assert await sqlite_store.get("temp:value", MISSING) == value
    await sqlite_store.set("cache:value", value)
    assert await sqlite_store.get("cache:value", MISSING) == value


@pytest.mark.asyncio
async def test_unknown_keys_land_in_temp_table(sqlite_store):
    await sqlite_store.set("guild:1:jointocreate", {"enabled": True})
    row = await sqlite_store.db.fetchone("SELECT value FROM temp_data WHERE key = ?", ("guild:1:jointocreate",))
    assert row is not None
    assert await sqlite_store.get("guild:1:jointocreate") == {"enabled": True}


@pytest.mark.asyncio
async def test_dependent_writes_create_parent_rows(sqlite_store):
    await sqlite_store.set("guild:42:economy:7", {"balance": 1})
    assert await sqlite_store.db.fetchone("SELECT id FROM guilds WHERE id = ?", ("42",)) is not None
    assert await sqlite_store.db.fetchone("SELECT id FROM users WHERE id = ?", ("7",)) is not None
    # a second write with the parents already present must not fail
    assert await sqlite_store.set("guild:42:economy:7", {"balance": 2}) is True


@pytest.mark.asyncio
async def test_numeric_columns_are_extracted(sqlite_store):
    await sqlite_store.set("guild:1:leveling:users:7", {"xp": 10, "level": 2, "totalXp": 310})
    row = await sqlite_store.db.fetchone(
        "SELECT xp, level, total_xp FROM user_levels WHERE guild_id = ? AND user_id = ?", ("1", "7")
    )
    assert (row["xp"], row["level"], row["total_xp"]) == (10, 2, 310)

    await sqlite_store.set("guild:1:economy:7", {"balance": "lots"})
    row = await sqlite_store.db.fetchone("SELECT balance, bank FROM economy WHERE user_id = ?", ("7",))
    assert row["balance"] is None and row["bank"] is None


@pytest.mark.asyncio
async def test_birthdays_replace_all(sqlite_store):
    key = "guild:1:birthdays"
    await sqlite_store.set(key, {"10": {"month": 1, "day": 2}, "11": {"month": 3, "day": 4}})
    await sqlite_store.set(key, {"12": {"month": 5, "day": 6, "year": 1999}})
    assert await sqlite_store.get(key) == {"12": {"month": 5, "day": 6, "year": 1999}}
    rows = await sqlite_store.db.fetchall("SELECT user_id FROM birthdays WHERE guild_id = ?", ("1",))
    assert [r["user_id"] for r in rows] == ["12"]


@pytest.mark.asyncio
async def test_giveaways_keep_order(sqlite_store):
    key = "guild:1:giveaways"
    giveaways = [
        {"messageId": "3", "prize": "c", "endsAt": 300},
        {"messageId": "1", "prize": "a", "endsAt": 100},
        {"prize": "no message yet"},
    ]
    await sqlite_store.set(key, giveaways)
    assert await sqlite_store.get(key) == giveaways


@pytest.mark.asyncio
async def test_empty_collection_is_distinct_from_missing(sqlite_store):
    assert await sqlite_store.get("guild:1:birthdays", "default") == "default"
    await sqlite_store.set("guild:1:birthdays", {})
    assert await sqlite_store.get("guild:1:birthdays", "default") == {}
    await sqlite_store.delete("guild:1:birthdays")
    assert await sqlite_store.get("guild:1:birthdays", "default") == "default"


@pytest.mark.asyncio
async def test_collection_shape_is_enforced(sqlite_store):
    with pytest.raises(TypeError):
        await sqlite_store.set("guild:1:birthdays", ["not", "a", "mapping"])
    with pytest.raises(TypeError):
        await sqlite_store.set("guild:1:giveaways", "nope")


@pytest.mark.asyncio
async def test_ttl_on_catch_all_rows(sqlite_store, clock):
    await sqlite_store.set("temp:short", "v", ttl=1)
    assert await sqlite_store.ttl("temp:short") == 1
    clock.advance(1.5)
    assert await sqlite_store.get("temp:short") is None
    assert await sqlite_store.ttl("temp:short") == -2
    row = await sqlite_store.db.fetchone("SELECT key FROM temp_data WHERE key = ?", ("temp:short",))
    assert row is None


@pytest.mark.asyncio
async def test_expired_row_is_overwritten_by_set(sqlite_store, clock):
    await sqlite_store.set("cache:k", 1, ttl=1)
    clock.advance(2)
    await sqlite_store.set("cache:k", 2)
    assert await sqlite_store.get("cache:k") == 2
    assert await sqlite_store.ttl("cache:k") == -1


@pytest.mark.asyncio
async def test_ttl_on_structured_rows(sqlite_store, clock):
    await sqlite_store.set("guild:1:afk:7", {"reason": "brb"}, ttl=60)
    await sqlite_store.set("guild:1:giveaways", [{"prize": "x"}], ttl=60)
    assert 0 < await sqlite_store.ttl("guild:1:afk:7") <= 60
    assert 0 < await sqlite_store.ttl("guild:1:giveaways") <= 60
    clock.advance(61)
    assert await sqlite_store.get("guild:1:afk:7") is None
    assert await sqlite_store.get("guild:1:giveaways") is None
    assert await sqlite_store.list("guild:1:") == []


@pytest.mark.asyncio
async def test_list_reconstructs_every_key(sqlite_store):
    for key, value in STRUCTURED_VALUES.items():
        await sqlite_store.set(key, value)
    await sqlite_store.set("guild:1:birthdays", {"7": {"month": 1, "day": 1}})
    await sqlite_store.set("guild:2:config", {})
    await sqlite_store.set("temp:a", 1)
    await sqlite_store.set("cache:b", 2)
    await sqlite_store.set("guild:1:jointocreate", {})

    everything = await sqlite_store.list("")
    assert set(everything) == {
        *STRUCTURED_VALUES, "guild:1:birthdays", "guild:2:config", "temp:a", "cache:b", "guild:1:jointocreate",
    }
    assert set(await sqlite_store.list("guild:1:")) == {*STRUCTURED_VALUES, "guild:1:birthdays", "guild:1:jointocreate"}
    assert await sqlite_store.list("temp:") == ["temp:a"]


@pytest.mark.asyncio
async def test_list_treats_prefix_literally(sqlite_store):
    await sqlite_store.set("temp:a_b", 1)
    await sqlite_store.set("temp:axb", 1)
    await sqlite_store.set("temp:A_b", 1)
    await sqlite_store.set("temp:50%", 1)
    await sqlite_store.set("temp:500", 1)
    assert await sqlite_store.list("temp:a_") == ["temp:a_b"]
    assert await sqlite_store.list("temp:50%") == ["temp:50%"]


@pytest.mark.asyncio
async def test_increment_decrement(sqlite_store):
    assert await sqlite_store.increment("temp:counter") == 1
    assert await sqlite_store.increment("temp:counter", 4) == 5
    assert await sqlite_store.decrement("temp:counter", 2) == 3
    assert await sqlite_store.get("temp:counter") == 3


@pytest.mark.asyncio
async def test_delete_and_expire(sqlite_store, clock):
    await sqlite_store.set("guild:1:welcome", {"a": 1})
    assert await sqlite_store.delete("guild:1:welcome") is True
    assert await sqlite_store.get("guild:1:welcome") is None
    assert await sqlite_store.delete("guild:1:welcome") is True

    await sqlite_store.set("guild:1:config", {"a": 1})
    assert await sqlite_store.expire("guild:1:config", 5) is True
    assert await sqlite_store.expire("guild:9:config", 5) is False
    clock.advance(6)
    assert await sqlite_store.exists("guild:1:config") is False


@pytest.mark.asyncio
async def test_purge_expired(sqlite_store, clock):
    await sqlite_store.set("temp:a", 1, ttl=1)
    await sqlite_store.set("cache:b", 1, ttl=1)
    await sqlite_store.set("guild:1:ticket:5", {}, ttl=1)
    await sqlite_store.set("guild:1:birthdays", {"1": {"month": 1, "day": 1}}, ttl=1)
    await sqlite_store.set("temp:keep", 1)
    clock.advance(2)
    assert await sqlite_store.purge_expired() == 4
    assert await sqlite_store.list("") == ["temp:keep"]


@pytest_asyncio.fixture
async def transactional_store(clock):
    store = RelationalStore(SqliteDatabase(":memory:"), transactional_writes=True, clock=clock)
    await store.connect()
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_transactional_writes(transactional_store):
    await transactional_store.set("guild:1:birthdays", {"1": {"month": 2, "day": 3}})
    await transactional_store.set("guild:1:leveling:users:1", {"xp": 1})
    assert await transactional_store.get("guild:1:birthdays") == {"1": {"month": 2, "day": 3}}
    assert await transactional_store.get("guild:1:leveling:users:1") == {"xp": 1}


@pytest.mark.asyncio
async def test_failed_transactional_write_rolls_back(transactional_store):
    await transactional_store.set("guild:1:birthdays", {"1": {"month": 2, "day": 3}})
    # 1 and "1" collide on the primary key after the old rows were deleted
    with pytest.raises(StorageError):
        await transactional_store.set("guild:1:birthdays", {1: {"month": 4}, "1": {"month": 5}})
    assert await transactional_store.get("guild:1:birthdays") == {"1": {"month": 2, "day": 3}}


@pytest.mark.asyncio
async def test_connection_type_is_engine_dialect(sqlite_store):
    assert sqlite_store.connection_type == "sqlite"
