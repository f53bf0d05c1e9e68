"""
Relational key-value backend.

Keys are classified by parse_key() and dispatched to a handler per kind:
- documents: one row per key holding the JSON value, plus a few queryable columns
- collections: guild birthdays / giveaways, one row per entry, rewritten wholesale on set
- blobs: the temp_data / cache_data catch-all tables keyed by the full key

Dependent rows reference guilds/users, so every write inserts the parent rows first.
Expiry is stored as epoch milliseconds and checked on every read; expired rows found by a
read are deleted on the spot.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable

from .base import (
    TTL_MISSING,
    Clock,
    KeyValueBackend,
    expires_at_ms,
    is_number,
    now_ms,
    remaining_seconds,
)
from .keys import KeyDescriptor, KeyKind, build_key, parse_key

log = logging.getLogger(__name__)

# ============================================================================
# SCHEMA
# ============================================================================

def _document_table(name: str, key_columns: str, extra: str = "", refs: str = "") -> str:
    return f"""
    CREATE TABLE IF NOT EXISTS {name} (
      {key_columns},
      {extra}value TEXT NOT NULL,
      expires_at BIGINT,
      updated_at BIGINT NOT NULL{refs}
    )
    """


_GUILD_REF = "guild_id TEXT NOT NULL REFERENCES guilds(id) ON DELETE CASCADE"
_USER_REF = "user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE"

SCHEMA: tuple[str, ...] = (
    "CREATE TABLE IF NOT EXISTS guilds (id TEXT PRIMARY KEY, created_at BIGINT NOT NULL)",
    "CREATE TABLE IF NOT EXISTS users (id TEXT PRIMARY KEY, created_at BIGINT NOT NULL)",
    _document_table("guild_configs", f"{_GUILD_REF} PRIMARY KEY"),
    _document_table("welcome_configs", f"{_GUILD_REF} PRIMARY KEY"),
    _document_table("leveling_configs", f"{_GUILD_REF} PRIMARY KEY"),
    _document_table(
        "user_levels", f"{_GUILD_REF},\n      {_USER_REF}",
        extra="xp BIGINT,\n      level INTEGER,\n      total_xp BIGINT,\n      ",
        refs=",\n      PRIMARY KEY (guild_id, user_id)",
    ),
    _document_table(
        "economy", f"{_GUILD_REF},\n      {_USER_REF}",
        extra="balance BIGINT,\n      bank BIGINT,\n      ",
        refs=",\n      PRIMARY KEY (guild_id, user_id)",
    ),
    _document_table(
        "afk_status", f"{_GUILD_REF},\n      {_USER_REF}",
        extra="reason TEXT,\n      ",
        refs=",\n      PRIMARY KEY (guild_id, user_id)",
    ),
    _document_table(
        "ticket_data", f"{_GUILD_REF},\n      channel_id TEXT NOT NULL",
        refs=",\n      PRIMARY KEY (guild_id, channel_id)",
    ),
    """
    CREATE TABLE IF NOT EXISTS collections (
      guild_id TEXT NOT NULL REFERENCES guilds(id) ON DELETE CASCADE,
      kind TEXT NOT NULL,
      expires_at BIGINT,
      updated_at BIGINT NOT NULL,
      PRIMARY KEY (guild_id, kind)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS birthdays (
      guild_id TEXT NOT NULL REFERENCES guilds(id) ON DELETE CASCADE,
      user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
      month INTEGER,
      day INTEGER,
      value TEXT NOT NULL,
      PRIMARY KEY (guild_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS giveaways (
      guild_id TEXT NOT NULL REFERENCES guilds(id) ON DELETE CASCADE,
      position INTEGER NOT NULL,
      message_id TEXT,
      ends_at BIGINT,
      value TEXT NOT NULL,
      PRIMARY KEY (guild_id, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS temp_data (
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL,
      expires_at BIGINT,
      created_at BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cache_data (
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL,
      expires_at BIGINT,
      created_at BIGINT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_temp_data_expires ON temp_data (expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_cache_data_expires ON cache_data (expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_birthdays_date ON birthdays (month, day)",
    "CREATE INDEX IF NOT EXISTS idx_giveaways_ends_at ON giveaways (ends_at)",
)

_LIVE = "(expires_at IS NULL OR expires_at > ?)"


def encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _expired(expires_at: int | None, now: int) -> bool:
    return expires_at is not None and expires_at <= now


def _upsert_sql(table: str, columns: list[str], conflict: tuple[str, ...]) -> str:
    updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c not in conflict)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))}) "
        f"ON CONFLICT ({', '.join(conflict)}) DO UPDATE SET {updates}"
    )


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"

# ============================================================================
# EXTRACTED COLUMNS
# ============================================================================

def _int_field(value: Any, *names: str) -> int | None:
    if isinstance(value, Mapping):
        for name in names:
            v = value.get(name)
            if is_number(v):
                return int(v)
    return None


def _str_field(value: Any, *names: str) -> str | None:
    if isinstance(value, Mapping):
        for name in names:
            v = value.get(name)
            if v is not None and not isinstance(v, (dict, list)):
                return str(v)
    return None


def _no_columns(value: Any) -> dict[str, Any]:
    return {}


def _level_columns(value: Any) -> dict[str, Any]:
    return {
        "xp": _int_field(value, "xp"),
        "level": _int_field(value, "level"),
        "total_xp": _int_field(value, "totalXp", "total_xp"),
    }


def _economy_columns(value: Any) -> dict[str, Any]:
    return {"balance": _int_field(value, "balance", "wallet"), "bank": _int_field(value, "bank")}


def _afk_columns(value: Any) -> dict[str, Any]:
    return {"reason": _str_field(value, "reason")}

# ============================================================================
# HANDLERS
# ============================================================================

@dataclass(frozen=True)
class DocumentTable:
    kind: KeyKind
    table: str
    id_fields: tuple[str, ...]
    columns: Callable[[Any], dict[str, Any]] = _no_columns


DOCUMENT_TABLES: tuple[DocumentTable, ...] = (
    DocumentTable(KeyKind.GUILD_CONFIG, "guild_configs", ("guild_id",)),
    DocumentTable(KeyKind.WELCOME_CONFIG, "welcome_configs", ("guild_id",)),
    DocumentTable(KeyKind.LEVELING_CONFIG, "leveling_configs", ("guild_id",)),
    DocumentTable(KeyKind.USER_LEVEL, "user_levels", ("guild_id", "user_id"), _level_columns),
    DocumentTable(KeyKind.ECONOMY, "economy", ("guild_id", "user_id"), _economy_columns),
    DocumentTable(KeyKind.AFK_STATUS, "afk_status", ("guild_id", "user_id"), _afk_columns),
    DocumentTable(KeyKind.TICKET, "ticket_data", ("guild_id", "channel_id")),
)


class _DocumentHandler:
    structured = True

    def __init__(self, store: "RelationalStore", layout: DocumentTable):
        self.store = store
        self.layout = layout
        self._where = " AND ".join(f"{f} = ?" for f in layout.id_fields)

    def _ids(self, desc: KeyDescriptor) -> tuple:
        return tuple(getattr(desc, f) for f in self.layout.id_fields)

    async def _purge_one(self, ids: tuple, now: int):
        await self.store.db.execute(
            f"DELETE FROM {self.layout.table} WHERE {self._where} AND expires_at IS NOT NULL AND expires_at <= ?",
            (*ids, now),
        )

    async def get(self, desc: KeyDescriptor, default: Any) -> Any:
        ids = self._ids(desc)
        now = self.store.now()
        row = await self.store.db.fetchone(
            f"SELECT value, expires_at FROM {self.layout.table} WHERE {self._where}", ids
        )
        if row is None:
            return default
        if _expired(row["expires_at"], now):
            await self._purge_one(ids, now)
            return default
        return json.loads(row["value"])

    async def set(self, desc: KeyDescriptor, value: Any, expires_at: int | None):
        extracted = self.layout.columns(value)
        columns = [*self.layout.id_fields, *extracted, "value", "expires_at", "updated_at"]
        params = (*self._ids(desc), *extracted.values(), encode(value), expires_at, self.store.now())
        async with self.store.write_scope():
            await self.store.ensure_guild(desc.guild_id)
            if desc.user_id is not None:
                await self.store.ensure_user(desc.user_id)
            await self.store.db.execute(_upsert_sql(self.layout.table, columns, self.layout.id_fields), params)

    async def delete(self, desc: KeyDescriptor):
        await self.store.db.execute(f"DELETE FROM {self.layout.table} WHERE {self._where}", self._ids(desc))

    async def ttl(self, desc: KeyDescriptor) -> int:
        ids = self._ids(desc)
        row = await self.store.db.fetchone(f"SELECT expires_at FROM {self.layout.table} WHERE {self._where}", ids)
        if row is None:
            return TTL_MISSING
        left = remaining_seconds(row["expires_at"], self.store.clock)
        if left == TTL_MISSING:
            await self._purge_one(ids, self.store.now())
        return left

    async def list_keys(self, prefix: str) -> list[str]:
        rows = await self.store.db.fetchall(
            f"SELECT {', '.join(self.layout.id_fields)} FROM {self.layout.table} WHERE {_LIVE}",
            (self.store.now(),),
        )
        keys = (build_key(self.layout.kind, **{f: row[f] for f in self.layout.id_fields}) for row in rows)
        return [k for k in keys if k.startswith(prefix)]

    async def purge(self, now: int) -> int:
        return await self.store.db.execute(
            f"DELETE FROM {self.layout.table} WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
        )


class _CollectionHandler:
    """Guild-wide collections, rewritten as a whole on every set."""

    structured = True
    kind: KeyKind
    table: str
    name: str
    select_sql: str
    insert_sql: str

    def __init__(self, store: "RelationalStore"):
        self.store = store

    def rows(self, value: Any) -> list[tuple]:
        raise NotImplementedError

    def assemble(self, rows) -> Any:
        raise NotImplementedError

    async def ensure_parents(self, rows: list[tuple]):
        return None

    async def _meta(self, guild_id: str):
        return await self.store.db.fetchone(
            "SELECT expires_at FROM collections WHERE guild_id = ? AND kind = ?", (guild_id, self.name)
        )

    async def _drop(self, guild_id: str):
        async with self.store.write_scope():
            await self.store.db.execute(f"DELETE FROM {self.table} WHERE guild_id = ?", (guild_id,))
            await self.store.db.execute(
                "DELETE FROM collections WHERE guild_id = ? AND kind = ?", (guild_id, self.name)
            )

    async def get(self, desc: KeyDescriptor, default: Any) -> Any:
        meta = await self._meta(desc.guild_id)
        if meta is None:
            return default
        if _expired(meta["expires_at"], self.store.now()):
            await self._drop(desc.guild_id)
            return default
        rows = await self.store.db.fetchall(self.select_sql, (desc.guild_id,))
        return self.assemble(rows)

    async def set(self, desc: KeyDescriptor, value: Any, expires_at: int | None):
        rows = self.rows(value)
        guild_id = desc.guild_id
        async with self.store.write_scope():
            await self.store.ensure_guild(guild_id)
            await self.ensure_parents(rows)
            await self.store.db.execute(f"DELETE FROM {self.table} WHERE guild_id = ?", (guild_id,))
            if rows:
                await self.store.db.executemany(self.insert_sql, [(guild_id, *r) for r in rows])
            await self.store.db.execute(
                _upsert_sql("collections", ["guild_id", "kind", "expires_at", "updated_at"], ("guild_id", "kind")),
                (guild_id, self.name, expires_at, self.store.now()),
            )

    async def delete(self, desc: KeyDescriptor):
        await self._drop(desc.guild_id)

    async def ttl(self, desc: KeyDescriptor) -> int:
        meta = await self._meta(desc.guild_id)
        if meta is None:
            return TTL_MISSING
        left = remaining_seconds(meta["expires_at"], self.store.clock)
        if left == TTL_MISSING:
            await self._drop(desc.guild_id)
        return left

    async def list_keys(self, prefix: str) -> list[str]:
        rows = await self.store.db.fetchall(
            f"SELECT guild_id FROM collections WHERE kind = ? AND {_LIVE}", (self.name, self.store.now())
        )
        keys = (build_key(self.kind, guild_id=row["guild_id"]) for row in rows)
        return [k for k in keys if k.startswith(prefix)]

    async def purge(self, now: int) -> int:
        rows = await self.store.db.fetchall(
            "SELECT guild_id FROM collections WHERE kind = ? AND expires_at IS NOT NULL AND expires_at <= ?",
            (self.name, now),
        )
        for row in rows:
            await self._drop(row["guild_id"])
        return len(rows)


class _BirthdayHandler(_CollectionHandler):
    kind = KeyKind.GUILD_BIRTHDAYS
    table = "birthdays"
    name = "birthdays"
    select_sql = "SELECT user_id, value FROM birthdays WHERE guild_id = ? ORDER BY user_id"
    insert_sql = "INSERT INTO birthdays (guild_id, user_id, month, day, value) VALUES (?, ?, ?, ?, ?)"

    def rows(self, value: Any) -> list[tuple]:
        if not isinstance(value, Mapping):
            raise TypeError(f"Birthdays must be a mapping of user id to entry, not {type(value).__name__}")
        return [
            (str(user_id), _int_field(entry, "month"), _int_field(entry, "day"), encode(entry))
            for user_id, entry in value.items()
        ]

    def assemble(self, rows) -> dict:
        return {row["user_id"]: json.loads(row["value"]) for row in rows}

    async def ensure_parents(self, rows: list[tuple]):
        if rows:
            await self.store.db.executemany(
                "INSERT INTO users (id, created_at) VALUES (?, ?) ON CONFLICT (id) DO NOTHING",
                [(r[0], self.store.now()) for r in rows],
            )


class _GiveawayHandler(_CollectionHandler):
    kind = KeyKind.GUILD_GIVEAWAYS
    table = "giveaways"
    name = "giveaways"
    select_sql = "SELECT value FROM giveaways WHERE guild_id = ? ORDER BY position"
    insert_sql = "INSERT INTO giveaways (guild_id, position, message_id, ends_at, value) VALUES (?, ?, ?, ?, ?)"

    def rows(self, value: Any) -> list[tuple]:
        if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, (list, tuple)):
            raise TypeError(f"Giveaways must be a list, not {type(value).__name__}")
        return [
            (position, _str_field(entry, "messageId", "message_id"), _int_field(entry, "endsAt", "ends_at"), encode(entry))
            for position, entry in enumerate(value)
        ]

    def assemble(self, rows) -> list:
        return [json.loads(row["value"]) for row in rows]


class _BlobHandler:
    """temp_data / cache_data: any key, value and expiry."""

    structured = False

    def __init__(self, store: "RelationalStore", table: str):
        self.store = store
        self.table = table

    async def get(self, desc: KeyDescriptor, default: Any) -> Any:
        now = self.store.now()
        row = await self.store.db.fetchone(
            f"SELECT value FROM {self.table} WHERE key = ? AND {_LIVE}", (desc.full_key, now)
        )
        if row is None:
            await self.store.db.execute(
                f"DELETE FROM {self.table} WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                (desc.full_key, now),
            )
            return default
        return json.loads(row["value"])

    async def set(self, desc: KeyDescriptor, value: Any, expires_at: int | None):
        await self.store.db.execute(
            _upsert_sql(self.table, ["key", "value", "expires_at", "created_at"], ("key",)),
            (desc.full_key, encode(value), expires_at, self.store.now()),
        )

    async def delete(self, desc: KeyDescriptor):
        await self.store.db.execute(f"DELETE FROM {self.table} WHERE key = ?", (desc.full_key,))

    async def ttl(self, desc: KeyDescriptor) -> int:
        row = await self.store.db.fetchone(f"SELECT expires_at FROM {self.table} WHERE key = ?", (desc.full_key,))
        if row is None:
            return TTL_MISSING
        return remaining_seconds(row["expires_at"], self.store.clock)

    async def list_keys(self, prefix: str) -> list[str]:
        rows = await self.store.db.fetchall(
            f"SELECT key FROM {self.table} WHERE key LIKE ? ESCAPE '\\' AND {_LIVE} ORDER BY key",
            (_like_prefix(prefix), self.store.now()),
        )
        # SQLite's LIKE ignores ASCII case
        return [row["key"] for row in rows if row["key"].startswith(prefix)]

    async def purge(self, now: int) -> int:
        return await self.store.db.execute(
            f"DELETE FROM {self.table} WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
        )

# ============================================================================
# STORE
# ============================================================================

class RelationalStore(KeyValueBackend):
    def __init__(self, db, *, transactional_writes: bool = False, clock: Clock = time.time):
        self.db = db
        self.connection_type = db.dialect
        self.transactional_writes = transactional_writes
        self.clock = clock
        self._handlers: dict[KeyKind, Any] = {layout.kind: _DocumentHandler(self, layout) for layout in DOCUMENT_TABLES}
        self._handlers[KeyKind.GUILD_BIRTHDAYS] = _BirthdayHandler(self)
        self._handlers[KeyKind.GUILD_GIVEAWAYS] = _GiveawayHandler(self)
        self._handlers[KeyKind.TEMP] = _BlobHandler(self, "temp_data")
        self._handlers[KeyKind.CACHE] = _BlobHandler(self, "cache_data")

    def now(self) -> int:
        return now_ms(self.clock)

    async def connect(self) -> None:
        await self.db.connect()
        await self.create_tables()
        log.info("%s storage ready", self.connection_type)

    async def close(self) -> None:
        await self.db.close()

    async def create_tables(self):
        async with self.db.transaction():
            for statement in SCHEMA:
                await self.db.execute(statement)

    @asynccontextmanager
    async def write_scope(self):
        if self.transactional_writes:
            async with self.db.transaction():
                yield
        else:
            yield

    async def ensure_guild(self, guild_id: str):
        await self.db.execute(
            "INSERT INTO guilds (id, created_at) VALUES (?, ?) ON CONFLICT (id) DO NOTHING", (guild_id, self.now())
        )

    async def ensure_user(self, user_id: str):
        await self.db.execute(
            "INSERT INTO users (id, created_at) VALUES (?, ?) ON CONFLICT (id) DO NOTHING", (user_id, self.now())
        )

    def _route(self, key: str):
        desc = parse_key(key)
        return desc, self._handlers[desc.kind]

    async def get(self, key: str, default: Any = None) -> Any:
        desc, handler = self._route(key)
        return await handler.get(desc, default)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        desc, handler = self._route(key)
        await handler.set(desc, value, expires_at_ms(ttl, self.clock))
        return True

    async def delete(self, key: str) -> bool:
        desc, handler = self._route(key)
        await handler.delete(desc)
        return True

    async def ttl(self, key: str) -> int:
        desc, handler = self._route(key)
        return await handler.ttl(desc)

    async def list(self, prefix: str = "") -> list[str]:
        structured_possible = prefix.startswith("guild:") or "guild:".startswith(prefix)
        keys: list[str] = []
        for handler in self._handlers.values():
            if handler.structured and not structured_possible:
                continue
            keys.extend(await handler.list_keys(prefix))
        return keys

    async def purge_expired(self) -> int:
        now = self.now()
        total = 0
        for handler in self._handlers.values():
            total += await handler.purge(now)
        if total:
            log.debug("Purged %s expired rows", total)
        return total
