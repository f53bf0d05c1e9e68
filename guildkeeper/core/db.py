"""
Relational engines used by the relational storage backend.

Both engines take `?`-style SQL with positional parameters, return rows addressable by column
name, and translate driver failures into StorageError / StorageUnavailable.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from contextlib import asynccontextmanager
from contextvars import ContextVar

import aiosqlite
import asyncpg

from .errors import StorageError, StorageUnavailable

log = logging.getLogger(__name__)


async def connect_with_retry(connect, *, retries: int, backoff_base: float, backoff_multiplier: float, name: str):
    """Await connect() up to retries+1 times, sleeping backoff_base * multiplier**attempt in between."""
    attempt = 0
    while True:
        try:
            return await connect()
        except StorageUnavailable:
            if attempt >= retries:
                raise
            delay = backoff_base * (backoff_multiplier ** attempt)
            attempt += 1
            log.warning("%s connection failed (attempt %s/%s), retrying in %.2fs", name, attempt, retries + 1, delay)
            await asyncio.sleep(delay)


# ============================================================================
# SQLITE
# ============================================================================

class SqliteDatabase:
    dialect = "sqlite"

    def __init__(self, path: str):
        self.path = path
        self.conn: aiosqlite.Connection | None = None
        self._in_tx: bool = False

    async def connect(self):
        try:
            # autocommit mode; transaction() issues BEGIN/COMMIT itself
            self.conn = await aiosqlite.connect(self.path, isolation_level=None)
            self.conn.row_factory = aiosqlite.Row
            await self.conn.execute("PRAGMA journal_mode=WAL;")
            await self.conn.execute("PRAGMA foreign_keys=ON;")
            await self.conn.execute("PRAGMA synchronous=NORMAL;")
        except (sqlite3.Error, OSError) as e:
            self.conn = None
            raise StorageUnavailable(f"Could not open SQLite database {self.path}: {e}") from e

    async def close(self):
        if self.conn:
            await self.conn.close()
            self.conn = None

    def _require(self) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageUnavailable("SQLite database is not connected")
        return self.conn

    @asynccontextmanager
    async def _errors(self):
        try:
            yield
        except sqlite3.OperationalError as e:
            raise StorageUnavailable(str(e)) from e
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    async def execute(self, sql: str, params=()) -> int:
        """Execute a statement and return the affected row count."""
        conn = self._require()
        async with self._errors():
            cur = await conn.execute(sql, params)
            count = cur.rowcount
            await cur.close()
        return max(count, 0)

    async def executemany(self, sql: str, params_list):
        conn = self._require()
        async with self._errors():
            await conn.executemany(sql, params_list)

    @asynccontextmanager
    async def transaction(self):
        """BEGIN on enter, COMMIT on success, ROLLBACK on exception."""
        conn = self._require()
        if self._in_tx:
            yield self
            return
        self._in_tx = True
        try:
            async with self._errors():
                await conn.execute("BEGIN")
            try:
                yield self
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            async with self._errors():
                await conn.execute("COMMIT")
        finally:
            self._in_tx = False

    async def fetchone(self, sql: str, params=()):
        conn = self._require()
        async with self._errors():
            cur = await conn.execute(sql, params)
            row = await cur.fetchone()
            await cur.close()
        return row

    async def fetchall(self, sql: str, params=()):
        conn = self._require()
        async with self._errors():
            cur = await conn.execute(sql, params)
            rows = await cur.fetchall()
            await cur.close()
        return rows


# ============================================================================
# POSTGRES
# ============================================================================

_PLACEHOLDER = re.compile(r"\?")


def to_postgres_placeholders(sql: str) -> str:
    """Rewrite `?` placeholders to asyncpg's `$1, $2, ...`."""
    counter = iter(range(1, 10_000))
    return _PLACEHOLDER.sub(lambda _m: f"${next(counter)}", sql)


def _affected(status: str | None) -> int:
    # asyncpg returns command tags such as "DELETE 3" or "INSERT 0 1"
    if not status:
        return 0
    tail = status.rsplit(" ", 1)[-1]
    return int(tail) if tail.isdigit() else 0


class PostgresDatabase:
    dialect = "postgres"

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        command_timeout: float = 30.0,
        retries: int = 3,
        backoff_base: float = 0.1,
        backoff_multiplier: float = 2.0,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.retries = retries
        self.backoff_base = backoff_base
        self.backoff_multiplier = backoff_multiplier
        self.pool: asyncpg.Pool | None = None
        self._tx_conn: ContextVar[asyncpg.Connection | None] = ContextVar("guildkeeper_pg_tx", default=None)

    async def _open_pool(self):
        try:
            pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
            async with pool.acquire() as conn:
                await conn.execute("SELECT 1")
            return pool
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StorageUnavailable(f"Could not connect to PostgreSQL: {e}") from e

    async def connect(self):
        self.pool = await connect_with_retry(
            self._open_pool,
            retries=self.retries,
            backoff_base=self.backoff_base,
            backoff_multiplier=self.backoff_multiplier,
            name="PostgreSQL",
        )
        log.info("PostgreSQL pool ready (min=%s, max=%s)", self.min_size, self.max_size)

    async def close(self):
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def _connection(self):
        tx_conn = self._tx_conn.get()
        if tx_conn is None and self.pool is None:
            raise StorageUnavailable("PostgreSQL pool is not connected")
        try:
            if tx_conn is not None:
                yield tx_conn
            else:
                async with self.pool.acquire() as conn:
                    yield conn
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as e:
            raise StorageUnavailable(str(e)) from e
        except asyncpg.PostgresError as e:
            raise StorageError(str(e)) from e

    async def execute(self, sql: str, params=()) -> int:
        async with self._connection() as conn:
            status = await conn.execute(to_postgres_placeholders(sql), *params)
        return _affected(status)

    async def executemany(self, sql: str, params_list):
        async with self._connection() as conn:
            await conn.executemany(to_postgres_placeholders(sql), list(params_list))

    @asynccontextmanager
    async def transaction(self):
        """Pin one pooled connection to the current task for the duration of the block."""
        if self._tx_conn.get() is not None:
            yield self
            return
        async with self._connection() as conn:
            async with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield self
                finally:
                    self._tx_conn.reset(token)

    async def fetchone(self, sql: str, params=()):
        async with self._connection() as conn:
            return await conn.fetchrow(to_postgres_placeholders(sql), *params)

    async def fetchall(self, sql: str, params=()):
        async with self._connection() as conn:
            return await conn.fetch(to_postgres_placeholders(sql), *params)
