from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from ..configurations import StorageSettings
from ..db import PostgresDatabase, SqliteDatabase
from ..errors import StorageError, StorageUnavailable
from .base import Clock, KeyValueBackend, check_key
from .memory import MemoryStore
from .redis_store import RedisStore
from .relational import RelationalStore

log = logging.getLogger(__name__)


def build_backend(settings: StorageSettings, clock: Clock = time.time) -> KeyValueBackend:
    """Instantiate (without connecting) the primary backend named in settings."""
    if settings.primary == "redis":
        return RedisStore(settings.redis_url, connect_timeout=settings.redis_connect_timeout)
    if settings.primary == "postgres":
        db = PostgresDatabase(
            settings.postgres_url,
            min_size=settings.postgres_min_pool,
            max_size=settings.postgres_max_pool,
            command_timeout=settings.postgres_command_timeout,
            retries=settings.connect_retries,
            backoff_base=settings.backoff_base,
            backoff_multiplier=settings.backoff_multiplier,
        )
    else:
        db = SqliteDatabase(settings.sqlite_path)
    return RelationalStore(db, transactional_writes=settings.transactional_writes, clock=clock)


class Storage:
    """
    The one storage entry point for the rest of the bot.

    init() connects the configured primary backend, or falls back to process memory when it
    is unreachable (unless allow_fallback is off). Every operation initialises lazily and
    never raises for backend failures: reads return the default, writes return False,
    counters return the delta they were asked to apply.
    """

    def __init__(
        self,
        settings: StorageSettings | None = None,
        *,
        primary: KeyValueBackend | None = None,
        clock: Clock = time.time,
    ):
        self.settings = settings or StorageSettings()
        self.clock = clock
        self._primary = primary
        self.backend: KeyValueBackend | None = None
        self.degraded: bool = False
        self._lock = asyncio.Lock()

    async def init(self) -> KeyValueBackend:
        async with self._lock:
            if self.backend is not None:
                return self.backend
            primary = self._primary or build_backend(self.settings, self.clock)
            try:
                await primary.connect()
            except StorageError as e:
                if not self.settings.allow_fallback:
                    log.error("%s storage unavailable and fallback is disabled: %s", primary.connection_type, e)
                    raise StorageUnavailable(
                        f"{primary.connection_type} storage is unavailable and in-memory fallback is disabled"
                    ) from e
                log.warning(
                    "%s storage unavailable (%s); falling back to in-memory storage, data will not persist",
                    primary.connection_type, e,
                )
                try:
                    await primary.close()
                except Exception as close_error:
                    log.debug("Ignoring error while closing failed backend: %s", close_error)
                self.backend = MemoryStore(clock=self.clock)
                self.degraded = True
            else:
                self.backend = primary
                self.degraded = False
                log.info("Storage initialised with %s backend", primary.connection_type)
            return self.backend

    async def close(self):
        backend, self.backend = self.backend, None
        if backend is not None:
            await backend.close()

    async def _backend(self) -> KeyValueBackend:
        if self.backend is not None:
            return self.backend
        return await self.init()

    def is_available(self) -> bool:
        return self.backend is not None and not self.degraded

    def get_connection_type(self) -> str:
        return self.backend.connection_type if self.backend is not None else "none"

    def _failed(self, op: str, key: str, error: Exception):
        log.error("Storage %s failed for %r on %s backend: %s", op, key, self.get_connection_type(), error)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get(self, key: str, default: Any = None) -> Any:
        check_key(key)
        try:
            backend = await self._backend()
            return await backend.get(key, default)
        except StorageError as e:
            self._failed("get", key, e)
            return default

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        check_key(key)
        try:
            backend = await self._backend()
            return await backend.set(key, value, ttl)
        except StorageError as e:
            self._failed("set", key, e)
            return False

    async def delete(self, key: str) -> bool:
        check_key(key)
        try:
            backend = await self._backend()
            return await backend.delete(key)
        except StorageError as e:
            self._failed("delete", key, e)
            return False

    async def exists(self, key: str) -> bool:
        check_key(key)
        try:
            backend = await self._backend()
            return await backend.exists(key)
        except StorageError as e:
            self._failed("exists", key, e)
            return False

    async def list(self, prefix: str = "") -> list[str]:
        check_key(prefix)
        try:
            backend = await self._backend()
            return await backend.list(prefix)
        except StorageError as e:
            self._failed("list", prefix, e)
            return []

    async def increment(self, key: str, amount: int | float = 1) -> int | float:
        check_key(key)
        try:
            backend = await self._backend()
            return await backend.increment(key, amount)
        except StorageError as e:
            self._failed("increment", key, e)
            return amount

    async def decrement(self, key: str, amount: int | float = 1) -> int | float:
        check_key(key)
        try:
            backend = await self._backend()
            return await backend.decrement(key, amount)
        except StorageError as e:
            self._failed("decrement", key, e)
            return -amount

    async def ttl(self, key: str) -> int:
        check_key(key)
        try:
            backend = await self._backend()
            return await backend.ttl(key)
        except StorageError as e:
            self._failed("ttl", key, e)
            return -2

    async def expire(self, key: str, seconds: int) -> bool:
        check_key(key)
        try:
            backend = await self._backend()
            return await backend.expire(key, seconds)
        except StorageError as e:
            self._failed("expire", key, e)
            return False

    async def purge_expired(self) -> int:
        try:
            backend = await self._backend()
            return await backend.purge_expired()
        except StorageError as e:
            self._failed("purge", "*", e)
            return 0
