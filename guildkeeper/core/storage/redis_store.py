from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import StorageError, StorageUnavailable
from .base import TTL_MISSING, KeyValueBackend

log = logging.getLogger(__name__)

_GLOB_SPECIALS = re.compile(r"([*?\[\]\\])")


def _escape_glob(prefix: str) -> str:
    return _GLOB_SPECIALS.sub(r"\\\1", prefix)


def encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def decode(raw: str | None, default: Any = None) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class RedisStore(KeyValueBackend):
    connection_type = "redis"

    def __init__(self, url: str = "redis://localhost:6379/0", *, connect_timeout: float = 5.0, client=None):
        self.url = url
        self.connect_timeout = connect_timeout
        self.client = client

    async def connect(self) -> None:
        if self.client is None:
            self.client = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.connect_timeout,
            )
        async with self._errors():
            await self.client.ping()
        log.info("Connected to Redis at %s", self.url)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    @asynccontextmanager
    async def _errors(self):
        if self.client is None:
            raise StorageUnavailable("Redis client is not connected")
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            raise StorageUnavailable(str(e)) from e
        except RedisError as e:
            raise StorageError(str(e)) from e

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._errors():
            raw = await self.client.get(key)
        return decode(raw, default)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        payload = encode(value)
        async with self._errors():
            if ttl is not None:
                await self.client.set(key, payload, ex=max(int(ttl), 1))
            else:
                await self.client.set(key, payload)
        return True

    async def delete(self, key: str) -> bool:
        async with self._errors():
            await self.client.delete(key)
        return True

    async def exists(self, key: str) -> bool:
        async with self._errors():
            return bool(await self.client.exists(key))

    async def list(self, prefix: str = "") -> list[str]:
        async with self._errors():
            return [k async for k in self.client.scan_iter(match=_escape_glob(prefix) + "*")]

    async def keys_all(self) -> list[str]:
        async with self._errors():
            return list(await self.client.keys("*"))

    async def ttl(self, key: str) -> int:
        async with self._errors():
            remaining = await self.client.ttl(key)
        return TTL_MISSING if remaining is None else int(remaining)

    async def expire(self, key: str, seconds: int) -> bool:
        async with self._errors():
            return bool(await self.client.expire(key, int(seconds)))

    async def increment(self, key: str, amount: int | float = 1) -> int | float:
        async with self._errors():
            if isinstance(amount, float):
                return float(await self.client.incrbyfloat(key, amount))
            return int(await self.client.incrby(key, amount))

    async def decrement(self, key: str, amount: int | float = 1) -> int | float:
        if isinstance(amount, float):
            return await self.increment(key, -amount)
        async with self._errors():
            return int(await self.client.decrby(key, amount))

    async def info(self) -> dict:
        async with self._errors():
            return await self.client.info()
