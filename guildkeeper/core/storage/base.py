from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from numbers import Number
from typing import Any, Callable

Clock = Callable[[], float]

# Sentinel for "no value" where None is a legitimate stored value.
MISSING = object()

TTL_NO_EXPIRY = -1
TTL_MISSING = -2


def now_ms(clock: Clock = time.time) -> int:
    return int(clock() * 1000)


def expires_at_ms(ttl: int | float | None, clock: Clock = time.time) -> int | None:
    if ttl is None:
        return None
    return now_ms(clock) + int(ttl * 1000)


def remaining_seconds(expires_at: int | None, clock: Clock = time.time) -> int:
    """Translate an absolute expiry into the ttl() convention (-1 none, -2 expired)."""
    if expires_at is None:
        return TTL_NO_EXPIRY
    left = expires_at - now_ms(clock)
    if left <= 0:
        return TTL_MISSING
    return math.ceil(left / 1000)


def is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def check_key(key: Any) -> str:
    if not isinstance(key, str):
        raise TypeError(f"Storage keys must be str, not {type(key).__name__}")
    return key


class KeyValueBackend(ABC):
    """
    Contract every storage backend implements in full.

    Availability failures raise StorageError/StorageUnavailable; the Storage facade turns
    them into defaults. increment/decrement and expire have read-modify-write defaults that
    backends with native support override.
    """

    connection_type: str = "unknown"

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[str]: ...

    @abstractmethod
    async def ttl(self, key: str) -> int: ...

    async def exists(self, key: str) -> bool:
        return await self.get(key, MISSING) is not MISSING

    async def expire(self, key: str, seconds: int) -> bool:
        value = await self.get(key, MISSING)
        if value is MISSING:
            return False
        return await self.set(key, value, seconds)

    async def increment(self, key: str, amount: int | float = 1) -> int | float:
        current = await self.get(key, 0)
        if not is_number(current):
            current = 0
        updated = current + amount
        remaining = await self.ttl(key)
        await self.set(key, updated, remaining if remaining > 0 else None)
        return updated

    async def decrement(self, key: str, amount: int | float = 1) -> int | float:
        return await self.increment(key, -amount)

    async def keys_all(self) -> list[str]:
        return await self.list("")

    async def purge_expired(self) -> int:
        return 0
