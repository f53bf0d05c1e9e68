from __future__ import annotations

import copy
import time
from typing import Any

from .base import TTL_MISSING, Clock, KeyValueBackend, expires_at_ms, now_ms, remaining_seconds


class MemoryStore(KeyValueBackend):
    """Process-local fallback store. Nothing survives a restart."""

    connection_type = "memory"

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self._data: dict[str, tuple[Any, int | None]] = {}

    def _live(self, key: str) -> tuple[Any, int | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= now_ms(self.clock):
            del self._data[key]
            return None
        return entry

    async def get(self, key: str, default: Any = None) -> Any:
        entry = self._live(key)
        if entry is None:
            return default
        return copy.deepcopy(entry[0])

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        self._data[key] = (copy.deepcopy(value), expires_at_ms(ttl, self.clock))
        return True

    async def delete(self, key: str) -> bool:
        self._data.pop(key, None)
        return True

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def list(self, prefix: str = "") -> list[str]:
        return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]

    async def ttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return TTL_MISSING
        return remaining_seconds(entry[1], self.clock)

    async def purge_expired(self) -> int:
        before = len(self._data)
        for k in list(self._data):
            self._live(k)
        return before - len(self._data)

    def clear(self):
        self._data.clear()
