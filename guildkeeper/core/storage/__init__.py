# Storage package - key-value contract, backends and the facade the bot talks to.

from .base import KeyValueBackend, MISSING
from .facade import Storage, build_backend
from .keys import KeyDescriptor, KeyKind, parse_key
from .memory import MemoryStore
from .redis_store import RedisStore
from .relational import RelationalStore

__all__ = [
    'KeyValueBackend', 'MISSING',
    'Storage', 'build_backend',
    'KeyDescriptor', 'KeyKind', 'parse_key',
    'MemoryStore', 'RedisStore', 'RelationalStore',
]
