"""Storage and cache backends."""

from scaled_backend.persistence.base import (
    CacheBackend,
    DuplicateRecordError,
    RecordNotFoundError,
    UserStore,
)
from scaled_backend.persistence.memory import MemoryCache
from scaled_backend.persistence.redis_cache import RedisCache
from scaled_backend.persistence.sqlite import SqliteUserStore, SqliteUserStoreConfig

__all__ = [
    "CacheBackend",
    "DuplicateRecordError",
    "MemoryCache",
    "RecordNotFoundError",
    "RedisCache",
    "SqliteUserStore",
    "SqliteUserStoreConfig",
    "UserStore",
]
