"""Cache entry and interaction log storage."""

from qcli.store.base import CacheStore, LogStore
from qcli.store.log_store import RedisLogStore
from qcli.store.redis_store import RedisCacheStore

__all__ = ["CacheStore", "LogStore", "RedisCacheStore", "RedisLogStore"]
