"""Redis-backed cache entry store."""

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import redis

from qcli.errors import StoreUnavailable
from qcli.types import CacheEntry, CacheStats

logger = logging.getLogger(__name__)

# Increment only if the entry still exists, so a concurrent delete never
# leaves behind a hash holding nothing but a hit counter.
_INCREMENT_HITS_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return redis.call('HINCRBY', KEYS[1], 'hit_count', 1)
end
return false
"""

_NO_CONTEXT = "-"


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Re-raise Redis failures as StoreUnavailable."""
    try:
        yield
    except redis.RedisError as e:
        logger.error(f"Redis error during {operation}: {e}")
        raise StoreUnavailable(f"{operation} failed: {e}") from e


def to_timestamp(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_timestamp(value: bytes | str | float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def decode_text(value: bytes | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisCacheStore:
    """
    Cache entries stored as Redis hashes.

    Layout under ``key_prefix``:
        cache:next_id          INCR counter for entry ids
        cache:entry:<id>       hash with the entry fields
        cache:by_expiry        sorted set id -> expires_at (pruning, live scans)
        cache:by_created       sorted set id -> created_at (listing)
        cache:ctx:<hash>       set of ids per context hash ("-" for no context)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "q:",
        client: redis.Redis | None = None,
    ):
        """
        Initialize the store.

        Args:
            redis_url: Redis connection URL, used when no client is given.
            key_prefix: Prefix for every key this store touches.
            client: Existing client (must use ``decode_responses=False``).
        """
        self.redis_url = redis_url
        self.key_prefix = key_prefix

        if client is None:
            logger.debug(f"Connecting to Redis: {redis_url}")
            client = redis.from_url(redis_url, decode_responses=False)
        self.client = client
        self._increment_hits = self.client.register_script(_INCREMENT_HITS_LUA)

    # Keys

    @property
    def _next_id_key(self) -> str:
        return f"{self.key_prefix}cache:next_id"

    @property
    def _expiry_key(self) -> str:
        return f"{self.key_prefix}cache:by_expiry"

    @property
    def _created_key(self) -> str:
        return f"{self.key_prefix}cache:by_created"

    def _entry_key(self, entry_id: int) -> str:
        return f"{self.key_prefix}cache:entry:{entry_id}"

    def _context_key(self, context_hash: str | None) -> str:
        return f"{self.key_prefix}cache:ctx:{context_hash or _NO_CONTEXT}"

    # Encoding

    @staticmethod
    def _encode(entry: CacheEntry, entry_id: int) -> dict[str, Any]:
        mapping: dict[str, Any] = {
            "id": entry_id,
            "query": entry.query,
            "embedding": entry.query_embedding,
            "response": entry.response,
            "created_at": to_timestamp(entry.created_at),
            "expires_at": to_timestamp(entry.expires_at),
            "hit_count": entry.hit_count,
        }
        if entry.context_hash is not None:
            mapping["context_hash"] = entry.context_hash
        if entry.response_id is not None:
            mapping["response_id"] = entry.response_id
        return mapping

    @staticmethod
    def _decode(entry_id: int, raw: dict[bytes, bytes]) -> CacheEntry:
        response_id = raw.get(b"response_id")
        return CacheEntry(
            id=entry_id,
            query=decode_text(raw[b"query"]),
            query_embedding=bytes(raw[b"embedding"]),
            context_hash=decode_text(raw.get(b"context_hash")),
            response=decode_text(raw[b"response"]),
            response_id=int(response_id) if response_id is not None else None,
            created_at=from_timestamp(raw[b"created_at"]),
            expires_at=from_timestamp(raw[b"expires_at"]),
            hit_count=int(raw.get(b"hit_count", 0)),
        )

    def _fetch(self, entry_ids: list[int]) -> list[CacheEntry]:
        """Load entries in the given order, skipping missing or unreadable hashes."""
        if not entry_ids:
            return []

        pipe = self.client.pipeline(transaction=False)
        for entry_id in entry_ids:
            pipe.hgetall(self._entry_key(entry_id))
        rows = pipe.execute()

        entries = []
        for entry_id, raw in zip(entry_ids, rows, strict=True):
            if not raw:
                continue
            try:
                entries.append(self._decode(entry_id, raw))
            except (KeyError, ValueError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable cache entry {entry_id}: {e}")
        return entries

    # Writes

    def insert(self, entry: CacheEntry) -> CacheEntry:
        """
        Persist a new entry.

        The hash and all index updates go out in one MULTI/EXEC, so an
        interrupted insert leaves nothing behind except a skipped id.

        Args:
            entry: Entry to store; its ``id`` is ignored.

        Returns:
            The stored entry with its assigned id.
        """
        if entry.expires_at <= entry.created_at:
            raise ValueError("expires_at must be later than created_at")

        with translate_errors("insert"):
            entry_id = int(self.client.incr(self._next_id_key))

            pipe = self.client.pipeline(transaction=True)
            pipe.hset(self._entry_key(entry_id), mapping=self._encode(entry, entry_id))
            pipe.zadd(self._expiry_key, {str(entry_id): to_timestamp(entry.expires_at)})
            pipe.zadd(self._created_key, {str(entry_id): to_timestamp(entry.created_at)})
            pipe.sadd(self._context_key(entry.context_hash), str(entry_id))
            pipe.execute()

        logger.debug(f"Stored cache entry {entry_id} (context={entry.context_hash or 'none'})")
        return replace(entry, id=entry_id)

    def update_response(
        self,
        entry_id: int,
        response: str,
        response_id: int | None,
        created_at: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Overwrite response, provenance and timestamps of an existing entry.

        Query, embedding, context hash and hit count are left alone.

        Returns:
            False when no entry has this id.
        """
        if expires_at <= created_at:
            raise ValueError("expires_at must be later than created_at")

        key = self._entry_key(entry_id)
        mapping: dict[str, Any] = {
            "response": response,
            "created_at": to_timestamp(created_at),
            "expires_at": to_timestamp(expires_at),
        }
        if response_id is not None:
            mapping["response_id"] = response_id

        def _apply(pipe: redis.client.Pipeline) -> bool:
            if not pipe.exists(key):
                return False
            pipe.multi()
            pipe.hset(key, mapping=mapping)
            if response_id is None:
                pipe.hdel(key, "response_id")
            pipe.zadd(self._expiry_key, {str(entry_id): mapping["expires_at"]})
            pipe.zadd(self._created_key, {str(entry_id): mapping["created_at"]})
            return True

        with translate_errors("update"):
            updated = self.client.transaction(_apply, key, value_from_callable=True)

        if not updated:
            logger.debug(f"Cache entry {entry_id} not found for update")
        return bool(updated)

    def increment_hit_count(self, entry_id: int) -> int | None:
        """Atomically add one hit; None when the entry is gone."""
        with translate_errors("increment_hit_count"):
            result = self._increment_hits(keys=[self._entry_key(entry_id)])
        return int(result) if result is not None else None

    def _delete_ids(self, entry_ids: list[int]) -> int:
        if not entry_ids:
            return 0

        pipe = self.client.pipeline(transaction=False)
        for entry_id in entry_ids:
            pipe.hget(self._entry_key(entry_id), "context_hash")
        context_hashes = pipe.execute()

        pipe = self.client.pipeline(transaction=True)
        for entry_id, context in zip(entry_ids, context_hashes, strict=True):
            pipe.delete(self._entry_key(entry_id))
            pipe.zrem(self._expiry_key, str(entry_id))
            pipe.zrem(self._created_key, str(entry_id))
            pipe.srem(self._context_key(decode_text(context)), str(entry_id))
        results = pipe.execute()

        # every 4th reply is the DEL of the hash
        return sum(1 for deleted in results[0::4] if deleted)

    def delete_expired(self, now: datetime) -> int:
        """Remove every entry with ``expires_at <= now``."""
        with translate_errors("delete_expired"):
            ids = self.client.zrangebyscore(self._expiry_key, "-inf", to_timestamp(now))
            removed = self._delete_ids([int(i) for i in ids])
        if removed:
            logger.info(f"Pruned {removed} expired cache entries")
        return removed

    def delete_all(self) -> int:
        with translate_errors("delete_all"):
            ids = set(self.client.zrange(self._created_key, 0, -1))
            ids.update(self.client.zrange(self._expiry_key, 0, -1))
            return self._delete_ids(sorted(int(i) for i in ids))

    def delete_by_id(self, entry_id: int) -> bool:
        with translate_errors("delete_by_id"):
            return self._delete_ids([entry_id]) == 1

    # Reads

    def get_by_id(self, entry_id: int) -> CacheEntry | None:
        with translate_errors("get_by_id"):
            entries = self._fetch([entry_id])
        return entries[0] if entries else None

    def scan_live(
        self,
        now: datetime,
        context_hashes: Iterable[str | None] | None = None,
    ) -> list[CacheEntry]:
        """
        Return non-expired entries in ascending id order.

        Args:
            now: Reference instant; entries with ``expires_at > now`` are live.
            context_hashes: Optional restriction through the context index;
                ``None`` in the iterable selects context-independent entries.

        Returns:
            Live entries.
        """
        with translate_errors("scan_live"):
            ids = self.client.zrangebyscore(self._expiry_key, f"({to_timestamp(now)}", "+inf")

            if context_hashes is not None:
                allowed: set[bytes] = set()
                for context in context_hashes:
                    allowed.update(self.client.smembers(self._context_key(context)))
                ids = [i for i in ids if i in allowed]

            entries = self._fetch(sorted(int(i) for i in ids))

        return [entry for entry in entries if entry.expires_at > now]

    def list_recent(self, limit: int = 50) -> list[CacheEntry]:
        """Entries ordered by ``created_at`` descending."""
        if limit <= 0:
            return []
        with translate_errors("list_recent"):
            ids = self.client.zrevrange(self._created_key, 0, limit - 1)
            return self._fetch([int(i) for i in ids])

    def aggregate_stats(self, now: datetime) -> CacheStats:
        """
        Compute aggregate statistics over every stored entry.

        ``storage_bytes`` counts the encoded query, response and embedding.
        """
        with translate_errors("aggregate_stats"):
            ids = self.client.zrange(self._created_key, 0, -1)
            entries = self._fetch(sorted(int(i) for i in ids))

        created = [entry.created_at for entry in entries]
        return {
            "count": len(entries),
            "total_hits": sum(entry.hit_count for entry in entries),
            "storage_bytes": sum(
                len(entry.query.encode("utf-8"))
                + len(entry.response.encode("utf-8"))
                + len(entry.query_embedding)
                for entry in entries
            ),
            "oldest": min(created) if created else None,
            "newest": max(created) if created else None,
            "expired_count": sum(1 for entry in entries if entry.is_expired(now)),
        }

    def health_check(self) -> bool:
        """
        Check Redis health.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            self.client.ping()
            return True
        except Exception:
            return False

    def close(self) -> None:
        """Close the Redis connection."""
        self.client.close()

    def __repr__(self) -> str:
        return f"RedisCacheStore(url={self.redis_url}, prefix={self.key_prefix})"
