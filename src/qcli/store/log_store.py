"""Redis-backed interaction log (every model call and every cache hit)."""

import logging
from datetime import datetime, timezone
from typing import Any

import redis

from qcli.store.redis_store import decode_text, from_timestamp, to_timestamp, translate_errors
from qcli.types import LogRecord

logger = logging.getLogger(__name__)

_INT_FIELDS = (
    "duration_ms",
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "cache_source_id",
)
_TEXT_FIELDS = ("model", "prompt", "system", "response")


class RedisLogStore:
    """Append-only log of interactions, newest first by ``datetime_utc``."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "q:",
        client: redis.Redis | None = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = client or redis.from_url(redis_url, decode_responses=False)

    @property
    def _next_id_key(self) -> str:
        return f"{self.key_prefix}log:next_id"

    @property
    def _timeline_key(self) -> str:
        return f"{self.key_prefix}log:by_time"

    def _log_key(self, log_id: int) -> str:
        return f"{self.key_prefix}log:{log_id}"

    @staticmethod
    def _decode(log_id: int, raw: dict[bytes, bytes]) -> LogRecord:
        def _int(name: str) -> int | None:
            value = raw.get(name.encode())
            return int(value) if value is not None else None

        similarity = raw.get(b"similarity_score")
        record: dict[str, Any] = {name: decode_text(raw.get(name.encode())) for name in _TEXT_FIELDS}
        record.update({name: _int(name) for name in _INT_FIELDS})
        record.update(
            id=log_id,
            datetime_utc=from_timestamp(raw[b"datetime_utc"]),
            copied=raw.get(b"copied") == b"1",
            cached=raw.get(b"cached") == b"1",
            similarity_score=float(similarity) if similarity is not None else None,
        )
        return record  # type: ignore[return-value]

    def insert_log(self, record: dict[str, Any]) -> int:
        """
        Append an interaction.

        Args:
            record: LogRecord fields (``id`` is assigned here; ``datetime_utc``
                defaults to now). ``None`` values are not stored.

        Returns:
            The new log id.
        """
        when = record.get("datetime_utc") or datetime.now(timezone.utc)
        mapping: dict[str, Any] = {
            "datetime_utc": to_timestamp(when),
            "copied": int(bool(record.get("copied", False))),
            "cached": int(bool(record.get("cached", False))),
        }
        for name in (*_TEXT_FIELDS, *_INT_FIELDS, "similarity_score"):
            value = record.get(name)
            if value is not None:
                mapping[name] = value

        with translate_errors("insert_log"):
            log_id = int(self.client.incr(self._next_id_key))
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(self._log_key(log_id), mapping=mapping)
            pipe.zadd(self._timeline_key, {str(log_id): mapping["datetime_utc"]})
            pipe.execute()

        logger.debug(f"Logged interaction {log_id}")
        return log_id

    def get_logs(self, limit: int = 3) -> list[LogRecord]:
        """Most recent interactions, newest first."""
        if limit <= 0:
            return []

        with translate_errors("get_logs"):
            ids = [int(i) for i in self.client.zrevrange(self._timeline_key, 0, limit - 1)]
            pipe = self.client.pipeline(transaction=False)
            for log_id in ids:
                pipe.hgetall(self._log_key(log_id))
            rows = pipe.execute() if ids else []

        return [self._decode(log_id, raw) for log_id, raw in zip(ids, rows, strict=True) if raw]

    def get_log_by_id(self, log_id: int) -> LogRecord | None:
        with translate_errors("get_log_by_id"):
            raw = self.client.hgetall(self._log_key(log_id))
        return self._decode(log_id, raw) if raw else None

    def update_log_copied(self, log_id: int, copied: bool = True) -> bool:
        """Mark whether the user copied this response. False if the log is unknown."""
        key = self._log_key(log_id)

        def _apply(pipe: redis.client.Pipeline) -> bool:
            if not pipe.exists(key):
                return False
            pipe.multi()
            pipe.hset(key, "copied", int(copied))
            return True

        with translate_errors("update_log_copied"):
            return bool(self.client.transaction(_apply, key, value_from_callable=True))

    def log_cache_hit(
        self,
        prompt: str,
        response: str,
        cache_source_id: int,
        similarity: float,
        model: str | None = None,
        system: str | None = None,
    ) -> int:
        """Record a query answered from the cache entry ``cache_source_id``."""
        return self.insert_log(
            {
                "model": model,
                "prompt": prompt,
                "system": system,
                "response": response,
                "cached": True,
                "cache_source_id": cache_source_id,
                "similarity_score": similarity,
            }
        )

    def close(self) -> None:
        self.client.close()

    def __repr__(self) -> str:
        return f"RedisLogStore(url={self.redis_url}, prefix={self.key_prefix})"
