"""Type definitions for qcli."""

from dataclasses import dataclass
from datetime import datetime
from typing import TypedDict


@dataclass
class CacheEntry:
    """A previously answered query, as persisted by the cache store."""

    query: str
    query_embedding: bytes
    context_hash: str | None
    response: str
    response_id: int | None
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0
    id: int | None = None

    @property
    def is_context_dependent(self) -> bool:
        return self.context_hash is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class CacheMatch:
    """A cache entry paired with its similarity to the looked-up query."""

    entry: CacheEntry
    similarity: float


class CacheStats(TypedDict):
    """Aggregate statistics over the whole cache."""

    count: int
    total_hits: int
    storage_bytes: int
    oldest: datetime | None
    newest: datetime | None
    expired_count: int


class LogRecord(TypedDict):
    """One logged interaction (model call or cache hit)."""

    id: int
    model: str | None
    prompt: str | None
    system: str | None
    response: str | None
    duration_ms: int | None
    datetime_utc: datetime
    input_tokens: int | None
    output_tokens: int | None
    total_tokens: int | None
    copied: bool
    cached: bool
    cache_source_id: int | None
    similarity_score: float | None


class ChatMessage(TypedDict):
    """A single chat turn sent to the completion model."""

    role: str
    content: str
