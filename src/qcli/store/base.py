"""Storage protocols for cache entries and interaction logs."""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from qcli.types import CacheEntry, CacheStats, LogRecord


@runtime_checkable
class CacheStore(Protocol):
    """Durable CRUD over cache entries.

    Implementations must make ``insert`` and ``update_response`` all-or-nothing
    and ``increment_hit_count`` a single server-side increment.
    """

    def insert(self, entry: CacheEntry) -> CacheEntry:
        """Assign an id, persist every field, and return the stored entry."""
        ...

    def update_response(
        self,
        entry_id: int,
        response: str,
        response_id: int | None,
        created_at: datetime,
        expires_at: datetime,
    ) -> bool:
        """Overwrite response, provenance and timestamps. False if the id is unknown."""
        ...

    def increment_hit_count(self, entry_id: int) -> int | None:
        """Atomically add one hit. Returns the new count, or None if the id is unknown."""
        ...

    def scan_live(
        self,
        now: datetime,
        context_hashes: Iterable[str | None] | None = None,
    ) -> list[CacheEntry]:
        """Entries with ``expires_at > now``, ascending id.

        When ``context_hashes`` is given, only entries whose context hash is in
        it are returned (``None`` selects context-independent entries).
        """
        ...

    def delete_expired(self, now: datetime) -> int:
        """Remove entries with ``expires_at <= now``; return how many."""
        ...

    def delete_all(self) -> int:
        ...

    def delete_by_id(self, entry_id: int) -> bool:
        ...

    def get_by_id(self, entry_id: int) -> CacheEntry | None:
        ...

    def list_recent(self, limit: int = 50) -> list[CacheEntry]:
        """Entries ordered by ``created_at`` descending."""
        ...

    def aggregate_stats(self, now: datetime) -> CacheStats:
        ...


@runtime_checkable
class LogStore(Protocol):
    """Append-only interaction history."""

    def insert_log(self, record: dict[str, Any]) -> int:
        """Persist one interaction and return its id."""
        ...

    def get_logs(self, limit: int = 3) -> list[LogRecord]:
        """Most recent interactions, newest first."""
        ...

    def get_log_by_id(self, log_id: int) -> LogRecord | None:
        ...

    def update_log_copied(self, log_id: int, copied: bool = True) -> bool:
        ...

    def log_cache_hit(
        self,
        prompt: str,
        response: str,
        cache_source_id: int,
        similarity: float,
        model: str | None = None,
        system: str | None = None,
    ) -> int:
        """Record a query that was answered from the cache."""
        ...
