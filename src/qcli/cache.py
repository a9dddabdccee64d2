"""Semantic cache engine: lookup, store, refresh and expiration of cached answers."""

import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime, timezone

from qcli.config import SettingsProvider
from qcli.context import context_hash
from qcli.embeddings.codec import EmbeddingCodec, cosine_similarity, from_bytes, to_bytes
from qcli.errors import DimensionMismatch
from qcli.store.base import CacheStore
from qcli.types import CacheEntry, CacheMatch, CacheStats

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheEngine:
    """
    Embedding-based cache of previous answers.

    Threshold and TTL come from the settings provider at the start of every
    call, so configuration changes apply without rebuilding the engine.

    Example:
        ```python
        engine = CacheEngine(store, EmbeddingCodec(embedder), SettingsProvider())
        match = engine.lookup("list files")
        if match is None:
            engine.store("list files", "ls -la", response_id=log_id)
        ```
    """

    def __init__(
        self,
        store: CacheStore,
        codec: EmbeddingCodec,
        settings: SettingsProvider | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the engine.

        Args:
            store: Cache entry storage.
            codec: Embedding codec used for queries.
            settings: Source of threshold and TTL. Defaults to a fresh provider.
            clock: Returns the current time (UTC); injectable for tests.
        """
        self.store_backend = store
        self.codec = codec
        self.settings = settings or SettingsProvider()
        self.clock = clock

    def lookup(self, query: str, context_responses: Sequence[str] = ()) -> CacheMatch | None:
        """
        Find the cached answer closest to ``query``.

        Expired entries are pruned first. Context-bearing queries may match
        entries recorded under the same context or under no context, with an
        exact context match always preferred; context-free queries only match
        context-free entries.

        Args:
            query: Natural-language request.
            context_responses: Prior response texts, oldest first.

        Returns:
            The best match at or above the similarity threshold, or None.

        Raises:
            EmbeddingUnavailable: The query could not be embedded.
            StoreUnavailable: The store failed.
        """
        threshold = self.settings.get().similarity_threshold
        now = self.clock()

        self.store_backend.delete_expired(now)

        query_embedding = self.codec.embed(query)
        query_context = context_hash(context_responses) or None

        if query_context is not None:
            eligible: tuple[str | None, ...] = (query_context, None)
        else:
            eligible = (None,)
        candidates = self.store_backend.scan_live(now, context_hashes=eligible)

        best: CacheMatch | None = None
        best_exact = False

        for entry in sorted(candidates, key=lambda e: e.id or 0):
            if entry.context_hash not in eligible or entry.expires_at <= now:
                continue

            try:
                similarity = cosine_similarity(query_embedding, from_bytes(entry.query_embedding))
            except DimensionMismatch as e:
                logger.warning(f"Skipping cache entry {entry.id}: {e}")
                continue

            if similarity < threshold:
                continue

            exact = query_context is not None and entry.context_hash == query_context
            if best is None or (exact and not best_exact) or (
                exact == best_exact and similarity > best.similarity
            ):
                best = CacheMatch(entry=entry, similarity=similarity)
                best_exact = exact

        if best is None:
            logger.debug(f"Cache miss for {query!r} ({len(candidates)} candidates)")
            return None

        hit_count = self.store_backend.increment_hit_count(best.entry.id)
        if hit_count is not None:
            best = CacheMatch(entry=replace(best.entry, hit_count=hit_count), similarity=best.similarity)

        logger.info(f"Cache hit: entry {best.entry.id} similarity={best.similarity:.3f}")
        return best

    def store(
        self,
        query: str,
        response: str,
        response_id: int | None = None,
        context_responses: Sequence[str] = (),
    ) -> CacheEntry:
        """
        Cache a freshly generated answer.

        Args:
            query: The query that produced the answer.
            response: The answer text.
            response_id: Log record of the model call, if known.
            context_responses: Context the answer was produced under.

        Returns:
            The stored entry.

        Raises:
            EmbeddingUnavailable: The query could not be embedded; nothing is stored.
            StoreUnavailable: The store failed.
        """
        ttl = self.settings.get().ttl
        query_embedding = self.codec.embed(query)
        now = self.clock()

        entry = CacheEntry(
            query=query,
            query_embedding=to_bytes(query_embedding),
            context_hash=context_hash(context_responses) or None,
            response=response,
            response_id=response_id,
            created_at=now,
            expires_at=now + ttl,
            hit_count=0,
        )
        return self.store_backend.insert(entry)

    def update(self, entry_id: int, response: str, response_id: int | None = None) -> bool:
        """
        Refresh an entry with a regenerated answer and a new expiry.

        The embedding and context hash stay as they were, so the entry keeps
        matching the same query and context.

        Returns:
            False when the entry no longer exists.
        """
        ttl = self.settings.get().ttl
        now = self.clock()
        updated = self.store_backend.update_response(
            entry_id, response, response_id, created_at=now, expires_at=now + ttl
        )
        if not updated:
            logger.warning(f"Cache entry {entry_id} vanished before it could be refreshed")
        return updated

    def prune_expired(self) -> int:
        """Delete expired entries; return how many were removed."""
        return self.store_backend.delete_expired(self.clock())

    def clear_all(self) -> int:
        """Delete every entry; return how many were removed."""
        count = self.store_backend.delete_all()
        logger.info(f"Cleared {count} cache entries")
        return count

    def clear_by_id(self, entry_id: int) -> bool:
        """Delete one entry; False if it does not exist."""
        return self.store_backend.delete_by_id(entry_id)

    def get_entry(self, entry_id: int) -> CacheEntry | None:
        return self.store_backend.get_by_id(entry_id)

    def list_entries(self, limit: int = 50) -> list[CacheEntry]:
        """Most recently created (or refreshed) entries first."""
        return self.store_backend.list_recent(limit)

    def stats(self) -> CacheStats:
        return self.store_backend.aggregate_stats(self.clock())

    def __repr__(self) -> str:
        return f"CacheEngine(store={self.store_backend!r}, codec={self.codec!r})"
