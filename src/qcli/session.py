"""Per-query cache policy: when to consult the cache, and what to do on a hit or miss."""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from qcli.cache import CacheEngine
from qcli.errors import EmbeddingUnavailable, StoreUnavailable
from qcli.llm import CompletionClient
from qcli.store.base import LogStore
from qcli.types import CacheMatch, ChatMessage

logger = logging.getLogger(__name__)


class CacheMode(str, Enum):
    """How a single query interacts with the cache."""

    NORMAL = "normal"
    FORCE_REFRESH = "force_refresh"
    FRESH_BYPASS = "fresh_bypass"


def resolve_mode(no_cache: bool = False, refresh: bool = False, cache_enabled: bool = True) -> CacheMode:
    """
    Pick the cache mode for a query.

    ``--no-cache`` (or a disabled cache) wins over ``--refresh``: the cache is
    then neither read nor written.
    """
    if no_cache or not cache_enabled:
        return CacheMode.FRESH_BYPASS
    if refresh:
        return CacheMode.FORCE_REFRESH
    return CacheMode.NORMAL


@dataclass
class QueryOutcome:
    """What happened for one query, and what the user is shown."""

    query: str
    response: str
    mode: CacheMode
    log_id: int | None = None
    match: CacheMatch | None = None
    cache_entry_id: int | None = None
    context_messages: list[ChatMessage] = field(default_factory=list)
    context_responses: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def cached(self) -> bool:
        """True when the response was served from the cache."""
        return self.match is not None


class CacheSession:
    """Runs queries against the cache engine and the completion client."""

    def __init__(
        self,
        engine: CacheEngine,
        completion_client: CompletionClient,
        log_store: LogStore | None = None,
    ):
        self.engine = engine
        self.completion_client = completion_client
        self.log_store = log_store

    def run(
        self,
        query: str,
        mode: CacheMode = CacheMode.NORMAL,
        context_messages: Sequence[ChatMessage] = (),
        context_responses: Sequence[str] = (),
        on_text: Callable[[str], None] | None = None,
    ) -> QueryOutcome:
        """
        Answer a query.

        NORMAL looks the query up first and serves a hit as is; a miss (or a
        failed lookup) goes to the model and is then stored. FORCE_REFRESH
        skips the lookup but stores the fresh answer. FRESH_BYPASS never
        touches the cache.

        Args:
            query: Natural-language request.
            mode: Cache mode for this query.
            context_messages: Prior chat turns sent to the model.
            context_responses: Prior response texts used as the cache context.
            on_text: Receives streamed text of a fresh answer.

        Returns:
            The outcome; cached hits are not streamed through ``on_text``.
        """
        outcome = QueryOutcome(
            query=query,
            response="",
            mode=mode,
            context_messages=list(context_messages),
            context_responses=list(context_responses),
        )

        if mode is CacheMode.NORMAL:
            match = self._lookup(outcome)
            if match is not None:
                outcome.match = match
                outcome.response = match.entry.response
                outcome.cache_entry_id = match.entry.id
                outcome.log_id = self._log_hit(outcome, match)
                return outcome

        completion = self.completion_client.complete(
            query, context_messages=outcome.context_messages, on_text=on_text
        )
        outcome.response = completion.text
        outcome.log_id = completion.log_id

        if mode is not CacheMode.FRESH_BYPASS:
            self._store(outcome)

        return outcome

    def regenerate(self, outcome: QueryOutcome, on_text: Callable[[str], None] | None = None) -> QueryOutcome:
        """
        Replace a served cache hit with a fresh answer.

        The matched entry is refreshed in place (same id), never stored anew.

        Raises:
            ValueError: When the outcome was not a cache hit.
        """
        if outcome.match is None:
            raise ValueError("Only a cached answer can be regenerated")

        entry_id = outcome.match.entry.id
        completion = self.completion_client.complete(
            outcome.query, context_messages=outcome.context_messages, on_text=on_text
        )
        refreshed = QueryOutcome(
            query=outcome.query,
            response=completion.text,
            mode=CacheMode.FORCE_REFRESH,
            log_id=completion.log_id,
            cache_entry_id=entry_id,
            context_messages=outcome.context_messages,
            context_responses=outcome.context_responses,
        )

        try:
            self.engine.update(entry_id, completion.text, completion.log_id)
        except StoreUnavailable as e:
            logger.warning(f"Failed to refresh cache entry {entry_id}: {e}")
            refreshed.warnings.append("Failed to update cached response")

        return refreshed

    def _lookup(self, outcome: QueryOutcome) -> CacheMatch | None:
        try:
            return self.engine.lookup(outcome.query, outcome.context_responses)
        except (EmbeddingUnavailable, StoreUnavailable) as e:
            logger.warning(f"Cache lookup skipped: {e}")
            outcome.warnings.append("Cache lookup failed; fetched a fresh answer")
            return None

    def _store(self, outcome: QueryOutcome) -> None:
        if not outcome.response.strip():
            logger.debug("Empty answer, not cached")
            return
        try:
            entry = self.engine.store(
                outcome.query,
                outcome.response,
                response_id=outcome.log_id,
                context_responses=outcome.context_responses,
            )
            outcome.cache_entry_id = entry.id
        except (EmbeddingUnavailable, StoreUnavailable) as e:
            logger.warning(f"Failed to cache response: {e}")
            outcome.warnings.append("Failed to cache response")

    def _log_hit(self, outcome: QueryOutcome, match: CacheMatch) -> int | None:
        if self.log_store is None:
            return None
        try:
            return self.log_store.log_cache_hit(
                prompt=outcome.query,
                response=match.entry.response,
                cache_source_id=match.entry.id,
                similarity=match.similarity,
                model=self.completion_client.model_id,
                system=self.completion_client.system_prompt,
            )
        except StoreUnavailable as e:
            logger.warning(f"Could not log cache hit: {e}")
            return None
