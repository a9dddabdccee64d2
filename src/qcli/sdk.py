"""Main entry point wiring storage, embeddings, the cache engine and the model."""

import logging
from typing import Any

import redis

from qcli.cache import CacheEngine
from qcli.config import SettingsProvider
from qcli.context import detects_context, get_context_messages, get_context_responses
from qcli.embeddings.base import Embedder
from qcli.embeddings.bedrock_client import BedrockClient
from qcli.embeddings.codec import EmbeddingCodec
from qcli.errors import StoreUnavailable
from qcli.llm import CompletionClient
from qcli.session import CacheMode, CacheSession, QueryOutcome, resolve_mode
from qcli.store.log_store import RedisLogStore
from qcli.store.redis_store import RedisCacheStore
from qcli.types import ChatMessage

logger = logging.getLogger(__name__)


def build_embedder(provider: SettingsProvider, bedrock_client: BedrockClient | None = None) -> Embedder:
    """Create the embedder selected by ``embed_provider``."""
    settings = provider.get()
    if settings.embed_provider == "st_local":
        from qcli.embeddings.st_local import SentenceTransformerEmbedder

        return SentenceTransformerEmbedder(model_name=settings.embed_model_name)

    from qcli.embeddings.titan_embedder import TitanEmbedder

    return TitanEmbedder(
        model_id=settings.embed_model_name,
        aws_region=settings.aws_region,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        vector_dim=settings.vector_dim,
        bedrock_client=bedrock_client,
    )


class ShellAssistant:
    """Terminal assistant with a semantic answer cache."""

    def __init__(
        self,
        settings: SettingsProvider | None = None,
        redis_client: redis.Redis | None = None,
        embedder: Embedder | None = None,
        bedrock_client: BedrockClient | None = None,
    ):
        """
        Initialize the assistant.

        Args:
            settings: Settings provider. Defaults to one reading env and config file.
            redis_client: Redis client. Defaults to one built from ``redis_url``.
            embedder: Embedding provider. Defaults to the configured provider.
            bedrock_client: Bedrock runtime client, shared by Titan and the model.
        """
        self.settings = settings or SettingsProvider()
        config = self.settings.get()

        self.redis_client = redis_client or redis.from_url(config.redis_url, decode_responses=False)
        self.cache_store = RedisCacheStore(
            redis_url=config.redis_url, key_prefix=config.key_prefix, client=self.redis_client
        )
        self.log_store = RedisLogStore(
            redis_url=config.redis_url, key_prefix=config.key_prefix, client=self.redis_client
        )

        self._bedrock_client = bedrock_client
        self._embedder = embedder
        self._engine: CacheEngine | None = None
        self._session: CacheSession | None = None

        logger.debug("ShellAssistant initialized")

    @property
    def bedrock_client(self) -> BedrockClient:
        if self._bedrock_client is None:
            config = self.settings.get()
            self._bedrock_client = BedrockClient(
                aws_access_key_id=config.aws_access_key_id,
                aws_secret_access_key=config.aws_secret_access_key,
                aws_region=config.aws_region,
            )
        return self._bedrock_client

    @property
    def engine(self) -> CacheEngine:
        """Cache engine; the embedder is only built when the cache is used."""
        if self._engine is None:
            embedder = self._embedder
            if embedder is None:
                needs_bedrock = self.settings.get().embed_provider == "titan"
                embedder = build_embedder(self.settings, self.bedrock_client if needs_bedrock else None)
            self._engine = CacheEngine(self.cache_store, EmbeddingCodec(embedder), self.settings)
        return self._engine

    @property
    def session(self) -> CacheSession:
        if self._session is None:
            config = self.settings.get()
            completion_client = CompletionClient(
                self.bedrock_client,
                log_store=self.log_store,
                model_id=config.completion_model,
                max_tokens=config.max_tokens,
            )
            self._session = CacheSession(self.engine, completion_client, self.log_store)
        return self._session

    def load_context(self, query: str, context_limit: int | None = None) -> tuple[list[ChatMessage], list[str]]:
        """
        Fetch prior turns when asked to, or when the query reads like a follow-up.

        Args:
            query: The incoming query.
            context_limit: Explicit number of interactions; None means auto-detect.

        Returns:
            (context messages, context response texts), both oldest first.
        """
        if context_limit is None:
            context_limit = self.settings.get().context_limit if detects_context(query) else 0
        if context_limit <= 0:
            return [], []

        try:
            return (
                get_context_messages(self.log_store, context_limit),
                get_context_responses(self.log_store, context_limit),
            )
        except StoreUnavailable as e:
            logger.warning(f"Could not load context: {e}")
            return [], []

    def ask(
        self,
        query: str,
        no_cache: bool = False,
        refresh: bool = False,
        context_limit: int | None = None,
        on_text: Any = None,
    ) -> QueryOutcome:
        """
        Answer a natural-language request.

        Args:
            query: The request.
            no_cache: Neither read nor write the cache.
            refresh: Skip the lookup but store the fresh answer.
            context_limit: Prior interactions to include; None auto-detects.
            on_text: Receives streamed text of a fresh answer.

        Returns:
            QueryOutcome describing the answer and how it was produced.
        """
        if not query or not query.strip():
            raise ValueError("query is required")

        mode = resolve_mode(no_cache, refresh, self.settings.get().cache_enabled)
        context_messages, context_responses = self.load_context(query, context_limit)

        if mode is CacheMode.FRESH_BYPASS:
            logger.debug("Cache bypassed for this query")

        return self.session.run(
            query,
            mode=mode,
            context_messages=context_messages,
            context_responses=context_responses,
            on_text=on_text,
        )

    def regenerate(self, outcome: QueryOutcome, on_text: Any = None) -> QueryOutcome:
        """Regenerate a cached answer and refresh its cache entry."""
        return self.session.regenerate(outcome, on_text=on_text)

    def mark_copied(self, log_id: int | None) -> bool:
        """Flag the log record as copied; failures are logged, not raised."""
        if log_id is None:
            return False
        try:
            return self.log_store.update_log_copied(log_id, True)
        except StoreUnavailable as e:
            logger.warning(f"Could not mark log {log_id} as copied: {e}")
            return False

    def health_check(self) -> bool:
        """
        Check storage health.

        Returns:
            True if healthy, False otherwise.
        """
        return self.cache_store.health_check()

    def close(self) -> None:
        """Close the assistant and clean up resources."""
        self.redis_client.close()

    def __repr__(self) -> str:
        return f"ShellAssistant(store={self.cache_store!r})"

    def __enter__(self) -> "ShellAssistant":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
