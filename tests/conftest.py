"""Pytest configuration and fixtures."""

import hashlib
import os
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

import numpy as np
import pytest

from qcli.config import SettingsProvider
from qcli.types import CacheEntry, CacheStats, LogRecord

STUB_DIM = 8


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the user config at a temp dir and drop any Q_* environment."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    for name in list(os.environ):
        if name.upper().startswith("Q_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return tmp_path / "config" / "q-cli"


@pytest.fixture
def mock_redis_client():
    """Mock Redis client for unit tests."""
    from unittest.mock import MagicMock

    mock_client = MagicMock()
    mock_client.ping.return_value = True
    mock_client.pipeline.return_value = MagicMock()
    return mock_client


class StubEmbedder:
    """Deterministic embedder: fixed vectors for known texts, seeded noise otherwise."""

    def __init__(self, vectors: dict[str, Iterable[float]] | None = None, dim: int = STUB_DIM):
        self._dim = dim
        self.vectors = {text: np.asarray(v, dtype=np.float32) for text, v in (vectors or {}).items()}
        self.calls: list[list[str]] = []

    @property
    def dim(self) -> int:
        return self._dim

    def vector_for(self, text: str) -> np.ndarray:
        if text in self.vectors:
            return self.vectors[text]
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
        return np.random.default_rng(seed).standard_normal(self._dim).astype(np.float32)

    def encode(self, texts: list[str]) -> np.ndarray:
        self.calls.append(list(texts))
        if not texts:
            return np.empty((0, self._dim), dtype=np.float32)
        return np.stack([self.vector_for(text) for text in texts])


class FixedClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class InMemoryCacheStore:
    """CacheStore kept in a dict, for engine and session tests."""

    def __init__(self):
        self.entries: dict[int, CacheEntry] = {}
        self._next_id = 0

    def insert(self, entry: CacheEntry) -> CacheEntry:
        if entry.expires_at <= entry.created_at:
            raise ValueError("expires_at must be later than created_at")
        self._next_id += 1
        stored = replace(entry, id=self._next_id)
        self.entries[stored.id] = stored
        return stored

    def update_response(self, entry_id, response, response_id, created_at, expires_at) -> bool:
        if entry_id not in self.entries:
            return False
        self.entries[entry_id] = replace(
            self.entries[entry_id],
            response=response,
            response_id=response_id,
            created_at=created_at,
            expires_at=expires_at,
        )
        return True

    def increment_hit_count(self, entry_id: int) -> int | None:
        entry = self.entries.get(entry_id)
        if entry is None:
            return None
        entry.hit_count += 1
        return entry.hit_count

    def scan_live(self, now, context_hashes=None) -> list[CacheEntry]:
        allowed = set(context_hashes) if context_hashes is not None else None
        return [
            replace(entry)
            for entry_id, entry in sorted(self.entries.items())
            if entry.expires_at > now and (allowed is None or entry.context_hash in allowed)
        ]

    def delete_expired(self, now) -> int:
        expired = [i for i, entry in self.entries.items() if entry.expires_at <= now]
        for entry_id in expired:
            del self.entries[entry_id]
        return len(expired)

    def delete_all(self) -> int:
        count = len(self.entries)
        self.entries.clear()
        return count

    def delete_by_id(self, entry_id: int) -> bool:
        return self.entries.pop(entry_id, None) is not None

    def get_by_id(self, entry_id: int) -> CacheEntry | None:
        entry = self.entries.get(entry_id)
        return replace(entry) if entry else None

    def list_recent(self, limit: int = 50) -> list[CacheEntry]:
        ordered = sorted(self.entries.values(), key=lambda e: e.created_at, reverse=True)
        return ordered[:limit]

    def aggregate_stats(self, now) -> CacheStats:
        entries = list(self.entries.values())
        created = [e.created_at for e in entries]
        return {
            "count": len(entries),
            "total_hits": sum(e.hit_count for e in entries),
            "storage_bytes": sum(len(e.query) + len(e.response) + len(e.query_embedding) for e in entries),
            "oldest": min(created) if created else None,
            "newest": max(created) if created else None,
            "expired_count": sum(1 for e in entries if e.is_expired(now)),
        }


class InMemoryLogStore:
    """LogStore kept in a list, newest last."""

    def __init__(self):
        self.records: list[LogRecord] = []

    def insert_log(self, record: dict[str, Any]) -> int:
        log_id = len(self.records) + 1
        full: dict[str, Any] = {
            "model": None,
            "prompt": None,
            "system": None,
            "response": None,
            "duration_ms": None,
            "input_tokens": None,
            "output_tokens": None,
            "total_tokens": None,
            "copied": False,
            "cached": False,
            "cache_source_id": None,
            "similarity_score": None,
        }
        full.update({k: v for k, v in record.items() if v is not None})
        full["id"] = log_id
        full.setdefault("datetime_utc", datetime.now(timezone.utc))
        self.records.append(full)  # type: ignore[arg-type]
        return log_id

    def get_logs(self, limit: int = 3) -> list[LogRecord]:
        if limit <= 0:
            return []
        return list(reversed(self.records))[:limit]

    def get_log_by_id(self, log_id: int) -> LogRecord | None:
        for record in self.records:
            if record["id"] == log_id:
                return record
        return None

    def update_log_copied(self, log_id: int, copied: bool = True) -> bool:
        record = self.get_log_by_id(log_id)
        if record is None:
            return False
        record["copied"] = copied
        return True

    def log_cache_hit(self, prompt, response, cache_source_id, similarity, model=None, system=None) -> int:
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
        pass


@pytest.fixture
def stub_embedder():
    return StubEmbedder()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def cache_store():
    return InMemoryCacheStore()


@pytest.fixture
def log_store():
    return InMemoryLogStore()


@pytest.fixture
def settings_provider():
    return SettingsProvider(similarity_threshold=0.85, expiry_days=30)


@pytest.fixture
def make_embedder():
    """Factory for stub embedders with fixed vectors."""
    return StubEmbedder


@pytest.fixture
def make_engine(cache_store, settings_provider, clock):
    """Factory for a CacheEngine over the in-memory store and fixed clock."""
    from qcli.cache import CacheEngine
    from qcli.embeddings.codec import EmbeddingCodec

    def _make(embedder=None, **overrides):
        if overrides:
            settings_provider.override(**overrides)
        codec = EmbeddingCodec(embedder or StubEmbedder(), max_retries=0)
        return CacheEngine(cache_store, codec, settings_provider, clock=clock)

    return _make
