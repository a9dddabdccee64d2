"""Embedding providers and the embedding codec."""

from qcli.embeddings.base import Embedder
from qcli.embeddings.codec import EmbeddingCodec, cosine_similarity, from_bytes, to_bytes

__all__ = [
    "Embedder",
    "EmbeddingCodec",
    "cosine_similarity",
    "from_bytes",
    "to_bytes",
]
