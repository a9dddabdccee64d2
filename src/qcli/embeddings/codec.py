"""Embedding codec: text to vector, vector to storage bytes, and similarity."""

import logging
import struct
from collections.abc import Sequence

import numpy as np

from qcli.embeddings.base import Embedder
from qcli.errors import DimensionMismatch, EmbeddingUnavailable
from qcli.retry import with_retry

logger = logging.getLogger(__name__)

# Blob layout: little-endian uint32 dimension tag, then `dim` little-endian float32 values.
_HEADER = struct.Struct("<I")
_DTYPE = np.dtype("<f4")


def to_bytes(vector: np.ndarray | Sequence[float]) -> bytes:
    """
    Pack a vector into its storage representation.

    Args:
        vector: 1-D sequence of floats; stored as single precision.

    Returns:
        Dimension-tagged little-endian float32 blob.
    """
    arr = np.asarray(vector, dtype=_DTYPE)
    if arr.ndim != 1:
        raise ValueError(f"Embedding must be 1-dimensional, got shape {arr.shape}")
    return _HEADER.pack(arr.shape[0]) + arr.tobytes()


def from_bytes(blob: bytes) -> np.ndarray:
    """
    Unpack a blob produced by ``to_bytes``.

    Args:
        blob: Stored embedding bytes.

    Returns:
        float32 vector of the tagged dimension.

    Raises:
        DimensionMismatch: When the payload length disagrees with the tag.
    """
    if len(blob) < _HEADER.size:
        raise DimensionMismatch(0, 0, f"Embedding blob too short ({len(blob)} bytes)")

    (dim,) = _HEADER.unpack_from(blob)
    payload = memoryview(blob)[_HEADER.size :]
    actual = len(payload) // _DTYPE.itemsize
    if len(payload) % _DTYPE.itemsize or actual != dim:
        raise DimensionMismatch(
            dim,
            actual,
            f"Embedding blob tagged with {dim} dimensions carries {len(payload)} payload bytes",
        )
    if dim == 0:
        return np.empty(0, dtype=np.float32)

    return np.frombuffer(payload, dtype=_DTYPE).astype(np.float32)


def cosine_similarity(a: np.ndarray | Sequence[float], b: np.ndarray | Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Returns a value in [-1, 1]; exactly 0.0 when either vector has zero norm.

    Raises:
        DimensionMismatch: When the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(va.shape[0], vb.shape[0])

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    similarity = float(np.dot(va, vb)) / (norm_a * norm_b)
    return max(-1.0, min(1.0, similarity))


class EmbeddingCodec:
    """Turns text into vectors through an Embedder, with retries and validation."""

    def __init__(
        self,
        embedder: Embedder,
        max_retries: int = 3,
        initial_delay: float = 1.0,
    ):
        """
        Initialize the codec.

        Args:
            embedder: Embedding provider.
            max_retries: Retries for transient embedder failures.
            initial_delay: First backoff delay in seconds.
        """
        self.embedder = embedder
        self.max_retries = max_retries
        self.initial_delay = initial_delay

    @property
    def dim(self) -> int:
        return self.embedder.dim

    def embed(self, text: str) -> np.ndarray:
        """
        Embed a single text.

        Raises:
            EmbeddingUnavailable: When the embedder fails or returns garbage.
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """
        Embed several texts, preserving input order.

        Raises:
            EmbeddingUnavailable: When the embedder fails or returns garbage.
        """
        if not texts:
            return []

        try:
            raw = with_retry(
                lambda: self.embedder.encode(list(texts)),
                max_retries=self.max_retries,
                initial_delay=self.initial_delay,
            )
        except Exception as e:
            logger.error(f"Embedding request failed: {e}")
            raise EmbeddingUnavailable(f"Embedding request failed: {e}") from e

        matrix = np.asarray(raw, dtype=np.float32)
        if matrix.ndim == 1 and len(texts) == 1 and matrix.size > 0:
            matrix = matrix.reshape(1, -1)
        if matrix.ndim != 2 or matrix.shape[0] != len(texts) or matrix.shape[1] == 0:
            raise EmbeddingUnavailable(
                f"Embedder returned shape {matrix.shape} for {len(texts)} text(s)"
            )
        if not np.all(np.isfinite(matrix)):
            raise EmbeddingUnavailable("Embedder returned non-finite values")

        return [row.copy() for row in matrix]

    def __repr__(self) -> str:
        return f"EmbeddingCodec(embedder={self.embedder!r})"
