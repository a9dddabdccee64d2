"""Offline query embeddings for the answer cache (``Q_EMBED_PROVIDER=st_local``)."""

import logging

import numpy as np
from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedder:
    """
    Embeds cache queries with a local sentence-transformers model.

    Used instead of Titan when there is no Bedrock access for embeddings.
    Vectors from different models are not comparable, so switching models
    makes existing cache entries unreachable (their dimension tag no longer
    matches) until they expire or are cleared.
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        device: str | None = None,
    ):
        """
        Args:
            model_name: Hugging Face model id (``Q_EMBED_MODEL_NAME``).
            device: Torch device ("cpu", "cuda", ...); auto-detected when None.
        """
        self.model_name = model_name
        self.device = device
        self._model: SentenceTransformer | None = None
        self._dim: int | None = None

    @property
    def model(self) -> SentenceTransformer:
        # loaded on first query so `q cache ...` and `q info` stay fast
        if self._model is None:
            logger.info(f"Loading local embedding model {self.model_name} for the answer cache")
            self._model = SentenceTransformer(self.model_name, device=self.device)
            self._dim = self._model.get_sentence_embedding_dimension()
            logger.debug(f"Local embedding model ready (dim={self._dim}, device={self._model.device})")
        return self._model

    @property
    def dim(self) -> int:
        if self._dim is None:
            self._dim = self.model.get_sentence_embedding_dimension()
        return self._dim

    def encode(self, texts: list[str]) -> np.ndarray:
        """Embed queries as L2-normalized float32 rows, shape (N, dim)."""
        if not texts:
            return np.empty((0, self.dim), dtype=np.float32)

        vectors = self.model.encode(
            texts,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.atleast_2d(vectors).astype(np.float32)

    def __repr__(self) -> str:
        return f"SentenceTransformerEmbedder(model={self.model_name}, device={self.device or 'auto'})"
