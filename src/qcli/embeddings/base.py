"""Base protocol for embedding providers."""

from typing import Protocol, runtime_checkable

import numpy as np


@runtime_checkable
class Embedder(Protocol):
    """Protocol for embedding providers."""

    @property
    def dim(self) -> int:
        """Return the dimension of embeddings."""
        ...

    def encode(self, texts: list[str]) -> np.ndarray:
        """
        Encode texts into embeddings.

        Implementations raise on failure; they never return a sentinel vector.

        Args:
            texts: List of text strings to encode.

        Returns:
            numpy array of shape (N, dim).
        """
        ...
