"""Amazon Titan embedding provider via Bedrock."""

import logging

import numpy as np

from qcli.embeddings.bedrock_client import BedrockClient

logger = logging.getLogger(__name__)


class TitanEmbedder:
    """AWS Bedrock Titan embedding provider."""

    def __init__(
        self,
        model_id: str = "amazon.titan-embed-text-v1",
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        aws_region: str = "us-east-1",
        vector_dim: int = 1536,
        bedrock_client: BedrockClient | None = None,
    ):
        """
        Initialize the Titan embedder.

        Args:
            model_id: Bedrock Titan model ID.
            aws_access_key_id: AWS access key ID (optional).
            aws_secret_access_key: AWS secret access key (optional).
            aws_region: AWS region for Bedrock.
            vector_dim: Expected embedding dimension (1536 for Titan v1).
            bedrock_client: Shared client; a new one is created when omitted.
        """
        self.model_id = model_id
        self._dim = vector_dim
        self.bedrock_client = bedrock_client or BedrockClient(
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
            aws_region=aws_region,
        )
        logger.debug(f"Initialized Titan embedder with model: {model_id}")

    @property
    def dim(self) -> int:
        """Return the dimension of embeddings."""
        return self._dim

    def encode(self, texts: list[str]) -> np.ndarray:
        """
        Encode texts into embeddings using Titan, one request per text.

        Args:
            texts: List of texts to encode.

        Returns:
            Numpy array of embeddings with shape (len(texts), dim).

        Raises:
            ValueError: When Titan returns a vector of an unexpected size.
            Exception: Whatever the Bedrock client raised; failures are never
                replaced with a zero vector.
        """
        embeddings = []

        for text in texts:
            response_body = self.bedrock_client.invoke_json(self.model_id, {"inputText": text})
            embedding = np.asarray(response_body["embedding"], dtype=np.float32)

            if embedding.shape != (self._dim,):
                raise ValueError(
                    f"Titan model {self.model_id} returned {embedding.shape[0]} dimensions, "
                    f"expected {self._dim}"
                )
            embeddings.append(embedding)

        if not embeddings:
            return np.empty((0, self._dim), dtype=np.float32)
        return np.stack(embeddings)

    def __repr__(self) -> str:
        return f"TitanEmbedder(model={self.model_id}, dim={self._dim})"
