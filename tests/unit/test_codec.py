"""Unit tests for the embedding codec."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from qcli.embeddings.codec import EmbeddingCodec, cosine_similarity, from_bytes, to_bytes
from qcli.errors import DimensionMismatch, EmbeddingUnavailable


class TestCosineSimilarity:
    """Test cosine similarity."""

    def test_identical(self):
        v = np.array([0.3, -1.2, 4.0], dtype=np.float32)
        assert cosine_similarity(v, v) == pytest.approx(1.0, abs=1e-5)

    def test_opposite(self):
        v = np.array([1.0, 2.0, 3.0])
        assert cosine_similarity(v, -v) == pytest.approx(-1.0, abs=1e-5)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 5.0]) == 0.0

    def test_bounds_and_symmetry(self):
        rng = np.random.default_rng(7)
        for _ in range(50):
            a = rng.standard_normal(16).astype(np.float32)
            b = rng.standard_normal(16).astype(np.float32)
            s = cosine_similarity(a, b)
            assert -1.0 <= s <= 1.0
            assert s == cosine_similarity(b, a)

    def test_zero_vector(self):
        assert cosine_similarity(np.zeros(4), np.array([1.0, 2.0, 3.0, 4.0])) == 0.0
        assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0

    @pytest.mark.parametrize("a_len,b_len", [(3, 4), (0, 5), (5, 0), (1536, 384)])
    def test_dimension_mismatch(self, a_len, b_len):
        with pytest.raises(DimensionMismatch) as excinfo:
            cosine_similarity(np.ones(a_len), np.ones(b_len))
        assert excinfo.value.expected == a_len
        assert excinfo.value.actual == b_len

    def test_dimension_mismatch_is_value_error(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 2.0])


class TestBlobCodec:
    """Test the dimension-tagged blob format."""

    def test_round_trip_1536(self):
        v = np.random.default_rng(0).standard_normal(1536).astype(np.float32)

        decoded = from_bytes(to_bytes(v))

        assert decoded.shape == (1536,)
        np.testing.assert_allclose(decoded, v, atol=1e-5)

    def test_round_trip_empty(self):
        decoded = from_bytes(to_bytes([]))
        assert decoded.shape == (0,)

    def test_layout(self):
        blob = to_bytes([1.0, -2.0])

        assert blob[:4] == (2).to_bytes(4, "little")
        assert len(blob) == 4 + 2 * 4
        np.testing.assert_array_equal(np.frombuffer(blob[4:], dtype="<f4"), [1.0, -2.0])

    def test_float64_input_stored_as_float32(self):
        decoded = from_bytes(to_bytes(np.array([0.1, 0.2], dtype=np.float64)))
        assert decoded.dtype == np.float32

    def test_tag_payload_disagreement(self):
        blob = to_bytes([1.0, 2.0, 3.0])

        with pytest.raises(DimensionMismatch):
            from_bytes(blob[:-4])
        with pytest.raises(DimensionMismatch):
            from_bytes(blob + b"\x00")

    def test_too_short(self):
        with pytest.raises(DimensionMismatch):
            from_bytes(b"\x01\x00")

    def test_rejects_matrix(self):
        with pytest.raises(ValueError, match="1-dimensional"):
            to_bytes(np.ones((2, 2)))


class TestEmbeddingCodec:
    """Test the codec around an embedder."""

    def test_embed_single(self, stub_embedder):
        codec = EmbeddingCodec(stub_embedder)

        vector = codec.embed("list files")

        assert vector.shape == (stub_embedder.dim,)
        assert vector.dtype == np.float32
        np.testing.assert_array_equal(vector, stub_embedder.vector_for("list files"))

    def test_embed_batch_preserves_order(self, stub_embedder):
        codec = EmbeddingCodec(stub_embedder)

        vectors = codec.embed_batch(["a", "b", "c"])

        for text, vector in zip(["a", "b", "c"], vectors):
            np.testing.assert_array_equal(vector, stub_embedder.vector_for(text))

    def test_embed_batch_empty_skips_client(self):
        embedder = MagicMock()
        codec = EmbeddingCodec(embedder)

        assert codec.embed_batch([]) == []
        embedder.encode.assert_not_called()

    def test_client_failure_wrapped(self):
        embedder = MagicMock()
        embedder.encode.side_effect = ValueError("bad request")
        codec = EmbeddingCodec(embedder)

        with pytest.raises(EmbeddingUnavailable, match="bad request"):
            codec.embed("list files")
        assert embedder.encode.call_count == 1

    def test_transient_failure_retried(self, stub_embedder):
        embedder = MagicMock()
        embedder.encode.side_effect = [
            ConnectionError("connection reset by peer"),
            np.ones((1, 4), dtype=np.float32),
        ]
        codec = EmbeddingCodec(embedder, max_retries=2, initial_delay=0.5)

        with patch("qcli.retry.time.sleep") as mock_sleep:
            vector = codec.embed("list files")

        np.testing.assert_array_equal(vector, np.ones(4))
        assert embedder.encode.call_count == 2
        mock_sleep.assert_called_once()

    @pytest.mark.parametrize(
        "result",
        [
            np.empty((0, 4), dtype=np.float32),
            np.ones((2, 4), dtype=np.float32),
            np.empty((1, 0), dtype=np.float32),
            np.array([[1.0, np.nan]], dtype=np.float32),
            np.array([[np.inf, 1.0]], dtype=np.float32),
        ],
    )
    def test_bad_results_rejected(self, result):
        embedder = MagicMock()
        embedder.encode.return_value = result
        codec = EmbeddingCodec(embedder)

        with pytest.raises(EmbeddingUnavailable):
            codec.embed("list files")

    def test_flat_vector_accepted_for_single_text(self):
        embedder = MagicMock()
        embedder.encode.return_value = np.array([0.5, 0.5], dtype=np.float32)
        codec = EmbeddingCodec(embedder)

        assert codec.embed("hi").shape == (2,)

    def test_dim_from_embedder(self, stub_embedder):
        assert EmbeddingCodec(stub_embedder).dim == stub_embedder.dim
