"""Tests for the Embedding type and its serialization."""

import pytest
import numpy as np
from datetime import datetime, timedelta

from facematch.embedding import Embedding, decode_vector, encode_vector
from facematch.errors import DimensionMismatch, ErrorKind


class TestEmbedding:
    """Test cases for Embedding construction and validation."""

    def test_values_are_float32(self):
        """Test values are stored as a flat float32 array."""
        e = Embedding("alice", [[1, 2], [3, 4]])
        assert e.values.dtype == np.float32
        assert e.dimension == 4

    def test_quality_range(self):
        """Test quality outside [0, 1] is rejected."""
        Embedding("alice", [1.0, 0.0], quality=0.0)
        Embedding("alice", [1.0, 0.0], quality=1.0)
        with pytest.raises(ValueError):
            Embedding("alice", [1.0, 0.0], quality=1.5)

    def test_effective_quality_defaults_to_neutral(self):
        """Test missing quality counts as full quality."""
        assert Embedding("alice", [1.0]).effective_quality == 1.0
        assert Embedding("alice", [1.0], quality=0.4).effective_quality == 0.4

    def test_timestamps(self):
        """Test updated_at defaults to created_at and may not precede it."""
        created = datetime(2024, 1, 1)
        e = Embedding("alice", [1.0], created_at=created)
        assert e.updated_at == created

        with pytest.raises(ValueError):
            Embedding("alice", [1.0], created_at=created, updated_at=created - timedelta(seconds=1))

    def test_validate(self):
        """Test validation reports the violated error kind."""
        assert Embedding("a", [1.0, 0.0]).validate(2) is None
        assert Embedding("a", [1.0, 0.0]).validate(3) is ErrorKind.DIMENSION_MISMATCH
        assert Embedding("a", [float("nan"), 0.0]).validate(2) is ErrorKind.INVALID_VECTOR
        assert Embedding("a", [float("inf"), 0.0]).validate(2) is ErrorKind.INVALID_VECTOR
        assert Embedding.zeros("a", 2).validate(2) is ErrorKind.INVALID_VECTOR

    def test_random(self):
        """Test random embeddings are seeded and bounded."""
        rng = np.random.default_rng(42)
        e = Embedding.random("r", 64, rng)
        assert e.dimension == 64
        assert np.all(np.abs(e.values) <= 1.0)


class TestEmbeddingAlgebra:
    """Test cases for vector operations on embeddings."""

    def test_normalized(self):
        """Test normalization keeps identity and quality."""
        e = Embedding("alice", [3.0, 4.0], quality=0.9).normalized()
        assert e.is_normalized()
        assert e.identity == "alice"
        assert e.quality == 0.9

    def test_arithmetic(self):
        """Test add, subtract and scale."""
        a = Embedding("a", [1.0, 2.0])
        b = Embedding("b", [0.5, 0.5])
        assert np.allclose((a + b).values, [1.5, 2.5])
        assert np.allclose((a - b).values, [0.5, 1.5])
        assert np.allclose((a * 2).values, [2.0, 4.0])
        assert np.allclose((2 * a).values, [2.0, 4.0])

    def test_arithmetic_dimension_mismatch(self):
        """Test combining embeddings of different lengths fails."""
        with pytest.raises(DimensionMismatch):
            Embedding("a", [1.0, 2.0]) + Embedding("b", [1.0])

    def test_similarity_methods(self):
        """Test metric shortcuts on embeddings."""
        a = Embedding("a", [1.0, 0.0])
        b = Embedding("b", [0.0, 1.0])
        assert a.cosine_similarity(b) == pytest.approx(0.0)
        assert a.euclidean_distance(b) == pytest.approx(np.sqrt(2))
        assert a.manhattan_distance(b) == pytest.approx(2.0)
        assert a.dot(b) == 0.0

    def test_equality(self):
        """Test equality compares identity, values, quality and creation time."""
        created = datetime(2024, 1, 1)
        a = Embedding("a", [1.0, 2.0], 0.5, created_at=created)
        assert a == Embedding("a", [1.0, 2.0], 0.5, created_at=created)
        assert a != Embedding("a", [1.0, 2.5], 0.5, created_at=created)
        assert a != Embedding("b", [1.0, 2.0], 0.5, created_at=created)


class TestSerialization:
    """Test cases for vector byte encoding."""

    def test_round_trip_is_bit_exact(self, random_unit_vector):
        """Test decode(encode(v)) reproduces every float32 bit pattern."""
        v = random_unit_vector(512, seed=7)
        v[0] = np.float32(1e-38)
        v[1] = np.float32(-0.0)
        decoded = decode_vector(encode_vector(v))
        assert decoded.tobytes() == v.astype(np.float32).tobytes()

    def test_embedding_bytes(self):
        """Test Embedding.to_bytes / from_bytes."""
        e = Embedding("alice", [0.1, -0.2, 0.3], quality=0.7)
        data = e.to_bytes()
        assert len(data) == 12
        restored = Embedding.from_bytes("alice", data, quality=0.7, created_at=e.created_at)
        assert restored == e

    def test_little_endian(self):
        """Test the encoding is little-endian float32."""
        assert encode_vector([1.0]) == b"\x00\x00\x80\x3f"

    def test_truncated_payload(self):
        """Test a payload that is not a whole number of floats is rejected."""
        with pytest.raises(ValueError):
            decode_vector(b"\x00\x00\x80")
