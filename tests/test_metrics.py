"""Tests for vector similarity metrics."""

import pytest
import numpy as np

from facematch import metrics
from facematch.errors import DimensionMismatch, ErrorKind


class TestPairwiseMetrics:
    """Test cases for pairwise metric functions."""

    def test_cosine_similarity(self):
        """Test cosine similarity of identical, orthogonal and opposite vectors."""
        a = [1.0, 0.0, 0.0]
        assert metrics.cosine_similarity(a, [1.0, 0.0, 0.0]) == pytest.approx(1.0)
        assert metrics.cosine_similarity(a, [0.0, 1.0, 0.0]) == pytest.approx(0.0)
        assert metrics.cosine_similarity(a, [-1.0, 0.0, 0.0]) == pytest.approx(-1.0)

    def test_cosine_self_similarity_is_one(self, random_unit_vector):
        """Test a non-zero vector is maximally similar to itself, at any scale."""
        v = random_unit_vector(128, seed=3) * 7.5
        assert metrics.cosine_similarity(v, v) == pytest.approx(1.0)

    def test_cosine_zero_vector(self):
        """Test a zero vector yields similarity 0 instead of dividing by zero."""
        assert metrics.cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_distances(self):
        """Test Euclidean and Manhattan distances."""
        a = np.array([0.0, 0.0])
        b = np.array([3.0, 4.0])
        assert metrics.euclidean_distance(a, b) == pytest.approx(5.0)
        assert metrics.manhattan_distance(a, b) == pytest.approx(7.0)
        assert metrics.euclidean_distance(b, b) == 0.0

    def test_norms_and_dot(self):
        """Test dot product and norms."""
        v = [3.0, -4.0]
        assert metrics.dot(v, [1.0, 1.0]) == pytest.approx(-1.0)
        assert metrics.l2_norm(v) == pytest.approx(5.0)
        assert metrics.l1_norm(v) == pytest.approx(7.0)

    @pytest.mark.parametrize("fn", [
        metrics.dot,
        metrics.cosine_similarity,
        metrics.euclidean_distance,
        metrics.manhattan_distance,
    ])
    def test_dimension_mismatch(self, fn):
        """Test every pairwise metric rejects unequal lengths."""
        with pytest.raises(DimensionMismatch) as exc_info:
            fn([1.0, 2.0, 3.0], [1.0, 2.0])
        assert exc_info.value.kind is ErrorKind.DIMENSION_MISMATCH
        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2


class TestVectorHelpers:
    """Test cases for normalization and validity helpers."""

    def test_distance_to_similarity(self):
        """Test distance mapping is clamped to [0, 1]."""
        assert metrics.distance_to_similarity(0.0) == 1.0
        assert metrics.distance_to_similarity(0.5, 2.0) == pytest.approx(0.75)
        assert metrics.distance_to_similarity(5.0, 2.0) == 0.0

    def test_distance_to_similarity_invalid_max(self):
        """Test a non-positive max distance is rejected."""
        with pytest.raises(ValueError):
            metrics.distance_to_similarity(1.0, 0.0)

    def test_normalize(self):
        """Test L2 normalization."""
        n = metrics.normalize([3.0, 4.0])
        assert np.linalg.norm(n) == pytest.approx(1.0)
        assert n[0] == pytest.approx(0.6)

    def test_normalize_zero_vector(self):
        """Test zero vector is returned unchanged."""
        n = metrics.normalize([0.0, 0.0, 0.0])
        assert np.array_equal(n, np.zeros(3))

    def test_standardize(self):
        """Test standardization to zero mean and unit variance."""
        s = metrics.standardize([1.0, 2.0, 3.0, 4.0])
        assert s.mean() == pytest.approx(0.0)
        assert s.std() == pytest.approx(1.0)
        assert np.array_equal(metrics.standardize([2.0, 2.0]), np.array([2.0, 2.0]))

    def test_is_valid_vector(self):
        """Test validity rejects empty and non-finite vectors."""
        assert metrics.is_valid_vector([0.1, 0.2])
        assert not metrics.is_valid_vector([])
        assert not metrics.is_valid_vector([1.0, float("nan")])
        assert not metrics.is_valid_vector([float("inf"), 0.0])


class TestSearchHelpers:
    """Test cases for batch similarity helpers."""

    def test_most_similar(self, unit_vectors):
        """Test most similar candidate is found by index."""
        target = [0.9, 0.1, 0.0, 0.0]
        index, similarity = metrics.most_similar(target, unit_vectors)
        assert index == 0
        assert similarity > 0.9

    def test_most_similar_empty(self):
        """Test no candidates yields None."""
        assert metrics.most_similar([1.0, 0.0], []) is None

    def test_top_similar(self, unit_vectors):
        """Test ranking order and truncation."""
        target = [0.8, 0.5, 0.1, 0.0]
        ranked = metrics.top_similar(target, unit_vectors, 2)
        assert [i for i, _ in ranked] == [0, 1]
        assert metrics.top_similar(target, unit_vectors, 0) == []

    def test_batch_similarity(self, unit_vectors):
        """Test one similarity per candidate."""
        sims = metrics.batch_similarity([1.0, 0.0, 0.0, 0.0], unit_vectors)
        assert sims == pytest.approx([1.0, 0.0, 0.0, 0.0])
