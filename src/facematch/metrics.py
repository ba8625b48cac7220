"""Vector similarity metrics.

Stateless functions over equal-length float sequences. Every pairwise
function raises ``DimensionMismatch`` when the lengths differ. Inputs may be
lists, tuples or numpy arrays; computation happens in float64.
"""

from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import DimensionMismatch

VectorLike = Union[Sequence[float], np.ndarray]

# Norms at or below this are treated as zero
ZERO_NORM_EPSILON = 1e-10


def _as_array(v: VectorLike) -> np.ndarray:
    return np.asarray(v, dtype=np.float64).ravel()


def _pair(a: VectorLike, b: VectorLike) -> Tuple[np.ndarray, np.ndarray]:
    a = _as_array(a)
    b = _as_array(b)
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(a.shape[0], b.shape[0])
    return a, b


def dot(a: VectorLike, b: VectorLike) -> float:
    """Dot product of two vectors."""
    a, b = _pair(a, b)
    return float(np.dot(a, b))


def l2_norm(v: VectorLike) -> float:
    """Euclidean (L2) norm."""
    return float(np.linalg.norm(_as_array(v)))


def l1_norm(v: VectorLike) -> float:
    """Manhattan (L1) norm."""
    return float(np.abs(_as_array(v)).sum())


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Calculate raw cosine similarity between two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Similarity in [-1, 1]; 0.0 if either vector has a ~zero norm
    """
    a, b = _pair(a, b)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)

    if norm_a < ZERO_NORM_EPSILON or norm_b < ZERO_NORM_EPSILON:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def euclidean_distance(a: VectorLike, b: VectorLike) -> float:
    """Euclidean distance between two vectors."""
    a, b = _pair(a, b)
    return float(np.linalg.norm(a - b))


def manhattan_distance(a: VectorLike, b: VectorLike) -> float:
    """Manhattan distance between two vectors."""
    a, b = _pair(a, b)
    return float(np.abs(a - b).sum())


def distance_to_similarity(distance: float, max_distance: float = 1.0) -> float:
    """Map a distance onto a [0, 1] similarity.

    Args:
        distance: Non-negative distance value
        max_distance: Distance that maps to similarity 0

    Returns:
        ``max(0, 1 - distance / max_distance)``
    """
    if max_distance <= 0:
        raise ValueError(f"max_distance must be positive, got {max_distance}")
    return max(0.0, 1.0 - distance / max_distance)


def normalize(v: VectorLike) -> np.ndarray:
    """L2-normalize a vector. A zero vector is returned unchanged."""
    arr = _as_array(v)
    norm = np.linalg.norm(arr)
    if norm < ZERO_NORM_EPSILON:
        return arr.copy()
    return arr / norm


def standardize(v: VectorLike) -> np.ndarray:
    """Rescale to zero mean and unit variance. Constant vectors are returned unchanged."""
    arr = _as_array(v)
    std = arr.std()
    if std == 0:
        return arr.copy()
    return (arr - arr.mean()) / std


def is_valid_vector(v: VectorLike) -> bool:
    """Check that a vector is non-empty and holds only finite values."""
    arr = _as_array(v)
    return arr.size > 0 and bool(np.all(np.isfinite(arr)))


def batch_similarity(target: VectorLike, candidates: Sequence[VectorLike]) -> List[float]:
    """Cosine similarity of ``target`` against each candidate."""
    return [cosine_similarity(target, candidate) for candidate in candidates]


def most_similar(
    target: VectorLike,
    candidates: Sequence[VectorLike],
) -> Optional[Tuple[int, float]]:
    """Find the candidate most similar to ``target``.

    Returns:
        Tuple of (index, cosine similarity), or None if there are no candidates
    """
    if len(candidates) == 0:
        return None

    best_index = 0
    best_similarity = cosine_similarity(target, candidates[0])

    for i in range(1, len(candidates)):
        similarity = cosine_similarity(target, candidates[i])
        if similarity > best_similarity:
            best_similarity = similarity
            best_index = i

    return best_index, best_similarity


def top_similar(
    target: VectorLike,
    candidates: Sequence[VectorLike],
    top_n: int,
) -> List[Tuple[int, float]]:
    """Return the ``top_n`` (index, similarity) pairs, highest similarity first."""
    if len(candidates) == 0 or top_n <= 0:
        return []

    scored = list(enumerate(batch_similarity(target, candidates)))
    return sorted(scored, key=lambda x: x[1], reverse=True)[:top_n]
