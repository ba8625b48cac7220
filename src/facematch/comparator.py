"""Embedding comparison and match decisions.

``EmbeddingComparator`` scores a query embedding against gallery candidates
under the configured metric, applies quality weighting and classifies each
pair against the match threshold. Invalid vectors never abort a batch: they
degrade to a tagged non-matching result.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from . import metrics
from .config import MatchingConfig, SimilarityMetric
from .embedding import Embedding
from .errors import ErrorKind, VectorComputationError
from .quality import quality_weight

logger = logging.getLogger(__name__)

# Euclidean distance between two opposed unit vectors
EUCLIDEAN_MAX_DISTANCE = 2.0


@dataclass
class ComparisonResult:
    """Outcome of scoring one candidate against a query."""

    similarity: float
    distance: float
    is_match: bool
    identity: str
    metric: str
    raw_similarity: float = 0.0
    quality_weight: float = 0.0
    error: Optional[ErrorKind] = None

    @property
    def is_valid(self) -> bool:
        """False when validation rejected one of the vectors, for any error tag."""
        return self.error is None

    @classmethod
    def rejected(cls, identity: str, metric: str, error: ErrorKind) -> "ComparisonResult":
        return cls(
            similarity=0.0,
            distance=math.inf,
            is_match=False,
            identity=identity,
            metric=metric,
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "similarity": self.similarity,
            "raw_similarity": self.raw_similarity,
            "quality_weight": self.quality_weight,
            "distance": self.distance,
            "is_match": self.is_match,
            "metric": self.metric,
            "error": self.error.value if self.error else None,
        }


@dataclass
class BatchComparisonResult:
    """Results of scoring a query against many candidates."""

    results: List[ComparisonResult]
    best_match: Optional[ComparisonResult]
    elapsed_ms: float

    @property
    def has_match(self) -> bool:
        return self.best_match is not None and self.best_match.is_match

    @property
    def match_count(self) -> int:
        return sum(1 for r in self.results if r.is_match)


@dataclass
class SimilarityStats:
    """Distribution of similarities between a query and candidates."""

    count: int = 0
    mean: float = 0.0
    max: float = 0.0
    min: float = 0.0
    variance: float = 0.0
    std_dev: float = 0.0

    def describe(self) -> str:
        return (
            f"count={self.count}, mean={self.mean:.3f}, max={self.max:.3f}, "
            f"min={self.min:.3f}, std={self.std_dev:.3f}"
        )


class EmbeddingComparator:
    """Compares face embeddings under a MatchingConfig."""

    def __init__(self, config: MatchingConfig):
        """Initialize comparator.

        Args:
            config: Validated matching configuration
        """
        self.config = config

    @property
    def metric(self) -> SimilarityMetric:
        return self.config.metric

    @property
    def threshold(self) -> float:
        return self.config.match_threshold

    # -------------------------------------------------------------------------
    # Pairwise comparison
    # -------------------------------------------------------------------------

    def compare(self, query: Embedding, candidate: Embedding) -> ComparisonResult:
        """Score ``candidate`` against ``query`` and classify the pair.

        Args:
            query: Embedding being identified
            candidate: Enrolled embedding

        Returns:
            ComparisonResult; invalid vectors yield a tagged non-match. A vector
            whose length differs from the configured dimension is tagged
            DIMENSION_MISMATCH and every other validation failure is tagged
            INVALID_VECTOR. Use ``is_valid`` to catch both.

        Raises:
            VectorComputationError: Arithmetic failed after validation
        """
        metric_name = self.metric.value

        for embedding in (query, candidate):
            error = embedding.validate(self.config.dimension, self.config.min_vector_norm)
            if error is not None:
                logger.debug(
                    f"Rejected {error.value} vector for '{embedding.identity}' "
                    f"(dimension {embedding.dimension})"
                )
                return ComparisonResult.rejected(candidate.identity, metric_name, error)

        try:
            with np.errstate(over="raise", invalid="raise", divide="raise"):
                raw_similarity, distance = self._score(query, candidate)
                weight = quality_weight(query, candidate, self.config.quality)
                similarity = raw_similarity * weight
        except Exception as e:
            raise VectorComputationError(
                f"Failed to compare '{query.identity}' with '{candidate.identity}'", e
            ) from e

        if not math.isfinite(similarity):
            raise VectorComputationError(
                f"Non-finite similarity comparing '{query.identity}' with '{candidate.identity}'"
            )

        return ComparisonResult(
            similarity=similarity,
            distance=distance,
            is_match=similarity >= self.config.match_threshold,
            identity=candidate.identity,
            metric=metric_name,
            raw_similarity=raw_similarity,
            quality_weight=weight,
        )

    def _score(self, query: Embedding, candidate: Embedding) -> Tuple[float, float]:
        """Return (raw similarity in [0, 1], metric distance)."""
        if self.metric is SimilarityMetric.COSINE:
            similarity = min(1.0, max(0.0, metrics.cosine_similarity(query.values, candidate.values)))
            return similarity, 1.0 - similarity

        if self.metric is SimilarityMetric.EUCLIDEAN:
            distance = metrics.euclidean_distance(query.values, candidate.values)
            return metrics.distance_to_similarity(distance, EUCLIDEAN_MAX_DISTANCE), distance

        distance = metrics.manhattan_distance(query.values, candidate.values)
        return metrics.distance_to_similarity(distance, float(query.dimension)), distance

    def verify(self, first: Embedding, second: Embedding) -> bool:
        """1:1 verification: do both embeddings belong to the same person?"""
        return self.compare(first, second).is_match

    # -------------------------------------------------------------------------
    # 1:N search
    # -------------------------------------------------------------------------

    def _compare_all(
        self,
        query: Embedding,
        candidates: Sequence[Embedding],
    ) -> List[ComparisonResult]:
        return [self.compare(query, candidate) for candidate in candidates]

    def find_best_match(
        self,
        query: Embedding,
        candidates: Sequence[Embedding],
    ) -> Optional[ComparisonResult]:
        """Return the highest-similarity result, or None for no candidates.

        Ties keep the earliest candidate.
        """
        if not candidates:
            return None

        start = time.perf_counter()
        results = self._compare_all(query, candidates)
        best = max(results, key=lambda r: r.similarity)

        if self.config.debug_logging:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.info(
                f"Best match search over {len(candidates)} candidates took {elapsed_ms:.2f}ms, "
                f"best={best.identity} ({best.similarity:.3f})"
            )
        return best

    def top_matches(
        self,
        query: Embedding,
        candidates: Sequence[Embedding],
        k: int = 5,
    ) -> List[ComparisonResult]:
        """Return the ``k`` most similar results, highest first.

        The sort is stable, so equal similarities keep candidate order.
        """
        if k <= 0:
            return []
        results = self._compare_all(query, candidates)
        return sorted(results, key=lambda r: r.similarity, reverse=True)[:k]

    def batch_compare(
        self,
        query: Embedding,
        candidates: Sequence[Embedding],
        return_all: bool = False,
    ) -> BatchComparisonResult:
        """Compare against all candidates.

        Args:
            query: Embedding being identified
            candidates: Gallery embeddings
            return_all: Keep non-matching results as well

        Returns:
            BatchComparisonResult sorted by similarity, descending
        """
        start = time.perf_counter()

        all_results = self._compare_all(query, candidates)
        kept = all_results if return_all else [r for r in all_results if r.is_match]
        best = max(all_results, key=lambda r: r.similarity) if all_results else None
        elapsed_ms = (time.perf_counter() - start) * 1000

        if self.config.debug_logging:
            logger.info(
                f"Batch compare finished in {elapsed_ms:.2f}ms: "
                f"{len(candidates)} candidates, {sum(r.is_match for r in kept)} matches"
            )

        return BatchComparisonResult(
            results=sorted(kept, key=lambda r: r.similarity, reverse=True),
            best_match=best,
            elapsed_ms=elapsed_ms,
        )

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def similarity_stats(
        self,
        query: Embedding,
        candidates: Sequence[Embedding],
    ) -> SimilarityStats:
        """Summarize the similarity distribution of ``query`` against candidates."""
        if not candidates:
            return SimilarityStats()

        similarities = np.array(
            [r.similarity for r in self._compare_all(query, candidates)], dtype=np.float64
        )
        variance = float(similarities.var())
        return SimilarityStats(
            count=int(similarities.size),
            mean=float(similarities.mean()),
            max=float(similarities.max()),
            min=float(similarities.min()),
            variance=variance,
            std_dev=math.sqrt(variance),
        )

    def dynamic_threshold(self, candidates: Sequence[Embedding]) -> float:
        """Suggest a per-identity threshold from same-identity samples.

        Uses the pairwise similarities of all candidate pairs:
        clamp(mean + sigmas * std, match_threshold, ceiling). Falls back to
        the configured threshold when fewer than two samples are given or the
        computation fails.
        """
        threshold = self.config.match_threshold
        if len(candidates) < 2:
            return threshold

        try:
            similarities = [
                self.compare(candidates[i], candidates[j]).similarity
                for i in range(len(candidates))
                for j in range(i + 1, len(candidates))
            ]
            if not similarities:
                return threshold

            values = np.array(similarities, dtype=np.float64)
            proposed = float(values.mean() + self.config.dynamic_threshold_sigmas * values.std())
        except Exception as e:
            logger.warning(f"Dynamic threshold estimation failed, using {threshold}: {e}")
            return threshold

        if not math.isfinite(proposed):
            return threshold

        ceiling = max(threshold, self.config.dynamic_threshold_ceiling)
        return max(threshold, min(ceiling, proposed))
