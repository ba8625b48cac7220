"""Quality weighting of similarity scores.

Embeddings that look less reliable (low extractor confidence, poorly
normalized, or with an implausible value spread) pull the similarity score
down before the match decision. The weight always lies in
[policy.floor, policy.ceiling], [0.5, 1.0] by default.
"""

import math

import numpy as np

from .config import QualityWeighting
from .embedding import Embedding


def norm_health(embedding: Embedding) -> float:
    """Score in [0, 1] of how close the vector norm is to 1.0."""
    return max(0.0, 1.0 - abs(embedding.l2_norm() - 1.0))


def distribution_score(embedding: Embedding, policy: QualityWeighting) -> float:
    """Score the spread of a vector's values against the deadband table.

    The standard deviation is scaled by sqrt(dimension) so that a typical
    unit-norm embedding sits near 1.0 regardless of its length.
    """
    values = embedding.values.astype(np.float64)
    if values.size == 0:
        return 0.0

    spread = float(values.std()) * math.sqrt(values.size)
    for upper, score in policy.distribution_bands:
        if spread <= upper:
            return score
    return policy.noisy_score


def quality_weight(query: Embedding, candidate: Embedding, policy: QualityWeighting) -> float:
    """Combine the quality signals of both embeddings into a single multiplier.

    Args:
        query: Query embedding
        candidate: Gallery embedding
        policy: Weighting coefficients

    Returns:
        Weight within [policy.floor, policy.ceiling]
    """
    quality_avg = (query.effective_quality + candidate.effective_quality) / 2.0
    health_avg = (norm_health(query) + norm_health(candidate)) / 2.0
    distribution_avg = (
        distribution_score(query, policy) + distribution_score(candidate, policy)
    ) / 2.0

    weight = (
        policy.base
        + policy.quality_coef * quality_avg
        + policy.norm_coef * health_avg
        + policy.distribution_coef * distribution_avg
    )
    return min(policy.ceiling, max(policy.floor, weight))
