"""Embedding data model.

An ``Embedding`` is the transient form of an identity signature: a label,
a float32 vector, an optional quality score and timestamps. It is what the
extractor produces and what the comparator scores.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Sequence, Union

import numpy as np

from . import metrics
from .errors import DimensionMismatch, ErrorKind

# Quality assumed when the extractor reports none
DEFAULT_QUALITY = 1.0

# Serialized vectors are little-endian IEEE-754 float32
VECTOR_DTYPE = np.dtype("<f4")


@dataclass(eq=False)
class Embedding:
    """Face embedding with identity and metadata."""

    identity: str
    values: np.ndarray
    quality: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.values = np.asarray(self.values, dtype=np.float32).ravel()
        if self.quality is not None:
            self.quality = float(self.quality)
            if not 0.0 <= self.quality <= 1.0:
                raise ValueError(f"quality must be within [0, 1], got {self.quality}")
        if self.updated_at is None:
            self.updated_at = self.created_at
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not precede created_at")

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def zeros(cls, identity: str, dimension: int) -> "Embedding":
        """Create an all-zero embedding."""
        return cls(identity, np.zeros(dimension, dtype=np.float32))

    @classmethod
    def random(
        cls,
        identity: str,
        dimension: int,
        rng: Optional[np.random.Generator] = None,
    ) -> "Embedding":
        """Create an embedding with values uniformly drawn from [-1, 1]."""
        rng = rng or np.random.default_rng()
        return cls(identity, rng.uniform(-1.0, 1.0, dimension).astype(np.float32))

    @classmethod
    def from_bytes(
        cls,
        identity: str,
        data: bytes,
        quality: Optional[float] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> "Embedding":
        """Restore an embedding from its serialized vector."""
        created_at = created_at or datetime.now()
        return cls(
            identity=identity,
            values=decode_vector(data),
            quality=quality,
            created_at=created_at,
            updated_at=updated_at,
        )

    def to_bytes(self) -> bytes:
        """Serialize the vector for storage."""
        return encode_vector(self.values)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        return int(self.values.shape[0])

    @property
    def effective_quality(self) -> float:
        """Quality score, or the neutral default when none was reported."""
        return DEFAULT_QUALITY if self.quality is None else self.quality

    def validate(self, dimension: int, min_norm: float = 1e-6) -> Optional[ErrorKind]:
        """Check the invariants required for matching.

        Args:
            dimension: Expected vector length
            min_norm: Smallest acceptable L2 norm

        Returns:
            None if valid, otherwise the violated ErrorKind
        """
        if self.dimension != dimension:
            return ErrorKind.DIMENSION_MISMATCH
        if not metrics.is_valid_vector(self.values):
            return ErrorKind.INVALID_VECTOR
        if self.l2_norm() <= min_norm:
            return ErrorKind.INVALID_VECTOR
        return None

    def is_valid(self, dimension: int, min_norm: float = 1e-6) -> bool:
        return self.validate(dimension, min_norm) is None

    # ------------------------------------------------------------------
    # Vector algebra
    # ------------------------------------------------------------------

    def dot(self, other: "Embedding") -> float:
        return metrics.dot(self.values, other.values)

    def l2_norm(self) -> float:
        return metrics.l2_norm(self.values)

    def l1_norm(self) -> float:
        return metrics.l1_norm(self.values)

    def cosine_similarity(self, other: "Embedding") -> float:
        return metrics.cosine_similarity(self.values, other.values)

    def euclidean_distance(self, other: "Embedding") -> float:
        return metrics.euclidean_distance(self.values, other.values)

    def manhattan_distance(self, other: "Embedding") -> float:
        return metrics.manhattan_distance(self.values, other.values)

    def normalized(self) -> "Embedding":
        """Return a copy with an L2-normalized vector."""
        return replace(self, values=metrics.normalize(self.values))

    def is_normalized(self, tolerance: float = 1e-6) -> bool:
        return abs(self.l2_norm() - 1.0) < tolerance

    def __add__(self, other: "Embedding") -> "Embedding":
        self._check_dimension(other)
        return Embedding(f"{self.identity}_plus_{other.identity}", self.values + other.values)

    def __sub__(self, other: "Embedding") -> "Embedding":
        self._check_dimension(other)
        return Embedding(f"{self.identity}_minus_{other.identity}", self.values - other.values)

    def __mul__(self, scalar: float) -> "Embedding":
        return replace(self, values=self.values * float(scalar))

    __rmul__ = __mul__

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Embedding):
            return NotImplemented
        return (
            self.identity == other.identity
            and self.quality == other.quality
            and self.created_at == other.created_at
            and np.array_equal(self.values, other.values)
        )

    def __repr__(self) -> str:
        return (
            f"Embedding(identity={self.identity!r}, dimension={self.dimension}, "
            f"quality={self.quality}, created_at={self.created_at.isoformat()})"
        )

    def _check_dimension(self, other: "Embedding"):
        if self.dimension != other.dimension:
            raise DimensionMismatch(self.dimension, other.dimension)


def encode_vector(values: Union[Sequence[float], np.ndarray]) -> bytes:
    """Serialize a vector to little-endian float32 bytes."""
    return np.asarray(values).astype(VECTOR_DTYPE).tobytes()


def decode_vector(data: bytes) -> np.ndarray:
    """Deserialize bytes written by ``encode_vector``."""
    if len(data) % VECTOR_DTYPE.itemsize:
        raise ValueError(f"Vector payload of {len(data)} bytes is not a whole number of floats")
    return np.frombuffer(data, dtype=VECTOR_DTYPE).astype(np.float32)
