"""Error kinds and typed exceptions for the matching engine.

Hard operational failures (capacity, unknown identity, bad configuration,
storage) are raised as exceptions. Soft failures inside a comparison are
never raised; they are reported on the result through an ``ErrorKind`` tag.
"""

from enum import Enum
from typing import List, Optional, Sequence


class ErrorKind(Enum):
    """Classification of failures produced by the engine."""
    DIMENSION_MISMATCH = "dimension_mismatch"
    INVALID_VECTOR = "invalid_vector"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    IDENTITY_NOT_FOUND = "identity_not_found"
    VECTOR_COMPUTATION = "vector_computation"
    CONFIGURATION_INVALID = "configuration_invalid"
    STORAGE = "storage"
    NOT_READY = "not_ready"


class FaceMatchError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.STORAGE

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class DimensionMismatch(FaceMatchError, ValueError):
    """Two vectors (or a vector and the configuration) disagree on length."""

    kind = ErrorKind.DIMENSION_MISMATCH

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Vector dimension mismatch: {expected} vs {actual}")
        self.expected = expected
        self.actual = actual


class InvalidVectorError(FaceMatchError, ValueError):
    """Vector contains NaN/Infinity or has a near-zero norm."""

    kind = ErrorKind.INVALID_VECTOR


class CapacityExceeded(FaceMatchError):
    """Enrollment would push the enabled population above capacity."""

    kind = ErrorKind.CAPACITY_EXCEEDED

    def __init__(self, limit: int):
        super().__init__(f"Gallery is full, at most {limit} identities are supported")
        self.limit = limit


class IdentityNotFound(FaceMatchError, KeyError):
    """Operation on an identity that is not enrolled."""

    kind = ErrorKind.IDENTITY_NOT_FOUND

    def __init__(self, identity: str):
        super().__init__(f"No gallery record for identity '{identity}'")
        self.identity = identity

    def __str__(self) -> str:
        return self.args[0]


class VectorComputationError(FaceMatchError):
    """Unexpected arithmetic failure while scoring vectors."""

    kind = ErrorKind.VECTOR_COMPUTATION


class ConfigurationInvalid(FaceMatchError, ValueError):
    """Configuration failed validation at construction time."""

    kind = ErrorKind.CONFIGURATION_INVALID

    def __init__(self, errors: Sequence[str]):
        self.errors: List[str] = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class StorageError(FaceMatchError):
    """Gallery backend failure."""

    kind = ErrorKind.STORAGE


class EngineNotReady(FaceMatchError):
    """Engine used before ``open()`` or after ``close()``."""

    kind = ErrorKind.NOT_READY
