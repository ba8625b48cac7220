"""Local face identity matching.

Compares face embeddings against a bounded gallery of enrolled identities:

- Embedding, metrics: Vector type and similarity/distance functions
- EmbeddingComparator: Quality-weighted match decisions
- GalleryStore: Persistent, capacity-bounded gallery
- FaceMatchEngine: Detect -> extract -> match pipeline
"""

__version__ = "0.1.0"

from .errors import (
    ErrorKind,
    FaceMatchError,
    DimensionMismatch,
    InvalidVectorError,
    CapacityExceeded,
    IdentityNotFound,
    VectorComputationError,
    ConfigurationInvalid,
    StorageError,
    EngineNotReady,
)
from .config import MatchingConfig, QualityWeighting, SimilarityMetric, load_config
from .embedding import Embedding
from .comparator import (
    BatchComparisonResult,
    ComparisonResult,
    EmbeddingComparator,
    SimilarityStats,
)
from .gallery import GalleryRecord, GalleryStats, GalleryStore, SqliteGalleryBackend
from .detection import BaseEmbeddingExtractor, BaseFaceDetector, DetectedFace
from .engine import FaceMatchEngine, RecognitionResult

__all__ = [
    "ErrorKind",
    "FaceMatchError",
    "DimensionMismatch",
    "InvalidVectorError",
    "CapacityExceeded",
    "IdentityNotFound",
    "VectorComputationError",
    "ConfigurationInvalid",
    "StorageError",
    "EngineNotReady",
    "MatchingConfig",
    "QualityWeighting",
    "SimilarityMetric",
    "load_config",
    "Embedding",
    "BatchComparisonResult",
    "ComparisonResult",
    "EmbeddingComparator",
    "SimilarityStats",
    "GalleryRecord",
    "GalleryStats",
    "GalleryStore",
    "SqliteGalleryBackend",
    "BaseEmbeddingExtractor",
    "BaseFaceDetector",
    "DetectedFace",
    "FaceMatchEngine",
    "RecognitionResult",
]
