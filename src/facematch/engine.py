"""Face matching engine.

Ties a detector, an embedding extractor, the comparator and the gallery
store together into the register / recognize pipeline:

    image -> detect -> gate -> crop -> extract -> normalize -> match | enroll

Components are passed in explicitly; the engine must be opened before use.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

import numpy as np

from .comparator import ComparisonResult, EmbeddingComparator
from .config import MatchingConfig
from .detection import (
    BaseEmbeddingExtractor,
    BaseFaceDetector,
    DetectedFace,
    crop_face,
    filter_detections,
)
from .embedding import Embedding
from .errors import ConfigurationInvalid, EngineNotReady, FaceMatchError
from .gallery import GalleryStore

logger = logging.getLogger(__name__)

QUERY_IDENTITY = "query"


@dataclass
class RecognitionResult:
    """Outcome of a register or recognize call."""

    is_success: bool
    identity: Optional[str] = None
    confidence: float = 0.0
    error_message: Optional[str] = None
    processing_time_ms: float = 0.0
    detected_face_count: int = 0
    extras: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(
        cls,
        identity: str,
        confidence: float,
        processing_time_ms: float = 0.0,
        detected_face_count: int = 1,
        extras: Optional[Dict[str, Any]] = None,
    ) -> "RecognitionResult":
        return cls(
            is_success=True,
            identity=identity,
            confidence=confidence,
            processing_time_ms=processing_time_ms,
            detected_face_count=detected_face_count,
            extras=dict(extras or {}),
        )

    @classmethod
    def failure(
        cls,
        error_message: str,
        processing_time_ms: float = 0.0,
        detected_face_count: int = 0,
        extras: Optional[Dict[str, Any]] = None,
    ) -> "RecognitionResult":
        return cls(
            is_success=False,
            error_message=error_message,
            processing_time_ms=processing_time_ms,
            detected_face_count=detected_face_count,
            extras=dict(extras or {}),
        )

    @classmethod
    def no_match(
        cls,
        processing_time_ms: float = 0.0,
        detected_face_count: int = 1,
        extras: Optional[Dict[str, Any]] = None,
    ) -> "RecognitionResult":
        return cls.failure(
            "No matching face found",
            processing_time_ms=processing_time_ms,
            detected_face_count=detected_face_count,
            extras=extras,
        )

    @classmethod
    def no_face_detected(
        cls,
        processing_time_ms: float = 0.0,
        extras: Optional[Dict[str, Any]] = None,
    ) -> "RecognitionResult":
        return cls.failure("No face detected", processing_time_ms=processing_time_ms, extras=extras)

    @classmethod
    def multiple_faces_detected(
        cls,
        detected_face_count: int,
        processing_time_ms: float = 0.0,
        extras: Optional[Dict[str, Any]] = None,
    ) -> "RecognitionResult":
        return cls.failure(
            f"Detected {detected_face_count} faces, expected exactly one",
            processing_time_ms=processing_time_ms,
            detected_face_count=detected_face_count,
            extras=extras,
        )

    @classmethod
    def from_comparison(
        cls,
        comparison: ComparisonResult,
        processing_time_ms: float = 0.0,
    ) -> "RecognitionResult":
        """Convert the best comparator result into a recognition outcome."""
        if comparison.is_match:
            return cls.success(
                identity=comparison.identity,
                confidence=comparison.similarity,
                processing_time_ms=processing_time_ms,
                extras={"distance": comparison.distance, "metric": comparison.metric},
            )
        return cls.no_match(
            processing_time_ms=processing_time_ms,
            extras={
                "best_similarity": comparison.similarity,
                "best_identity": comparison.identity,
                "metric": comparison.metric,
            },
        )

    def describe(self) -> str:
        if self.is_success:
            return f"Recognized {self.identity} (confidence {self.confidence:.2f})"
        if self.error_message:
            return f"Recognition failed: {self.error_message}"
        return "Unknown error"

    def is_confidence_above(self, threshold: float) -> bool:
        return self.confidence >= threshold

    @property
    def formatted_processing_time(self) -> str:
        ms = self.processing_time_ms
        if ms < 1000:
            return f"{ms:.0f}ms"
        if ms < 60000:
            return f"{ms / 1000:.1f}s"
        return f"{ms / 60000:.1f}min"

    def with_extra(self, key: str, value: Any) -> "RecognitionResult":
        """Return a copy with one extra entry added."""
        return replace(self, extras={**self.extras, key: value})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.is_success,
            "identity": self.identity,
            "confidence": self.confidence,
            "error_message": self.error_message,
            "processing_time_ms": self.processing_time_ms,
            "detected_face_count": self.detected_face_count,
            "extras": dict(self.extras),
        }


class FaceMatchEngine:
    """Face registration and recognition over a local gallery.

    Usage:
        async with FaceMatchEngine(config, store, detector, extractor) as engine:
            await engine.register(image, "alice")
            result = await engine.recognize(image)
    """

    def __init__(
        self,
        config: MatchingConfig,
        store: GalleryStore,
        detector: BaseFaceDetector,
        extractor: BaseEmbeddingExtractor,
        comparator: Optional[EmbeddingComparator] = None,
    ):
        """Initialize engine.

        Args:
            config: Matching configuration
            store: Gallery of enrolled identities
            detector: Face detector
            extractor: Embedding extractor producing config.dimension vectors
            comparator: Comparator, built from config when omitted
        """
        self.config = config
        self.store = store
        self.detector = detector
        self.extractor = extractor
        self.comparator = comparator or EmbeddingComparator(config)
        self._is_open = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self):
        """Check component compatibility and mark the engine ready.

        Raises:
            ConfigurationInvalid: Extractor dimension differs from config
        """
        if self._is_open:
            return
        if self.extractor.dimension != self.config.dimension:
            raise ConfigurationInvalid([
                f"extractor produces {self.extractor.dimension}-d embeddings, "
                f"config expects {self.config.dimension}"
            ])
        self._is_open = True
        logger.info(
            f"Face match engine ready (dimension={self.config.dimension}, "
            f"capacity={self.config.capacity}, metric={self.config.metric.value})"
        )

    def close(self):
        """Release detector, extractor and store."""
        if not self._is_open:
            return
        self._is_open = False
        self.detector.close()
        self.extractor.close()
        self.store.close()
        logger.info("Face match engine closed")

    async def __aenter__(self) -> "FaceMatchEngine":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    def _ensure_open(self):
        if not self._is_open:
            raise EngineNotReady("Engine is not open; call open() first")

    # -------------------------------------------------------------------------
    # Pipeline steps
    # -------------------------------------------------------------------------

    async def _detect(self, image: np.ndarray):
        faces = await asyncio.to_thread(self.detector.detect, image)
        return filter_detections(faces, self.config)

    async def _extract(self, image: np.ndarray, face: DetectedFace, identity: str) -> Embedding:
        crop = crop_face(image, face)
        vector, quality = await asyncio.to_thread(self.extractor.extract, crop)
        return Embedding(identity, vector, quality).normalized()

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def register(
        self,
        image: np.ndarray,
        identity: str,
        remarks: Optional[str] = None,
        attachment: Optional[bytes] = None,
    ) -> RecognitionResult:
        """Detect the single face in ``image`` and enroll it as ``identity``."""
        self._ensure_open()
        start = time.perf_counter()

        try:
            faces = await self._detect(image)
            if not faces:
                return RecognitionResult.no_face_detected(self._elapsed_ms(start))
            if len(faces) > 1:
                return RecognitionResult.multiple_faces_detected(
                    len(faces), self._elapsed_ms(start)
                )

            face = faces[0]
            embedding = await self._extract(image, face, identity)
            record_id = await self.store.enroll_embedding(
                embedding, remarks=remarks, attachment=attachment
            )
        except (FaceMatchError, ValueError) as e:
            logger.warning(f"Registration of {identity} failed: {e}")
            return RecognitionResult.failure(str(e), self._elapsed_ms(start))

        elapsed_ms = self._elapsed_ms(start)
        if self.config.debug_logging:
            logger.info(f"Registered {identity} as record {record_id} in {elapsed_ms:.1f}ms")

        return RecognitionResult.success(
            identity=identity,
            confidence=embedding.effective_quality,
            processing_time_ms=elapsed_ms,
            extras={
                "record_id": record_id,
                "face_size": face.face_size,
                "good_quality": face.is_good_quality(),
            },
        )

    async def recognize(self, image: np.ndarray) -> RecognitionResult:
        """Identify the single face in ``image`` against the gallery."""
        self._ensure_open()
        start = time.perf_counter()

        try:
            faces = await self._detect(image)
            if not faces:
                return RecognitionResult.no_face_detected(self._elapsed_ms(start))
            if len(faces) > 1:
                return RecognitionResult.multiple_faces_detected(
                    len(faces), self._elapsed_ms(start)
                )

            face = faces[0]
            query = await self._extract(image, face, QUERY_IDENTITY)
        except (FaceMatchError, ValueError) as e:
            logger.warning(f"Recognition failed: {e}")
            return RecognitionResult.failure(str(e), self._elapsed_ms(start), detected_face_count=1)

        result = await self._identify(query, start)
        return result.with_extra("face_size", face.face_size)

    async def identify(self, embedding: Embedding) -> RecognitionResult:
        """Match an already extracted embedding against the gallery."""
        self._ensure_open()
        return await self._identify(embedding, time.perf_counter())

    async def _identify(self, query: Embedding, start: float) -> RecognitionResult:
        try:
            candidates = await self.store.candidates()
            if not candidates:
                return RecognitionResult.failure(
                    "No enrolled faces", self._elapsed_ms(start), detected_face_count=1
                )

            best = self.comparator.find_best_match(query, candidates)
        except FaceMatchError as e:
            logger.warning(f"Identification failed: {e}")
            return RecognitionResult.failure(str(e), self._elapsed_ms(start), detected_face_count=1)

        elapsed_ms = self._elapsed_ms(start)
        if self.config.debug_logging:
            logger.info(
                f"Identification over {len(candidates)} candidates took {elapsed_ms:.1f}ms: "
                f"{best.identity} ({best.similarity:.3f}, match={best.is_match})"
            )

        return (
            RecognitionResult.from_comparison(best, elapsed_ms)
            .with_extra("registered_count", len(candidates))
            .with_extra("threshold", self.config.match_threshold)
        )

    async def status(self) -> Dict[str, Any]:
        """Summary of engine state for diagnostics."""
        status: Dict[str, Any] = {
            "is_open": self._is_open,
            "config": self.config.to_dict(),
            "capacity": self.config.capacity,
        }
        if not self._is_open:
            return status

        stats = await self.store.stats()
        status.update({
            "face_count": stats.enabled_count,
            "remaining_capacity": max(0, self.config.capacity - stats.enabled_count),
            "gallery": stats.to_dict(),
            "extractor_dimension": self.extractor.dimension,
        })
        return status
