"""Face detection and embedding extraction interfaces.

Concrete detectors and extractors (MediaPipe, InsightFace, TFLite models,
...) live outside this package; the engine only depends on the two base
classes below and on the selection helpers that gate detections before
extraction.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import MatchingConfig

# Face quality gates
MIN_GOOD_CONFIDENCE = 0.7
MAX_HEAD_ANGLE = 30.0
MIN_EYE_OPEN = 0.3

# Weights of the secondary terms in best_quality_face scoring
SIZE_WEIGHT = 0.3
ANGLE_WEIGHT = 0.2
EYE_WEIGHT = 0.1


@dataclass
class DetectedFace:
    """Represents a detected face with bounding box and pose attributes."""

    x: int
    y: int
    width: int
    height: int
    confidence: float = 1.0
    tracking_id: Optional[int] = None
    yaw: float = 0.0   # Head rotation around the vertical axis, degrees
    roll: float = 0.0  # In-plane rotation, degrees
    left_eye_open: Optional[float] = None
    right_eye_open: Optional[float] = None
    smiling: Optional[float] = None

    @property
    def bbox(self) -> Tuple[int, int, int, int]:
        """Return bounding box as (x, y, w, h)."""
        return (self.x, self.y, self.width, self.height)

    @property
    def center(self) -> Tuple[int, int]:
        """Return center point of bounding box."""
        return (self.x + self.width // 2, self.y + self.height // 2)

    @property
    def face_size(self) -> int:
        """Longest side of the bounding box."""
        return max(self.width, self.height)

    def is_size_valid(self, min_size: int, max_size: int) -> bool:
        return min_size <= self.face_size <= max_size

    def is_good_quality(self) -> bool:
        """Confident, roughly frontal, eyes open (when known)."""
        return (
            self.confidence >= MIN_GOOD_CONFIDENCE
            and abs(self.yaw) < MAX_HEAD_ANGLE
            and abs(self.roll) < MAX_HEAD_ANGLE
            and _eye_open(self.left_eye_open) > MIN_EYE_OPEN
            and _eye_open(self.right_eye_open) > MIN_EYE_OPEN
        )


def _eye_open(probability: Optional[float]) -> float:
    return 1.0 if probability is None else probability


class BaseFaceDetector(ABC):
    """Abstract base class for face detectors."""

    @abstractmethod
    def detect(self, image: np.ndarray) -> List[DetectedFace]:
        """Detect faces in an image.

        Args:
            image: Image as numpy array (H x W or H x W x C)

        Returns:
            List of DetectedFace objects
        """
        pass

    def close(self):
        """Release model resources."""
        pass


class BaseEmbeddingExtractor(ABC):
    """Abstract base class for face embedding extraction."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimensionality of the embedding vector."""
        pass

    @abstractmethod
    def extract(self, face_image: np.ndarray) -> Tuple[np.ndarray, Optional[float]]:
        """Extract an embedding from a cropped face image.

        Args:
            face_image: Cropped face region

        Returns:
            (embedding vector, quality in [0, 1] or None)
        """
        pass

    def close(self):
        """Release model resources."""
        pass


def filter_detections(
    faces: Sequence[DetectedFace],
    config: MatchingConfig,
) -> List[DetectedFace]:
    """Drop detections below the confidence gate or outside the size range."""
    return [
        face
        for face in faces
        if face.confidence >= config.detection_confidence
        and face.is_size_valid(config.min_face_size, config.max_face_size)
    ]


def face_score(face: DetectedFace, config: MatchingConfig) -> float:
    """Rank a detection: confidence plus size, frontal-angle and eye terms."""
    optimal_size = (config.min_face_size + config.max_face_size) / 2
    size_score = 1.0 - abs(face.face_size - optimal_size) / optimal_size
    angle_score = 1.0 - (abs(face.yaw) + abs(face.roll)) / (2 * MAX_HEAD_ANGLE)
    eye_score = (_eye_open(face.left_eye_open) + _eye_open(face.right_eye_open)) / 2

    return (
        face.confidence
        + SIZE_WEIGHT * size_score
        + ANGLE_WEIGHT * angle_score
        + EYE_WEIGHT * eye_score
    )


def best_quality_face(
    faces: Sequence[DetectedFace],
    config: MatchingConfig,
) -> Optional[DetectedFace]:
    """Return the highest-scoring face, or None when there are none."""
    if not faces:
        return None
    return max(faces, key=lambda face: face_score(face, config))


def crop_face(image: np.ndarray, face: DetectedFace) -> np.ndarray:
    """Crop the face region, clipped to the image bounds.

    Raises:
        ValueError: The clipped region is empty
    """
    height, width = image.shape[:2]
    x1 = max(0, face.x)
    y1 = max(0, face.y)
    x2 = min(width, face.x + face.width)
    y2 = min(height, face.y + face.height)

    if x2 <= x1 or y2 <= y1:
        raise ValueError(f"Face region {face.bbox} lies outside image {width}x{height}")

    return image[y1:y2, x1:x2]


def estimate_feature_quality(vector: np.ndarray) -> float:
    """Map the variance of a (normalized) feature vector to [0.5, 1.0]."""
    values = np.asarray(vector, dtype=np.float64).ravel()
    if values.size == 0 or not np.all(np.isfinite(values)):
        return 0.5
    return 0.5 + min(0.5, float(values.var()) * 2.0)
