"""Tests for detection types and face selection helpers."""

import pytest
import numpy as np

from facematch.detection import (
    BaseEmbeddingExtractor,
    BaseFaceDetector,
    DetectedFace,
    best_quality_face,
    crop_face,
    estimate_feature_quality,
    face_score,
    filter_detections,
)


@pytest.fixture
def detection_config(config):
    return config.with_overrides(detection_confidence=0.8, min_face_size=50, max_face_size=150)


class TestDetectedFace:
    """Test cases for DetectedFace."""

    def test_geometry(self):
        """Test bbox, center and size."""
        face = DetectedFace(x=10, y=20, width=60, height=80, confidence=0.9)
        assert face.bbox == (10, 20, 60, 80)
        assert face.center == (40, 60)
        assert face.face_size == 80
        assert face.is_size_valid(50, 100)
        assert not face.is_size_valid(90, 200)

    def test_good_quality(self):
        """Test the quality gate on confidence, pose and eyes."""
        assert DetectedFace(0, 0, 100, 100, confidence=0.9).is_good_quality()
        assert not DetectedFace(0, 0, 100, 100, confidence=0.6).is_good_quality()
        assert not DetectedFace(0, 0, 100, 100, confidence=0.9, yaw=35).is_good_quality()
        assert not DetectedFace(0, 0, 100, 100, confidence=0.9, roll=-31).is_good_quality()
        assert not DetectedFace(
            0, 0, 100, 100, confidence=0.9, left_eye_open=0.1
        ).is_good_quality()
        assert DetectedFace(
            0, 0, 100, 100, confidence=0.9, left_eye_open=0.8, right_eye_open=0.9
        ).is_good_quality()

    def test_interfaces_are_abstract(self):
        """Test base classes cannot be instantiated."""
        with pytest.raises(TypeError):
            BaseFaceDetector()
        with pytest.raises(TypeError):
            BaseEmbeddingExtractor()


class TestSelection:
    """Test cases for filtering and ranking detections."""

    def test_filter_detections(self, detection_config):
        """Test confidence and size gates."""
        faces = [
            DetectedFace(0, 0, 100, 100, confidence=0.95),
            DetectedFace(0, 0, 100, 100, confidence=0.5),
            DetectedFace(0, 0, 20, 20, confidence=0.95),
            DetectedFace(0, 0, 300, 300, confidence=0.95),
        ]
        kept = filter_detections(faces, detection_config)
        assert kept == [faces[0]]

    def test_best_quality_face_prefers_frontal(self, detection_config):
        """Test a frontal face beats a turned one of equal confidence."""
        frontal = DetectedFace(0, 0, 100, 100, confidence=0.9)
        turned = DetectedFace(0, 0, 100, 100, confidence=0.9, yaw=25, roll=10)
        assert best_quality_face([turned, frontal], detection_config) is frontal
        assert face_score(frontal, detection_config) > face_score(turned, detection_config)

    def test_best_quality_face_prefers_mid_size(self, detection_config):
        """Test size closest to the middle of the range wins."""
        mid = DetectedFace(0, 0, 100, 100, confidence=0.9)
        small = DetectedFace(0, 0, 55, 55, confidence=0.9)
        assert best_quality_face([small, mid], detection_config) is mid

    def test_best_quality_face_empty(self, detection_config):
        """Test no faces yields None."""
        assert best_quality_face([], detection_config) is None


class TestCropAndQuality:
    """Test cases for cropping and feature quality estimation."""

    def test_crop_face(self, sample_image):
        """Test crop matches the bounding box."""
        crop = crop_face(sample_image, DetectedFace(10, 20, 50, 40))
        assert crop.shape == (40, 50, 3)
        assert np.array_equal(crop, sample_image[20:60, 10:60])

    def test_crop_face_clipped(self, sample_image):
        """Test crop is clipped to image bounds."""
        crop = crop_face(sample_image, DetectedFace(-10, -10, 50, 50))
        assert crop.shape == (40, 40, 3)

        crop = crop_face(sample_image, DetectedFace(620, 460, 50, 50))
        assert crop.shape == (20, 20, 3)

    def test_crop_face_outside(self, sample_image):
        """Test a box entirely outside the image is rejected."""
        with pytest.raises(ValueError):
            crop_face(sample_image, DetectedFace(700, 500, 10, 10))

    def test_estimate_feature_quality(self):
        """Test variance maps to [0.5, 1.0]."""
        assert estimate_feature_quality(np.zeros(8)) == 0.5
        assert estimate_feature_quality(np.array([1.0, -1.0])) == 1.0
        q = estimate_feature_quality(np.array([0.1, -0.1, 0.1, -0.1]))
        assert q == pytest.approx(0.52)
        assert estimate_feature_quality(np.array([np.nan, 1.0])) == 0.5
