"""Pytest configuration and fixtures."""

import pytest
import numpy as np
import sys
from datetime import datetime, timedelta
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from facematch.config import MatchingConfig  # noqa: E402


@pytest.fixture
def config():
    """Small 4-d configuration with an in-memory database."""
    return MatchingConfig(
        dimension=4,
        capacity=3,
        match_threshold=0.8,
        database_path=":memory:",
    )


@pytest.fixture
def unit_vectors():
    """The four 4-d basis vectors."""
    return [np.eye(4, dtype=np.float32)[i] for i in range(4)]


@pytest.fixture
def random_unit_vector():
    """Factory for seeded random unit vectors."""
    def make(dimension=4, seed=0):
        rng = np.random.default_rng(seed)
        v = rng.normal(size=dimension).astype(np.float32)
        return v / np.linalg.norm(v)
    return make


class FakeClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sample_image():
    """Create a sample test image."""
    return np.random.randint(0, 255, (480, 640, 3), dtype=np.uint8)
