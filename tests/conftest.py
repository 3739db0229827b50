"""
Pytest configuration and shared fixtures for robust position estimation tests.

This module provides reusable fixtures for synthetic source layouts,
fingerprints with and without outliers, and a recording listener.
"""

import sys
from pathlib import Path
from typing import Dict, List

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rpe_core.localization import RobustPositionEstimatorListener
from rpe_core.metrics import reset_metrics
from rpe_core.proto import Fingerprint, RadioSource, RangingReading


# Tolerances used across estimator tests (m)
ABSOLUTE_ERROR = 1e-6
LARGE_ABSOLUTE_ERROR = 0.5

NUM_SOURCES = 150
AREA_HALF_SIZE = 50.0
OUTLIER_RATIO = 0.2
OUTLIER_STD = 10.0
FREQUENCY = 2.4e9


# =============================================================================
# Global State
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own metrics collector."""
    reset_metrics()
    yield


# =============================================================================
# Scenario Helpers
# =============================================================================


def make_scenario(
    dimensions: int,
    seed: int,
    num_sources: int = NUM_SOURCES,
    outlier_ratio: float = 0.0,
    outlier_std: float = OUTLIER_STD,
    noise_std: float = 0.0,
) -> Dict:
    """
    Build a synthetic ranging scenario.

    Sources are uniform in [-50, 50]^dims, distances are exact from the true
    position. A fraction of readings is perturbed by N(0, outlier_std) and
    gets quality score 1 / (1 + |error|); every other reading scores 1.

    Args:
        dimensions: 2 or 3
        seed: Random seed
        num_sources: Number of located sources (one reading each)
        outlier_ratio: Fraction of perturbed readings
        outlier_std: Standard deviation of outlier perturbation (m)
        noise_std: Standard deviation of noise added to every reading (m)

    Returns:
        Dictionary with position, sources, fingerprint, quality_scores and
        the boolean outlier mask.
    """
    rng = np.random.default_rng(seed)
    position = rng.uniform(-AREA_HALF_SIZE, AREA_HALF_SIZE, dimensions)

    sources = []
    readings = []
    scores = []
    outliers = []
    for i in range(num_sources):
        source = RadioSource(
            source_id=f"S{i:03d}",
            frequency=FREQUENCY,
            position=tuple(rng.uniform(-AREA_HALF_SIZE, AREA_HALF_SIZE, dimensions)),
        )
        distance = float(np.linalg.norm(np.asarray(source.position) - position))

        error = 0.0
        is_outlier = rng.random() < outlier_ratio
        if is_outlier:
            error = float(rng.normal(0.0, outlier_std))
        if noise_std > 0:
            error += float(rng.normal(0.0, noise_std))

        sources.append(source)
        readings.append(RangingReading(source, max(distance + error, 0.0)))
        scores.append(1.0 / (1.0 + abs(error)) if is_outlier else 1.0)
        outliers.append(is_outlier)

    return {
        "position": position,
        "sources": sources,
        "fingerprint": Fingerprint(readings),
        "quality_scores": scores,
        "outliers": np.array(outliers),
    }


# =============================================================================
# Scenario Fixtures
# =============================================================================


@pytest.fixture
def scenario_2d() -> Dict:
    """Noiseless 2D scenario with 150 sources."""
    return make_scenario(2, seed=2024)


@pytest.fixture
def scenario_3d() -> Dict:
    """Noiseless 3D scenario with 150 sources."""
    return make_scenario(3, seed=2025)


@pytest.fixture
def outlier_scenario_2d() -> Dict:
    """2D scenario with 20% outliers (std 10 m) and lower quality scores."""
    return make_scenario(2, seed=7, outlier_ratio=OUTLIER_RATIO)


@pytest.fixture
def outlier_scenario_3d() -> Dict:
    """3D scenario with 20% outliers (std 10 m) and lower quality scores."""
    return make_scenario(3, seed=11, outlier_ratio=OUTLIER_RATIO)


@pytest.fixture
def square_sources_2d() -> List[RadioSource]:
    """Four sources on the corners of a 10 m square."""
    corners = [(0.0, 0.0), (10.0, 0.0), (10.0, 10.0), (0.0, 10.0)]
    return [
        RadioSource(f"AP{i}", frequency=FREQUENCY, position=corner)
        for i, corner in enumerate(corners)
    ]


# =============================================================================
# Listener Fixtures
# =============================================================================


class RecordingListener(RobustPositionEstimatorListener):
    """Listener recording every event it receives."""

    def __init__(self):
        self.starts = 0
        self.ends = 0
        self.iterations: List[int] = []
        self.progress: List[float] = []
        self.locked_during_start = None

    def on_estimate_start(self, estimator):
        self.starts += 1
        self.locked_during_start = estimator.is_locked

    def on_estimate_end(self, estimator):
        self.ends += 1

    def on_estimate_next_iteration(self, estimator, iteration):
        self.iterations.append(iteration)

    def on_estimate_progress_change(self, estimator, progress):
        self.progress.append(progress)


@pytest.fixture
def recording_listener() -> RecordingListener:
    """Fresh recording listener."""
    return RecordingListener()
