"""
Position Estimate Output Schema.

Defines the outputs of a robust estimation run:
- InliersData: per-measurement inlier flags and residual statistics
- PositionEstimate: estimated position, covariance and run summary
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class InliersData:
    """
    Inlier classification produced by the robust loop.

    Attributes:
        inliers: Boolean array, True where the measurement is an inlier
        residuals: Absolute distance residual of each measurement (m)
            against the best candidate
        inlier_threshold: Squared-residual threshold used for classification (m^2)
        best_score: Weighted median of squared residuals of the best candidate (m^2)
        estimated_scale: Robust residual standard deviation estimate (m)

    Notes:
        - One instance per successful estimate() call
        - Replaced on the next call
    """

    inliers: np.ndarray
    residuals: np.ndarray
    inlier_threshold: float
    best_score: float
    estimated_scale: float

    @property
    def num_inliers(self) -> int:
        """Number of measurements classified as inliers."""
        return int(np.count_nonzero(self.inliers))

    @property
    def num_outliers(self) -> int:
        return int(self.inliers.size - self.num_inliers)

    @property
    def inlier_ratio(self) -> float:
        """Fraction of measurements classified as inliers."""
        if self.inliers.size == 0:
            return 0.0
        return self.num_inliers / self.inliers.size

    @property
    def inlier_indices(self) -> np.ndarray:
        return np.flatnonzero(self.inliers)


@dataclass
class PositionEstimate:
    """
    Robust position estimate.

    Attributes:
        position: Estimated position (x, y) or (x, y, z) in meters
        covariance: Position covariance (dims x dims, m^2), None if not kept
            or if it could not be computed
        inliers_data: Inlier classification from the robust loop
        iterations: Number of robust loop iterations executed
        num_measurements: Number of (position, distance) pairs available
        refined: True if the result was re-solved using all inliers
        residual_rms_m: RMS distance residual over inliers (m)
    """

    position: np.ndarray
    covariance: Optional[np.ndarray]
    inliers_data: InliersData
    iterations: int
    num_measurements: int
    refined: bool = False
    residual_rms_m: float = 0.0

    def __post_init__(self):
        """Validate position estimate."""
        if self.iterations < 0:
            raise ValueError(f"Iterations cannot be negative: {self.iterations}")

        if self.residual_rms_m < 0:
            raise ValueError(f"Residual cannot be negative: {self.residual_rms_m}")

    @property
    def dimensions(self) -> int:
        return int(self.position.shape[0])

    @property
    def num_inliers(self) -> int:
        return self.inliers_data.num_inliers

    @property
    def position_std(self) -> Optional[np.ndarray]:
        """Per-axis standard deviations (sqrt of covariance diagonal)."""
        if self.covariance is None:
            return None
        return np.sqrt(np.clip(np.diag(self.covariance), 0.0, None))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        std = self.position_std
        return {
            'position': self.position.tolist(),
            'position_std': std.tolist() if std is not None else None,
            'covariance': self.covariance.tolist() if self.covariance is not None else None,
            'iterations': self.iterations,
            'num_measurements': self.num_measurements,
            'num_inliers': self.num_inliers,
            'refined': self.refined,
            'residual_rms_m': self.residual_rms_m,
            'best_score': self.inliers_data.best_score,
        }
