"""
PROMedS Robust Lateration.

Binds the generic PROMedS loop to lateration:
- candidates are LaterationResult objects solved on sampled subsets
- residual of measurement i is | |x - p_i| - d_i |
- after the loop, the best candidate is optionally re-solved on all inliers

Usage:
    solver = PROMedSRobustLaterationSolver(config, dimensions=2)
    estimate = solver.solve(measurements)
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from rpe_core.errors import ConfigurationError, LaterationError, NotReadyError
from rpe_core.localization.lateration import (
    LaterationResult,
    LaterationSolver,
    NonLinearLaterationSolver,
    min_required_positions,
)
from rpe_core.localization.measurements import MeasurementSet
from rpe_core.localization.measurements import (
    DEFAULT_FALLBACK_DISTANCE_STANDARD_DEVIATION,
)
from rpe_core.localization.promeds import (
    DEFAULT_CONFIDENCE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROGRESS_DELTA,
    DEFAULT_STOP_THRESHOLD,
    PROMedSRobustEstimator,
)
from rpe_core.localization.subset_sampler import QualityScoreSubsetSampler
from rpe_core.metrics import get_metrics
from rpe_core.proto.position_estimate import InliersData, PositionEstimate

logger = logging.getLogger(__name__)


@dataclass
class RobustLaterationConfig:
    """
    Configuration for PROMedS robust lateration.

    Attributes:
        stop_threshold: Stop once the best score drops to this value (m^2, > 0)
        confidence: Probability that at least one outlier-free subset is drawn
        max_iterations: Hard cap on robust loop iterations
        progress_delta: Minimum progress change between progress callbacks
        preliminary_subset_size: Measurements per subset (None = dims + 1)
        radio_source_position_covariance_used: Fold source position
            uncertainty into distance standard deviations
        linear_solver_used: Solve subsets linearly before refinement
        homogeneous_linear_solver_used: Use the homogeneous linear solver
        preliminary_solution_refined: Refine each subset solution non-linearly
        result_refined: Re-solve the best candidate on all inliers
        covariance_kept: Compute and keep the position covariance
        evenly_distribute_readings: Avoid repeating a source within a subset
        fallback_distance_standard_deviation: Std (m) used when unknown
        random_seed: Seed for subset sampling (None = nondeterministic)
    """

    stop_threshold: float = DEFAULT_STOP_THRESHOLD
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    preliminary_subset_size: Optional[int] = None
    radio_source_position_covariance_used: bool = False
    linear_solver_used: bool = True
    homogeneous_linear_solver_used: bool = False
    preliminary_solution_refined: bool = True
    result_refined: bool = True
    covariance_kept: bool = True
    evenly_distribute_readings: bool = True
    fallback_distance_standard_deviation: float = DEFAULT_FALLBACK_DISTANCE_STANDARD_DEVIATION
    random_seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        if not self.stop_threshold > 0:
            raise ConfigurationError(f"stop_threshold must be positive: {self.stop_threshold}")

        if not 0.0 <= self.confidence <= 1.0:
            raise ConfigurationError(f"confidence must be in [0, 1]: {self.confidence}")

        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1: {self.max_iterations}")

        if not 0.0 <= self.progress_delta <= 1.0:
            raise ConfigurationError(f"progress_delta must be in [0, 1]: {self.progress_delta}")

        if self.preliminary_subset_size is not None and self.preliminary_subset_size < 3:
            raise ConfigurationError(
                f"preliminary_subset_size must be >= 3: {self.preliminary_subset_size}"
            )

        if not self.fallback_distance_standard_deviation >= 0:
            raise ConfigurationError(
                "fallback_distance_standard_deviation cannot be negative: "
                f"{self.fallback_distance_standard_deviation}"
            )


def range_residuals(position: np.ndarray, measurements: MeasurementSet) -> np.ndarray:
    """Absolute difference between geometric and measured distances (m)."""
    ranges = np.linalg.norm(measurements.positions - position, axis=1)
    return np.abs(ranges - measurements.distances)


class PROMedSRobustLaterationSolver:
    """
    Robust lateration on a MeasurementSet.

    Notes:
        - Preliminary subsets are solved with LaterationSolver using the
          configured linear/homogeneous/refine flags
        - Final refinement needs at least dims + 1 inliers; otherwise, or if
          it fails, the best candidate is returned without covariance
    """

    def __init__(
        self,
        config: Optional[RobustLaterationConfig] = None,
        dimensions: int = 2,
        initial_position=None,
        rng: Optional[np.random.Generator] = None,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ):
        self.config = config or RobustLaterationConfig()
        self.dimensions = dimensions
        self.initial_position = initial_position
        self.rng = rng if rng is not None else np.random.default_rng(self.config.random_seed)
        self.on_iteration = on_iteration
        self.on_progress = on_progress
        self.metrics = get_metrics()

        self.nonlinear_solver = NonLinearLaterationSolver()
        self.preliminary_solver = LaterationSolver(
            dimensions,
            linear_solver_used=self.config.linear_solver_used,
            homogeneous_linear_solver_used=self.config.homogeneous_linear_solver_used,
            refine_solution=self.config.preliminary_solution_refined,
            keep_covariance=self.config.covariance_kept and not self.config.result_refined,
            nonlinear_solver=self.nonlinear_solver,
        )

    @property
    def subset_size(self) -> int:
        if self.config.preliminary_subset_size is None:
            return min_required_positions(self.dimensions)
        return self.config.preliminary_subset_size

    def solve(self, measurements: MeasurementSet) -> PositionEstimate:
        """
        Run the robust estimation on a measurement snapshot.

        Args:
            measurements: Flattened measurements (read-only for the whole run)

        Returns:
            PositionEstimate

        Raises:
            NotReadyError: Too few measurements or wrong dimensionality
            RobustEstimationError: No usable candidate
        """
        n = measurements.num_measurements
        subset_size = self.subset_size

        if n > 0 and measurements.dimensions != self.dimensions:
            raise NotReadyError(
                f"Expected {self.dimensions}D measurements, got {measurements.dimensions}D"
            )
        if subset_size < min_required_positions(self.dimensions) or n < subset_size:
            raise NotReadyError(
                f"Need at least {max(subset_size, min_required_positions(self.dimensions))} "
                f"measurements, got {n}"
            )

        def solve_subset(indices: np.ndarray) -> LaterationResult:
            subset = measurements.subset(indices)
            return self.preliminary_solver.solve(
                subset.positions,
                subset.distances,
                subset.distance_standard_deviations,
                initial_position=self.initial_position,
            )

        def residuals_of(candidate: LaterationResult) -> np.ndarray:
            return range_residuals(candidate.position, measurements)

        sampler = QualityScoreSubsetSampler(
            measurements.quality_scores,
            measurements.source_indices,
            evenly_distribute_readings=self.config.evenly_distribute_readings,
            rng=self.rng,
        )

        estimator = PROMedSRobustEstimator(
            num_samples=n,
            subset_size=subset_size,
            quality_scores=measurements.quality_scores,
            preliminary_solver=solve_subset,
            residuals=residuals_of,
            sampler=sampler,
            stop_threshold=self.config.stop_threshold,
            confidence=self.config.confidence,
            max_iterations=self.config.max_iterations,
            progress_delta=self.config.progress_delta,
            on_iteration=self.on_iteration,
            on_progress=self.on_progress,
        )
        result = estimator.estimate()

        inliers_data = InliersData(
            inliers=result.inliers,
            residuals=result.residuals,
            inlier_threshold=result.inlier_threshold,
            best_score=result.best_score,
            estimated_scale=result.estimated_scale,
        )

        candidate = result.candidate
        position = candidate.position
        covariance = candidate.covariance if self.config.covariance_kept else None
        refined = False

        if self.config.result_refined:
            refined_result = self._refine(measurements, result.inliers, candidate)
            if refined_result is not None:
                position = refined_result.position
                covariance = refined_result.covariance
                refined = True
            else:
                covariance = None

        residuals = range_residuals(position, measurements)[result.inliers]
        rms = float(np.sqrt(np.mean(residuals ** 2))) if residuals.size else 0.0

        return PositionEstimate(
            position=np.asarray(position, dtype=float),
            covariance=covariance,
            inliers_data=inliers_data,
            iterations=result.iterations,
            num_measurements=n,
            refined=refined,
            residual_rms_m=rms,
        )

    def _refine(
        self,
        measurements: MeasurementSet,
        inliers: np.ndarray,
        candidate: LaterationResult,
    ) -> Optional[LaterationResult]:
        """Re-solve on all inliers seeded with the candidate; None on failure."""
        indices = np.flatnonzero(inliers)
        if indices.size < min_required_positions(self.dimensions):
            logger.debug("Only %d inliers, keeping best candidate", indices.size)
            self.metrics.increment_drop('refine_failed')
            return None

        subset = measurements.subset(indices)
        try:
            return self.nonlinear_solver.solve(
                subset.positions,
                subset.distances,
                subset.distance_standard_deviations,
                initial_position=candidate.position,
                compute_covariance=self.config.covariance_kept,
            )
        except LaterationError as e:
            logger.info("Refinement on %d inliers failed: %s", indices.size, e)
            self.metrics.increment_drop('refine_failed')
            return None
