"""
PROMedS Robust Estimation Loop.

Progressive robust median of squares: a RANSAC-style loop where subsets are
drawn with a quality-score bias and each candidate is scored by the
quality-weighted median of its squared residuals over all measurements.

The loop is generic over the model. It only needs:
- a sampler producing subsets of measurement indices
- preliminary_solver(indices) -> candidate or None
- residuals(candidate) -> absolute residual per measurement

Loop state lives in an explicit PROMedSState object passed to _step(), so a
single run never depends on hidden instance mutation.

Stop criteria:
- max_iterations reached
- adaptive bound log(1 - confidence) / log(1 - w ** subset_size) reached,
  w being the inlier ratio of the best candidate, at most 0.5
- best score <= stop_threshold
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np

from rpe_core.errors import ConfigurationError, LaterationError, RobustEstimationError
from rpe_core.localization.subset_sampler import QualityScoreSubsetSampler
from rpe_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# Consistency factor of the median absolute deviation for Gaussian noise
MAD_CONSISTENCY = 1.4826

# Residual scale multiplier for inlier classification
INLIER_FACTOR = 2.5

# Smallest residual (m) an inlier threshold can represent
MIN_INLIER_THRESHOLD = 1e-6

# Largest inlier ratio the adaptive bound uses (breakdown point of the median)
MAX_BOUND_INLIER_RATIO = 0.5

DEFAULT_STOP_THRESHOLD = 1e-5
DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05


def weighted_median(values, weights) -> float:
    """
    Weighted median: smallest value whose cumulative weight reaches half
    of the total weight.

    Equal weights give the lower median. Order of the inputs does not matter.
    """
    values = np.asarray(values, dtype=float)
    weights = np.asarray(weights, dtype=float)

    if values.size == 0:
        raise ValueError("Weighted median of empty input")
    if values.shape != weights.shape:
        raise ValueError("Values and weights must have the same shape")

    order = np.argsort(values, kind='stable')
    cumulative = np.cumsum(weights[order])
    index = int(np.searchsorted(cumulative, 0.5 * cumulative[-1]))
    return float(values[order][min(index, values.size - 1)])


def robust_scale(best_score: float, num_samples: int, subset_size: int) -> float:
    """Robust residual standard deviation from the best median of squares."""
    dof = num_samples - subset_size
    correction = 1.0 + 5.0 / dof if dof > 0 else 1.0
    return MAD_CONSISTENCY * correction * math.sqrt(max(best_score, 0.0))


def inlier_threshold(best_score: float, num_samples: int, subset_size: int) -> float:
    """Squared-residual threshold separating inliers from outliers."""
    sigma = robust_scale(best_score, num_samples, subset_size)
    return max((INLIER_FACTOR * sigma) ** 2, MIN_INLIER_THRESHOLD ** 2)


@dataclass
class PROMedSState:
    """
    Mutable state of one robust run.

    Attributes:
        iteration: Iterations completed
        expected_iterations: Current adaptive iteration bound
        best_candidate: Lowest-scoring candidate so far
        best_score: Its weighted median of squared residuals
        best_residuals: Its absolute residuals over all measurements
        best_inlier_ratio: Inlier ratio of the best candidate
        last_progress: Progress value last reported
        failed_solves: Candidates discarded because the solve failed
    """

    iteration: int = 0
    expected_iterations: int = DEFAULT_MAX_ITERATIONS
    best_candidate: Any = None
    best_score: float = math.inf
    best_residuals: Optional[np.ndarray] = None
    best_inlier_ratio: float = 0.0
    last_progress: float = 0.0
    failed_solves: int = 0

    @property
    def has_candidate(self) -> bool:
        return self.best_candidate is not None


@dataclass
class PROMedSResult:
    """
    Outcome of a robust run.

    Attributes:
        candidate: Best candidate found
        best_score: Weighted median of squared residuals of the candidate
        residuals: Absolute residual per measurement
        inliers: Boolean inlier mask
        inlier_threshold: Squared-residual threshold used
        estimated_scale: Robust residual standard deviation
        iterations: Iterations executed
    """

    candidate: Any
    best_score: float
    residuals: np.ndarray
    inliers: np.ndarray
    inlier_threshold: float
    estimated_scale: float
    iterations: int


class PROMedSRobustEstimator:
    """
    Generic PROMedS loop.

    Usage:
        estimator = PROMedSRobustEstimator(
            num_samples=len(distances),
            subset_size=3,
            quality_scores=scores,
            preliminary_solver=solve_subset,
            residuals=residuals_of,
            sampler=QualityScoreSubsetSampler(scores, source_indices),
        )
        result = estimator.estimate()
    """

    def __init__(
        self,
        num_samples: int,
        subset_size: int,
        quality_scores,
        preliminary_solver: Callable[[np.ndarray], Any],
        residuals: Callable[[Any], np.ndarray],
        sampler: Optional[QualityScoreSubsetSampler] = None,
        stop_threshold: float = DEFAULT_STOP_THRESHOLD,
        confidence: float = DEFAULT_CONFIDENCE,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ):
        scores = np.asarray(quality_scores, dtype=float)
        if scores.shape != (num_samples,):
            raise ConfigurationError(
                f"Expected {num_samples} quality scores, got {scores.size}"
            )
        if subset_size < 1 or subset_size > num_samples:
            raise ConfigurationError(
                f"Subset size {subset_size} not in [1, {num_samples}]"
            )
        if stop_threshold <= 0:
            raise ConfigurationError(f"Stop threshold must be positive: {stop_threshold}")
        if not 0.0 <= confidence <= 1.0:
            raise ConfigurationError(f"Confidence must be in [0, 1]: {confidence}")
        if max_iterations < 1:
            raise ConfigurationError(f"Max iterations must be >= 1: {max_iterations}")
        if not 0.0 <= progress_delta <= 1.0:
            raise ConfigurationError(f"Progress delta must be in [0, 1]: {progress_delta}")

        self.num_samples = num_samples
        self.subset_size = subset_size
        self.quality_scores = scores
        self.preliminary_solver = preliminary_solver
        self.residuals = residuals
        self.sampler = sampler or QualityScoreSubsetSampler(scores)
        self.stop_threshold = stop_threshold
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        self.on_iteration = on_iteration
        self.on_progress = on_progress
        self.metrics = get_metrics()

    def iterations_needed(self, inlier_ratio: float) -> int:
        """
        Adaptive iteration bound for the current best inlier ratio.

        Returns:
            Number of iterations, capped at max_iterations
        """
        if self.confidence >= 1.0:
            return self.max_iterations
        if self.confidence <= 0.0:
            return 1

        p = inlier_ratio ** self.subset_size
        if p >= 1.0:
            return 1
        denominator = math.log1p(-p)
        if p <= 0.0 or denominator == 0.0:
            return self.max_iterations

        needed = math.ceil(math.log1p(-self.confidence) / denominator)
        return int(min(self.max_iterations, max(1, needed)))

    def _score(self, residuals: np.ndarray) -> float:
        return weighted_median(residuals ** 2, self.quality_scores)

    def _notify_progress(self, state: PROMedSState):
        if self.on_progress is None:
            return

        progress = min(1.0, state.iteration / max(state.expected_iterations, 1))
        completed = progress >= 1.0 > state.last_progress
        if completed or progress - state.last_progress >= self.progress_delta:
            state.last_progress = progress
            self.on_progress(progress)

    def _step(self, state: PROMedSState) -> bool:
        """
        Run one iteration.

        Returns:
            True if the loop should continue
        """
        subset = self.sampler.sample(self.subset_size)

        try:
            candidate = self.preliminary_solver(subset)
        except LaterationError as e:
            logger.debug("Iteration %d: subset %s discarded: %s", state.iteration, subset, e)
            candidate = None

        state.iteration += 1
        self.metrics.increment('promeds_iterations')

        if candidate is None:
            state.failed_solves += 1
            self.metrics.increment_drop('preliminary_solve_failed')
        else:
            residuals = np.abs(np.asarray(self.residuals(candidate), dtype=float))
            if residuals.shape == (self.num_samples,) and np.all(np.isfinite(residuals)):
                score = self._score(residuals)
                if score < state.best_score:
                    threshold = inlier_threshold(score, self.num_samples, self.subset_size)
                    state.best_candidate = candidate
                    state.best_score = score
                    state.best_residuals = residuals
                    state.best_inlier_ratio = float(np.mean(residuals ** 2 <= threshold))
                    state.expected_iterations = self.iterations_needed(
                        min(state.best_inlier_ratio, MAX_BOUND_INLIER_RATIO)
                    )
                    logger.debug(
                        "Iteration %d: new best score %.3g (inlier ratio %.2f, "
                        "expected iterations %d)",
                        state.iteration, score, state.best_inlier_ratio,
                        state.expected_iterations,
                    )
            else:
                state.failed_solves += 1
                self.metrics.increment_drop('preliminary_solve_failed')

        if self.on_iteration is not None:
            self.on_iteration(state.iteration)
        self._notify_progress(state)

        if state.iteration >= self.max_iterations:
            return False
        if state.has_candidate and state.iteration >= state.expected_iterations:
            return False
        if state.best_score <= self.stop_threshold:
            return False
        return True

    def estimate(self) -> PROMedSResult:
        """
        Run the robust loop to completion.

        Returns:
            PROMedSResult for the best candidate

        Raises:
            RobustEstimationError: No subset produced a usable candidate
        """
        state = PROMedSState(expected_iterations=self.max_iterations)

        while self._step(state):
            pass

        self.metrics.record_histogram('promeds_iterations_per_estimate', state.iteration)

        if not state.has_candidate:
            raise RobustEstimationError(
                f"No usable candidate after {state.iteration} iterations "
                f"({state.failed_solves} failed solves)"
            )

        threshold = inlier_threshold(state.best_score, self.num_samples, self.subset_size)
        scale = robust_scale(state.best_score, self.num_samples, self.subset_size)
        inliers = state.best_residuals ** 2 <= threshold

        self.metrics.record_histogram('promeds_best_score', state.best_score)
        self.metrics.record_histogram('promeds_inlier_ratio', float(np.mean(inliers)))

        logger.debug(
            "PROMedS finished after %d iterations: score %.3g, %d/%d inliers",
            state.iteration, state.best_score, int(np.count_nonzero(inliers)),
            self.num_samples,
        )

        return PROMedSResult(
            candidate=state.best_candidate,
            best_score=state.best_score,
            residuals=state.best_residuals,
            inliers=inliers,
            inlier_threshold=threshold,
            estimated_scale=scale,
            iterations=state.iteration,
        )
