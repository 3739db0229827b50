"""
Unit tests for the generic PROMedS loop.

A one-dimensional location model is used: a candidate is the value of a
single sampled measurement and residuals are absolute differences.
"""

import math

import numpy as np
import pytest

from rpe_core.errors import ConfigurationError, NumericalError, RobustEstimationError
from rpe_core.localization.promeds import (
    MAX_BOUND_INLIER_RATIO,
    MIN_INLIER_THRESHOLD,
    PROMedSRobustEstimator,
    PROMedSState,
    inlier_threshold,
    robust_scale,
    weighted_median,
)
from rpe_core.localization.subset_sampler import QualityScoreSubsetSampler
from rpe_core.metrics import get_metrics


def location_estimator(values, scores=None, seed=0, sampler=None, **kwargs):
    """PROMedS estimator for the location of 1D values."""
    values = np.asarray(values, dtype=float)
    scores = np.ones(values.size) if scores is None else np.asarray(scores, dtype=float)
    return PROMedSRobustEstimator(
        num_samples=values.size,
        subset_size=1,
        quality_scores=scores,
        preliminary_solver=lambda idx: float(values[idx[0]]),
        residuals=lambda candidate: np.abs(values - candidate),
        sampler=sampler or QualityScoreSubsetSampler(scores, rng=np.random.default_rng(seed)),
        **kwargs,
    )


class ScriptedSampler(QualityScoreSubsetSampler):
    """Sampler returning fixed subsets first, then random ones."""

    def __init__(self, scores, script, seed=0):
        super().__init__(scores, rng=np.random.default_rng(seed))
        self.script = [np.asarray(s) for s in script]

    def sample(self, subset_size):
        if self.script:
            return self.script.pop(0)
        return super().sample(subset_size)


@pytest.fixture
def contaminated_values():
    """80 values at 5.0 and 20 gross outliers."""
    rng = np.random.default_rng(3)
    values = np.full(100, 5.0)
    values[80:] = rng.uniform(20.0, 100.0, 20)
    return values


# =============================================================================
# Weighted Median
# =============================================================================


class TestWeightedMedian:
    """Tests for weighted_median."""

    def test_equal_weights_odd(self):
        """Test plain median with equal weights."""
        assert weighted_median([3.0, 1.0, 2.0], [1.0, 1.0, 1.0]) == 2.0

    def test_equal_weights_even_is_lower_median(self):
        """Test lower median for even counts."""
        assert weighted_median([4.0, 1.0, 3.0, 2.0], np.ones(4)) == 2.0

    def test_heavy_weight_dominates(self):
        """Test that a heavy value pulls the median."""
        assert weighted_median([1.0, 2.0, 10.0], [1.0, 1.0, 10.0]) == 10.0

    def test_light_outliers_ignored(self):
        """Test that low-weight large values do not move the median."""
        values = [0.0, 0.0, 0.0, 100.0, 200.0]
        weights = [1.0, 1.0, 1.0, 0.1, 0.1]

        assert weighted_median(values, weights) == 0.0

    def test_order_independent(self):
        """Test that permuting inputs gives the same result."""
        rng = np.random.default_rng(0)
        values = rng.normal(size=51)
        weights = rng.uniform(0.1, 2.0, 51)
        perm = rng.permutation(51)

        assert weighted_median(values, weights) == weighted_median(values[perm], weights[perm])

    def test_empty_raises(self):
        """Test empty input."""
        with pytest.raises(ValueError):
            weighted_median([], [])


class TestThresholds:
    """Tests for robust scale and inlier threshold."""

    def test_scale_of_zero_score(self):
        """Test that a perfect fit has zero scale and the minimum threshold."""
        assert robust_scale(0.0, 100, 3) == 0.0
        assert inlier_threshold(0.0, 100, 3) == MIN_INLIER_THRESHOLD ** 2

    def test_scale_formula(self):
        """Test the finite-sample corrected median absolute deviation."""
        scale = robust_scale(4.0, 13, 3)

        assert scale == pytest.approx(1.4826 * 1.5 * 2.0)
        assert inlier_threshold(4.0, 13, 3) == pytest.approx((2.5 * scale) ** 2)


# =============================================================================
# Robust Loop
# =============================================================================


class TestPROMedSLoop:
    """Tests for PROMedSRobustEstimator."""

    def test_finds_location_among_outliers(self, contaminated_values):
        """Test that the majority value is found and outliers rejected."""
        result = location_estimator(contaminated_values).estimate()

        assert result.candidate == 5.0
        assert result.best_score == 0.0
        np.testing.assert_array_equal(result.inliers[:80], True)
        np.testing.assert_array_equal(result.inliers[80:], False)

    def test_stops_on_stop_threshold(self, contaminated_values):
        """Test early stop once the best score reaches the threshold."""
        result = location_estimator(contaminated_values, max_iterations=1000).estimate()

        # Only outliers are drawn before the first exact candidate
        assert result.iterations < 50

    def test_stops_on_max_iterations(self):
        """Test that full confidence runs exactly max_iterations."""
        values = np.random.default_rng(4).normal(0.0, 1.0, 50)

        result = location_estimator(
            values, confidence=1.0, max_iterations=25, stop_threshold=1e-12
        ).estimate()

        assert result.iterations == 25
        assert get_metrics().get_counter('promeds_iterations') == 25

    def test_stops_on_adaptive_bound(self):
        """Test that the adaptive bound ends the loop before max_iterations."""
        values = np.random.default_rng(5).normal(0.0, 1.0, 200)

        result = location_estimator(
            values, confidence=0.9, max_iterations=1000, stop_threshold=1e-12
        ).estimate()

        assert result.iterations < 1000

    def test_every_solve_failing_raises(self):
        """Test that no usable candidate raises RobustEstimationError."""

        def failing_solver(indices):
            raise NumericalError("singular")

        estimator = PROMedSRobustEstimator(
            num_samples=10,
            subset_size=3,
            quality_scores=np.ones(10),
            preliminary_solver=failing_solver,
            residuals=lambda candidate: np.zeros(10),
            max_iterations=7,
        )

        with pytest.raises(RobustEstimationError):
            estimator.estimate()

        assert get_metrics().get_drop_count('preliminary_solve_failed') == 7

    def test_none_candidates_discarded(self, contaminated_values):
        """Test that solvers returning None are skipped."""
        calls = []

        def sometimes_none(indices):
            calls.append(indices)
            if len(calls) % 2:
                return None
            return float(contaminated_values[indices[0]])

        estimator = PROMedSRobustEstimator(
            num_samples=100,
            subset_size=1,
            quality_scores=np.ones(100),
            preliminary_solver=sometimes_none,
            residuals=lambda candidate: np.abs(contaminated_values - candidate),
            sampler=ScriptedSampler(np.ones(100), [[0], [85], [86], [1]]),
        )

        result = estimator.estimate()

        assert result.candidate == 5.0
        assert result.iterations == 4
        assert not result.inliers[80:].any()
        assert get_metrics().get_drop_count('preliminary_solve_failed') == 2

    def test_outlier_candidate_does_not_end_search(self, contaminated_values):
        """Test that a candidate fitted to an outlier keeps the loop running."""
        sampler = ScriptedSampler(np.ones(100), [[85], [90], [3]])
        estimator = location_estimator(contaminated_values, sampler=sampler)

        result = estimator.estimate()

        assert result.iterations == 3
        assert result.candidate == 5.0
        np.testing.assert_array_equal(result.inliers[:80], True)
        np.testing.assert_array_equal(result.inliers[80:], False)

    def test_bound_uses_capped_inlier_ratio(self, contaminated_values):
        """Test that the bound after an outlier candidate assumes half inliers."""
        estimator = location_estimator(
            contaminated_values, sampler=ScriptedSampler(np.ones(100), [[85]])
        )
        state = PROMedSState(expected_iterations=estimator.max_iterations)

        assert estimator._step(state)

        # Median-based threshold of a bad candidate accepts most of the data
        assert state.best_inlier_ratio > MAX_BOUND_INLIER_RATIO
        assert state.expected_iterations == estimator.iterations_needed(MAX_BOUND_INLIER_RATIO)
        assert state.expected_iterations > 1

    def test_quality_scores_bias_search(self, contaminated_values):
        """Test that low-scored outliers are rarely sampled."""
        scores = np.ones(100)
        scores[80:] = 1e-3
        estimator = location_estimator(contaminated_values, scores=scores, seed=9)

        result = estimator.estimate()

        assert result.candidate == 5.0
        assert result.iterations <= 2

    def test_callbacks(self):
        """Test iteration and progress callbacks."""
        values = np.random.default_rng(6).normal(0.0, 1.0, 30)
        iterations = []
        progress = []

        location_estimator(
            values,
            confidence=1.0,
            max_iterations=20,
            stop_threshold=1e-12,
            progress_delta=0.1,
            on_iteration=iterations.append,
            on_progress=progress.append,
        ).estimate()

        assert iterations == list(range(1, 21))
        assert progress == sorted(progress)
        assert all(0.0 < p <= 1.0 for p in progress)
        assert progress[-1] == 1.0
        assert len(progress) <= 11

    def test_histograms_recorded(self, contaminated_values):
        """Test run statistics histograms."""
        location_estimator(contaminated_values).estimate()

        metrics = get_metrics()
        assert metrics.get_histogram_stats('promeds_iterations_per_estimate')['count'] == 1
        assert metrics.get_histogram_stats('promeds_best_score')['max'] == 0.0
        assert metrics.get_histogram_stats('promeds_inlier_ratio')['mean'] == pytest.approx(0.8)


class TestIterationsNeeded:
    """Tests for the adaptive iteration bound."""

    def _estimator(self, confidence, subset_size=3, max_iterations=5000):
        return PROMedSRobustEstimator(
            num_samples=10,
            subset_size=subset_size,
            quality_scores=np.ones(10),
            preliminary_solver=lambda idx: None,
            residuals=lambda c: np.zeros(10),
            confidence=confidence,
            max_iterations=max_iterations,
        )

    def test_standard_formula(self):
        """Test log(1 - confidence) / log(1 - w ** s)."""
        estimator = self._estimator(0.99)
        expected = math.ceil(math.log(0.01) / math.log(1.0 - 0.5 ** 3))

        assert estimator.iterations_needed(0.5) == expected

    def test_all_inliers_needs_one(self):
        """Test a perfect inlier ratio."""
        assert self._estimator(0.99).iterations_needed(1.0) == 1

    def test_no_inliers_needs_max(self):
        """Test a zero inlier ratio."""
        assert self._estimator(0.99, max_iterations=123).iterations_needed(0.0) == 123

    def test_full_confidence_needs_max(self):
        """Test confidence of one."""
        assert self._estimator(1.0, max_iterations=77).iterations_needed(0.9) == 77

    def test_capped_at_max_iterations(self):
        """Test the cap."""
        assert self._estimator(0.99, max_iterations=10).iterations_needed(0.1) == 10


class TestConfiguration:
    """Tests for argument validation."""

    @pytest.mark.parametrize("kwargs", [
        {"stop_threshold": 0.0},
        {"confidence": -0.1},
        {"confidence": 1.5},
        {"max_iterations": 0},
        {"progress_delta": -0.1},
        {"progress_delta": 1.1},
    ])
    def test_invalid_settings(self, kwargs):
        """Test out-of-range settings."""
        with pytest.raises(ConfigurationError):
            location_estimator(np.ones(5), **kwargs)

    def test_subset_larger_than_pool(self):
        """Test subset size bound."""
        with pytest.raises(ConfigurationError):
            PROMedSRobustEstimator(
                num_samples=2,
                subset_size=3,
                quality_scores=np.ones(2),
                preliminary_solver=lambda idx: None,
                residuals=lambda c: np.zeros(2),
            )

    def test_scores_length_mismatch(self):
        """Test quality score length."""
        with pytest.raises(ConfigurationError):
            PROMedSRobustEstimator(
                num_samples=4,
                subset_size=3,
                quality_scores=np.ones(3),
                preliminary_solver=lambda idx: None,
                residuals=lambda c: np.zeros(4),
            )

    def test_state_defaults(self):
        """Test initial loop state."""
        state = PROMedSState()

        assert state.iteration == 0
        assert not state.has_candidate
        assert state.best_score == math.inf
