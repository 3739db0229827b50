"""
Robust Position Estimators (2D / 3D).

Facades owning the estimation inputs (located sources, fingerprint, quality
scores), the PROMedS settings and the lock state machine.

Lock contract:
- estimate() sets the lock for its whole duration
- every setter, and estimate() itself, raises LockedError while locked,
  including calls made from listener callbacks fired during estimate()
- the lock is released on every exit path
- on_estimate_end is only fired on success

Usage:
    estimator = PROMedSRobustPositionEstimator2D(
        sources=sources,
        fingerprint=fingerprint,
        source_quality_scores=scores,
        listener=listener,
    )
    if estimator.is_ready:
        position = estimator.estimate()
        print(position, estimator.covariance, estimator.inliers_data.num_inliers)
"""

import logging
from dataclasses import replace
from typing import List, Optional

import numpy as np

from rpe_core.errors import ConfigurationError, LockedError, NotReadyError
from rpe_core.localization.lateration import min_required_positions
from rpe_core.localization.measurements import MeasurementSet, build_measurements
from rpe_core.localization.robust_lateration import (
    PROMedSRobustLaterationSolver,
    RobustLaterationConfig,
)
from rpe_core.metrics import get_metrics
from rpe_core.proto.position_estimate import InliersData, PositionEstimate
from rpe_core.proto.radio_source import RadioSource
from rpe_core.proto.reading import Fingerprint

logger = logging.getLogger(__name__)


class RobustPositionEstimatorListener:
    """
    Receives lifecycle and progress events of an estimator.

    All methods are no-ops; subclasses override what they need. Callbacks run
    synchronously on the thread calling estimate(), while the estimator is
    locked.
    """

    def on_estimate_start(self, estimator: 'RobustPositionEstimator'):
        pass

    def on_estimate_end(self, estimator: 'RobustPositionEstimator'):
        pass

    def on_estimate_next_iteration(self, estimator: 'RobustPositionEstimator', iteration: int):
        pass

    def on_estimate_progress_change(self, estimator: 'RobustPositionEstimator', progress: float):
        pass


def _same_items(current, cached) -> bool:
    """True if both (sources, readings) snapshots hold the same objects in order."""
    if cached is None:
        return False
    return all(
        len(a) == len(b) and all(x is y for x, y in zip(a, b))
        for a, b in zip(current, cached)
    )


def _config_property(name: str, invalidates_measurements: bool = False, doc: str = None):
    """Property reading from and writing through to the RobustLaterationConfig."""

    def getter(self):
        return getattr(self._config, name)

    def setter(self, value):
        self._check_unlocked()
        if value is None:
            raise ConfigurationError(f"{name} cannot be None")
        self._config = replace(self._config, **{name: value})
        if invalidates_measurements:
            self._measurements = None

    return property(getter, setter, doc=doc)


class RobustPositionEstimator:
    """
    Base robust position estimator.

    Subclasses fix NUMBER_OF_DIMENSIONS; everything else is shared.
    """

    NUMBER_OF_DIMENSIONS = None
    METHOD = "PROMedS"

    def __init__(
        self,
        sources: Optional[List[RadioSource]] = None,
        fingerprint: Optional[Fingerprint] = None,
        listener: Optional[RobustPositionEstimatorListener] = None,
        source_quality_scores=None,
        fingerprint_readings_quality_scores=None,
        config: Optional[RobustLaterationConfig] = None,
    ):
        """
        Initialize estimator.

        Args:
            sources: Located radio sources (at least min_required_sources)
            fingerprint: Readings taken at the unknown position
            listener: Optional event listener
            source_quality_scores: Quality score per source (> 0)
            fingerprint_readings_quality_scores: Quality score per reading (> 0)
            config: Robust lateration settings (defaults if None)

        Raises:
            ConfigurationError: Any argument is invalid
        """
        self._locked = False
        self._config = config if config is not None else RobustLaterationConfig()
        self._sources = None
        self._fingerprint = None
        self._listener = None
        self._source_quality_scores = None
        self._fingerprint_readings_quality_scores = None
        self._initial_position = None
        self._measurements: Optional[MeasurementSet] = None
        self._measured_inputs = None
        self._last_estimate: Optional[PositionEstimate] = None
        self.metrics = get_metrics()

        if not isinstance(self._config, RobustLaterationConfig):
            raise ConfigurationError(f"Invalid config: {config!r}")

        subset_size = self._config.preliminary_subset_size
        if subset_size is not None and subset_size < self.min_required_sources:
            raise ConfigurationError(
                f"preliminary_subset_size must be >= {self.min_required_sources}: {subset_size}"
            )

        if sources is not None:
            self.sources = sources
        if fingerprint is not None:
            self.fingerprint = fingerprint
        if listener is not None:
            self.listener = listener
        if source_quality_scores is not None:
            self.source_quality_scores = source_quality_scores
        if fingerprint_readings_quality_scores is not None:
            self.fingerprint_readings_quality_scores = fingerprint_readings_quality_scores

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_locked(self) -> bool:
        """True while estimate() is running."""
        return self._locked

    def _check_unlocked(self):
        if self._locked:
            raise LockedError()

    @property
    def number_of_dimensions(self) -> int:
        return self.NUMBER_OF_DIMENSIONS

    @property
    def min_required_sources(self) -> int:
        """Minimum number of distinct sources: 3 in 2D, 4 in 3D."""
        return min_required_positions(self.NUMBER_OF_DIMENSIONS)

    @property
    def method(self) -> str:
        return self.METHOD

    @property
    def config(self) -> RobustLaterationConfig:
        return self._config

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @property
    def sources(self) -> Optional[List[RadioSource]]:
        return self._sources

    @sources.setter
    def sources(self, sources: List[RadioSource]):
        self._check_unlocked()
        if sources is None:
            raise ConfigurationError("Sources cannot be None")
        if len(sources) < self.min_required_sources:
            raise ConfigurationError(
                f"Need at least {self.min_required_sources} sources, got {len(sources)}"
            )
        for source in sources:
            if not isinstance(source, RadioSource):
                raise ConfigurationError(f"Not a radio source: {source!r}")
            if source.dimensions != self.NUMBER_OF_DIMENSIONS:
                raise ConfigurationError(
                    f"Source {source.source_id} must have a "
                    f"{self.NUMBER_OF_DIMENSIONS}D position"
                )

        self._sources = sources
        self._measurements = None

    @property
    def fingerprint(self) -> Optional[Fingerprint]:
        return self._fingerprint

    @fingerprint.setter
    def fingerprint(self, fingerprint: Fingerprint):
        self._check_unlocked()
        if fingerprint is None:
            raise ConfigurationError("Fingerprint cannot be None")
        if not isinstance(fingerprint, Fingerprint):
            raise ConfigurationError(f"Not a fingerprint: {fingerprint!r}")

        self._fingerprint = fingerprint
        self._measurements = None

    @property
    def listener(self) -> Optional[RobustPositionEstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[RobustPositionEstimatorListener]):
        self._check_unlocked()
        self._listener = listener

    def _check_quality_scores(self, scores, expected: Optional[int], what: str):
        values = np.asarray(scores, dtype=float)
        if values.ndim != 1 or values.size < self.min_required_sources:
            raise ConfigurationError(
                f"{what} quality scores need at least {self.min_required_sources} values"
            )
        if not np.all(np.isfinite(values)) or np.any(values <= 0):
            raise ConfigurationError(f"{what} quality scores must be finite and positive")
        if expected is not None and values.size != expected:
            raise ConfigurationError(
                f"{what} quality scores length {values.size} != {expected} {what.lower()}s"
            )

    @property
    def source_quality_scores(self):
        return self._source_quality_scores

    @source_quality_scores.setter
    def source_quality_scores(self, scores):
        self._check_unlocked()
        if scores is None:
            raise ConfigurationError("Source quality scores cannot be None")
        expected = len(self._sources) if self._sources is not None else None
        self._check_quality_scores(scores, expected, "Source")

        self._source_quality_scores = scores
        self._measurements = None

    @property
    def fingerprint_readings_quality_scores(self):
        return self._fingerprint_readings_quality_scores

    @fingerprint_readings_quality_scores.setter
    def fingerprint_readings_quality_scores(self, scores):
        self._check_unlocked()
        if scores is None:
            raise ConfigurationError("Reading quality scores cannot be None")
        expected = len(self._fingerprint) if self._fingerprint is not None else None
        self._check_quality_scores(scores, expected, "Reading")

        self._fingerprint_readings_quality_scores = scores
        self._measurements = None

    @property
    def initial_position(self):
        """Optional starting point for non-linear solves."""
        return self._initial_position

    @initial_position.setter
    def initial_position(self, position):
        self._check_unlocked()
        if position is not None and \
                np.asarray(position, dtype=float).shape != (self.NUMBER_OF_DIMENSIONS,):
            raise ConfigurationError(
                f"Initial position must have {self.NUMBER_OF_DIMENSIONS} coordinates"
            )
        self._initial_position = position

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    stop_threshold = _config_property('stop_threshold')
    progress_delta = _config_property('progress_delta')
    confidence = _config_property('confidence')
    max_iterations = _config_property('max_iterations')
    linear_solver_used = _config_property('linear_solver_used')
    homogeneous_linear_solver_used = _config_property('homogeneous_linear_solver_used')
    preliminary_solution_refined = _config_property('preliminary_solution_refined')
    result_refined = _config_property('result_refined')
    covariance_kept = _config_property('covariance_kept')
    evenly_distribute_readings = _config_property('evenly_distribute_readings')
    radio_source_position_covariance_used = _config_property(
        'radio_source_position_covariance_used', invalidates_measurements=True
    )
    fallback_distance_standard_deviation = _config_property(
        'fallback_distance_standard_deviation', invalidates_measurements=True
    )

    @property
    def preliminary_subset_size(self) -> int:
        """Measurements per preliminary subset (defaults to min_required_sources)."""
        if self._config.preliminary_subset_size is None:
            return self.min_required_sources
        return self._config.preliminary_subset_size

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, size: int):
        self._check_unlocked()
        if size is None or size < self.min_required_sources:
            raise ConfigurationError(
                f"preliminary_subset_size must be >= {self.min_required_sources}: {size}"
            )
        self._config = replace(self._config, preliminary_subset_size=size)

    # ------------------------------------------------------------------
    # Derived measurements
    # ------------------------------------------------------------------

    def _quality_scores_consistent(self) -> bool:
        if self._source_quality_scores is not None and \
                len(self._source_quality_scores) != len(self._sources):
            return False
        if self._fingerprint_readings_quality_scores is not None and \
                len(self._fingerprint_readings_quality_scores) != len(self._fingerprint):
            return False
        return True

    @property
    def measurements(self) -> Optional[MeasurementSet]:
        """
        Flattened measurements for the current inputs.

        Returns:
            MeasurementSet, or None while sources or fingerprint are missing
            or quality score lengths do not match
        """
        if self._sources is None or self._fingerprint is None:
            return None
        if not self._quality_scores_consistent():
            return None

        # Sources and readings lists may be edited in place after assignment
        snapshot = (tuple(self._sources), tuple(self._fingerprint.readings))
        if self._measurements is None or not _same_items(snapshot, self._measured_inputs):
            self._measured_inputs = snapshot
            self._measurements = build_measurements(
                self._sources,
                self._fingerprint,
                source_quality_scores=self._source_quality_scores,
                reading_quality_scores=self._fingerprint_readings_quality_scores,
                use_position_covariance=self._config.radio_source_position_covariance_used,
                fallback_distance_std=self._config.fallback_distance_standard_deviation,
            )
        return self._measurements

    @property
    def positions(self) -> Optional[np.ndarray]:
        m = self.measurements
        return None if m is None else m.positions.copy()

    @property
    def distances(self) -> Optional[np.ndarray]:
        m = self.measurements
        return None if m is None else m.distances.copy()

    @property
    def distance_standard_deviations(self) -> Optional[np.ndarray]:
        m = self.measurements
        return None if m is None else m.distance_standard_deviations.copy()

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        """Combined quality score per flattened measurement."""
        m = self.measurements
        return None if m is None else m.quality_scores.copy()

    @property
    def is_ready(self) -> bool:
        """
        True when estimate() can run.

        Requires sources and fingerprint, quality scores matching their
        lengths, enough distinct located sources referenced by the readings
        and enough measurements for one preliminary subset.
        """
        m = self.measurements
        if m is None:
            return False
        return (
            m.num_sources >= self.min_required_sources
            and m.num_measurements >= self.preliminary_subset_size
        )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def last_estimate(self) -> Optional[PositionEstimate]:
        return self._last_estimate

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        if self._last_estimate is None:
            return None
        return self._last_estimate.position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        if self._last_estimate is None:
            return None
        return self._last_estimate.covariance

    @property
    def inliers_data(self) -> Optional[InliersData]:
        if self._last_estimate is None:
            return None
        return self._last_estimate.inliers_data

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def estimate(self) -> np.ndarray:
        """
        Robustly estimate the position.

        Returns:
            Estimated position, shape (dims,)

        Raises:
            LockedError: Already estimating
            NotReadyError: Inputs missing or insufficient
            RobustEstimationError: No usable solution found
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError()

        self._locked = True
        self.metrics.increment('estimations_started')
        try:
            measurements = self.measurements
            self._last_estimate = None

            listener = self._listener
            if listener is not None:
                listener.on_estimate_start(self)

            solver = PROMedSRobustLaterationSolver(
                self._config,
                dimensions=self.NUMBER_OF_DIMENSIONS,
                initial_position=(
                    np.asarray(self._initial_position, dtype=float)
                    if self._initial_position is not None else None
                ),
                on_iteration=(
                    (lambda i: listener.on_estimate_next_iteration(self, i))
                    if listener is not None else None
                ),
                on_progress=(
                    (lambda p: listener.on_estimate_progress_change(self, p))
                    if listener is not None else None
                ),
            )
            estimate = solver.solve(measurements)

            logger.info(
                "%s %dD estimate: %s (%d/%d inliers, %d iterations)",
                self.METHOD, self.NUMBER_OF_DIMENSIONS,
                np.array2string(estimate.position, precision=4),
                estimate.num_inliers, estimate.num_measurements, estimate.iterations,
            )

            if listener is not None:
                listener.on_estimate_end(self)

            self._last_estimate = estimate
            self.metrics.increment('estimations_succeeded')
            return estimate.position.copy()
        except Exception:
            self.metrics.increment('estimations_failed')
            raise
        finally:
            self._locked = False


class PROMedSRobustPositionEstimator2D(RobustPositionEstimator):
    """PROMedS robust position estimator in 2D (at least 3 sources)."""

    NUMBER_OF_DIMENSIONS = 2


class PROMedSRobustPositionEstimator3D(RobustPositionEstimator):
    """PROMedS robust position estimator in 3D (at least 4 sources)."""

    NUMBER_OF_DIMENSIONS = 3


def create_robust_position_estimator(dimensions: int = 2, **kwargs) -> RobustPositionEstimator:
    """
    Create a PROMedS robust position estimator.

    Args:
        dimensions: 2 or 3
        **kwargs: Passed to the estimator constructor

    Returns:
        PROMedSRobustPositionEstimator2D or PROMedSRobustPositionEstimator3D
    """
    if dimensions == 2:
        return PROMedSRobustPositionEstimator2D(**kwargs)
    if dimensions == 3:
        return PROMedSRobustPositionEstimator3D(**kwargs)
    raise ConfigurationError(f"Dimensions must be 2 or 3: {dimensions}")
