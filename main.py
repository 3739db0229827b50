"""
Robust position estimation demo.
Builds a synthetic scenario (located sources, readings with outliers),
runs the PROMedS estimator and reports the result.
"""

import math
import logging
import argparse
from typing import List, Tuple

import numpy as np

import config
from rpe_core.errors import RPEError
from rpe_core.localization import (
    RobustLaterationConfig,
    RobustPositionEstimatorListener,
    create_robust_position_estimator,
)
from rpe_core.localization.measurements import SPEED_OF_LIGHT
from rpe_core.metrics import get_metrics
from rpe_core.proto import Fingerprint, RadioSource, RangingReading, RssiReading

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"]
)
logger = logging.getLogger(__name__)


class LoggingListener(RobustPositionEstimatorListener):
    """Logs estimator lifecycle and progress events."""

    def on_estimate_start(self, estimator):
        logger.info("Estimation started (%s, %dD)", estimator.method,
                    estimator.number_of_dimensions)

    def on_estimate_end(self, estimator):
        logger.info("Estimation finished")

    def on_estimate_next_iteration(self, estimator, iteration):
        logger.debug("Iteration %d", iteration)

    def on_estimate_progress_change(self, estimator, progress):
        logger.info("Progress %.0f%%", progress * 100.0)


def received_power(source: RadioSource, distance: float) -> float:
    """Received power (dBm) at a given distance under the log-distance model."""
    n = source.path_loss_exponent
    k_db = 10.0 * math.log10(SPEED_OF_LIGHT / (4.0 * math.pi * source.frequency))
    return source.transmitted_power_dbm + n * k_db - 10.0 * n * math.log10(distance)


def build_scenario(
    dimensions: int,
    num_sources: int,
    outlier_ratio: float,
    outlier_std: float,
    rng: np.random.Generator,
    use_rssi: bool = False,
) -> Tuple[np.ndarray, List[RadioSource], Fingerprint, List[float]]:
    """
    Build a synthetic scenario.

    Returns:
        Tuple of (true_position, sources, fingerprint, reading_quality_scores)
    """
    half = config.SCENARIO_CONFIG["area_half_size_m"]
    true_position = rng.uniform(-half, half, dimensions)

    sources = []
    readings = []
    scores = []
    for i in range(num_sources):
        source = RadioSource(
            source_id=f"S{i:03d}",
            frequency=config.SCENARIO_CONFIG["frequency_hz"],
            position=tuple(rng.uniform(-half, half, dimensions)),
            transmitted_power_dbm=config.SCENARIO_CONFIG["transmitted_power_dbm"],
            path_loss_exponent=config.SCENARIO_CONFIG["path_loss_exponent"],
        )
        sources.append(source)

        distance = float(np.linalg.norm(np.asarray(source.position) - true_position))
        error = 0.0
        if rng.random() < outlier_ratio:
            error = float(rng.normal(0.0, outlier_std))

        noisy_distance = max(distance + error, 1e-3)
        if use_rssi:
            readings.append(RssiReading(source, received_power(source, noisy_distance)))
        else:
            readings.append(RangingReading(source, noisy_distance))
        scores.append(1.0 / (1.0 + abs(error)))

    return true_position, sources, Fingerprint(readings), scores


def main():
    """Main function"""
    parser = argparse.ArgumentParser(description='PROMedS robust position estimation demo')
    parser.add_argument('--dimensions', '-n', type=int, choices=(2, 3),
                        default=config.SCENARIO_CONFIG["dimensions"],
                        help='Number of dimensions')
    parser.add_argument('--sources', '-s', type=int,
                        default=config.SCENARIO_CONFIG["num_sources"],
                        help='Number of located sources')
    parser.add_argument('--outlier-ratio', type=float,
                        default=config.SCENARIO_CONFIG["outlier_ratio"],
                        help='Fraction of perturbed readings')
    parser.add_argument('--outlier-std', type=float,
                        default=config.SCENARIO_CONFIG["outlier_std_m"],
                        help='Standard deviation of outlier perturbation (m)')
    parser.add_argument('--seed', type=int, default=config.SCENARIO_CONFIG["seed"],
                        help='Random seed')
    parser.add_argument('--rssi', action='store_true',
                        help='Use RSSI readings instead of ranging')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args()

    # Set log level
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    rng = np.random.default_rng(args.seed)
    true_position, sources, fingerprint, scores = build_scenario(
        args.dimensions, args.sources, args.outlier_ratio, args.outlier_std,
        rng, use_rssi=args.rssi,
    )

    estimator = create_robust_position_estimator(
        args.dimensions,
        sources=sources,
        fingerprint=fingerprint,
        fingerprint_readings_quality_scores=scores,
        listener=LoggingListener(),
        config=RobustLaterationConfig(random_seed=args.seed, **config.ESTIMATOR_CONFIG),
    )

    try:
        position = estimator.estimate()
    except RPEError as e:
        logger.error("Estimation failed: %s", e)
        return 1

    estimate = estimator.last_estimate
    error = float(np.linalg.norm(position - true_position))

    print(f"True position:      {np.array2string(true_position, precision=6)}")
    print(f"Estimated position: {np.array2string(position, precision=6)}")
    print(f"Error:              {error:.3e} m")
    print(f"Inliers:            {estimate.num_inliers}/{estimate.num_measurements}")
    print(f"Iterations:         {estimate.iterations}")
    if config.OUTPUT_CONFIG["print_covariance"] and estimate.covariance is not None:
        print(f"Covariance:\n{np.array2string(estimate.covariance, precision=3)}")

    if config.OUTPUT_CONFIG["print_metrics"]:
        get_metrics().print_summary()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
