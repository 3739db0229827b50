"""
Measurement flattening.

Turns (located sources, fingerprint, quality scores) into the parallel
arrays consumed by the lateration solvers and the robust loop:

    positions[i], distances[i], distance_standard_deviations[i],
    quality_scores[i], source_indices[i], reading_indices[i]

One entry per usable (source, reading) pair; a RangingAndRssiReading yields
two entries. The index arrays map every flattened pair back to the source
and reading it came from, so per-source and per-reading quality scores can
be combined without recomputation.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from rpe_core.errors import ConfigurationError
from rpe_core.proto.radio_source import RadioSource
from rpe_core.proto.reading import Fingerprint, ReadingType
from rpe_core.metrics import get_metrics

logger = logging.getLogger(__name__)

SPEED_OF_LIGHT = 299792458.0  # m/s

# Distances are clamped to this minimum (m)
EPSILON = 1e-7

DEFAULT_FALLBACK_DISTANCE_STANDARD_DEVIATION = 1e-3  # m


@dataclass(frozen=True)
class MeasurementSet:
    """
    Flattened (position, distance, std, quality) pairs.

    Attributes:
        positions: Source positions, shape (N, dims)
        distances: Measured or RSSI-derived distances (m), shape (N,)
        distance_standard_deviations: Distance standard deviations (m), shape (N,)
        quality_scores: Combined quality score per pair, shape (N,)
        source_indices: Index into the sources list, shape (N,)
        reading_indices: Index into fingerprint.readings, shape (N,)
    """

    positions: np.ndarray
    distances: np.ndarray
    distance_standard_deviations: np.ndarray
    quality_scores: np.ndarray
    source_indices: np.ndarray
    reading_indices: np.ndarray

    def __post_init__(self):
        for name in ('positions', 'distances', 'distance_standard_deviations',
                     'quality_scores', 'source_indices', 'reading_indices'):
            getattr(self, name).setflags(write=False)

    @property
    def num_measurements(self) -> int:
        return int(self.distances.shape[0])

    @property
    def num_sources(self) -> int:
        """Number of distinct sources referenced by the pairs."""
        return int(np.unique(self.source_indices).size)

    @property
    def dimensions(self) -> int:
        return int(self.positions.shape[1])

    def subset(self, indices: Sequence[int]) -> 'MeasurementSet':
        """Select a subset of pairs (e.g. inliers)."""
        idx = np.asarray(indices, dtype=int)
        return MeasurementSet(
            positions=self.positions[idx].copy(),
            distances=self.distances[idx].copy(),
            distance_standard_deviations=self.distance_standard_deviations[idx].copy(),
            quality_scores=self.quality_scores[idx].copy(),
            source_indices=self.source_indices[idx].copy(),
            reading_indices=self.reading_indices[idx].copy(),
        )


def rssi_to_distance(
    source: RadioSource,
    rssi_dbm: float,
    rssi_std_db: Optional[float] = None,
) -> Tuple[float, Optional[float]]:
    """
    Convert received power into distance with the log-distance path loss model.

        d = 10 ** ((n * 10*log10(c / (4*pi*f)) + Ptx - Prx) / (10 * n))

    Args:
        source: Source with transmitted power and path loss exponent
        rssi_dbm: Received power (dBm)
        rssi_std_db: Received power standard deviation (dB), if known

    Returns:
        Tuple of (distance_m, distance_variance_m2). Variance is obtained by
        first-order propagation of the received power, transmitted power and
        path loss exponent variances; None when none of them is known.
    """
    if not source.has_power_model:
        raise ConfigurationError(
            f"Source {source.source_id} has no transmitted power for RSSI conversion"
        )

    n = source.path_loss_exponent
    tx_power = source.transmitted_power_dbm
    k_db = 10.0 * math.log10(SPEED_OF_LIGHT / (4.0 * math.pi * source.frequency))

    exponent = (n * k_db + tx_power - rssi_dbm) / (10.0 * n)
    distance = 10.0 ** exponent

    known = [
        v for v in (rssi_std_db, source.transmitted_power_std_db, source.path_loss_exponent_std)
        if v is not None
    ]
    if not known:
        return distance, None

    # d = 10^e  ->  dd/de = d ln(10)
    scale = distance * math.log(10.0)
    d_prx = -scale / (10.0 * n)
    d_ptx = scale / (10.0 * n)
    d_n = -scale * (tx_power - rssi_dbm) / (10.0 * n * n)

    variance = 0.0
    if rssi_std_db is not None:
        variance += (d_prx * rssi_std_db) ** 2
    if source.transmitted_power_std_db is not None:
        variance += (d_ptx * source.transmitted_power_std_db) ** 2
    if source.path_loss_exponent_std is not None:
        variance += (d_n * source.path_loss_exponent_std) ** 2

    return distance, variance


def _combine_std(
    distance_variance: Optional[float],
    position_std: Optional[float],
    fallback_std: float,
) -> float:
    """Combine distance and position uncertainty, falling back when unknown."""
    if distance_variance is None and position_std is None:
        return fallback_std

    variance = distance_variance or 0.0
    if position_std is not None:
        variance += position_std ** 2
    return math.sqrt(variance)


def build_measurements(
    sources: Sequence[RadioSource],
    fingerprint: Fingerprint,
    source_quality_scores: Optional[Sequence[float]] = None,
    reading_quality_scores: Optional[Sequence[float]] = None,
    use_position_covariance: bool = False,
    fallback_distance_std: float = DEFAULT_FALLBACK_DISTANCE_STANDARD_DEVIATION,
) -> MeasurementSet:
    """
    Flatten sources and fingerprint readings into a MeasurementSet.

    Args:
        sources: Located radio sources (all with positions of equal dimension)
        fingerprint: Readings taken at the unknown position
        source_quality_scores: Optional score per source (parallel to sources)
        reading_quality_scores: Optional score per reading (parallel to readings)
        use_position_covariance: Fold source position uncertainty into the
            distance standard deviation
        fallback_distance_std: Standard deviation used when nothing is known

    Returns:
        MeasurementSet (possibly empty)

    Notes:
        - Readings whose source is not located are skipped and counted
        - RSSI readings on sources without power model are skipped and counted
        - Combined quality = source score + reading score (missing terms omitted,
          1.0 when no scores are given at all)
    """
    if fallback_distance_std < 0:
        raise ConfigurationError(
            f"Fallback distance std cannot be negative: {fallback_distance_std}"
        )

    if source_quality_scores is not None and len(source_quality_scores) != len(sources):
        raise ConfigurationError(
            f"Source quality scores length {len(source_quality_scores)} "
            f"!= number of sources {len(sources)}"
        )

    readings = fingerprint.readings
    if reading_quality_scores is not None and len(reading_quality_scores) != len(readings):
        raise ConfigurationError(
            f"Reading quality scores length {len(reading_quality_scores)} "
            f"!= number of readings {len(readings)}"
        )

    metrics = get_metrics()
    source_lookup: Dict[Tuple[str, float], int] = {}
    for index, source in enumerate(sources):
        source_lookup.setdefault(source.key, index)

    dims = sources[0].dimensions if sources and sources[0].has_position else 0

    positions: List[Tuple[float, ...]] = []
    distances: List[float] = []
    stds: List[float] = []
    scores: List[float] = []
    source_indices: List[int] = []
    reading_indices: List[int] = []

    for reading_index, reading in enumerate(readings):
        source_index = source_lookup.get(reading.source.key)
        if source_index is None:
            metrics.increment_drop('unmatched_reading')
            continue

        located = sources[source_index]
        if not located.has_position:
            metrics.increment_drop('missing_position')
            continue

        position_std = (
            located.position_standard_deviation if use_position_covariance else None
        )

        if source_quality_scores is None and reading_quality_scores is None:
            score = 1.0
        else:
            score = 0.0
            if source_quality_scores is not None:
                score += float(source_quality_scores[source_index])
            if reading_quality_scores is not None:
                score += float(reading_quality_scores[reading_index])

        pairs: List[Tuple[float, float]] = []

        if reading.reading_type in (ReadingType.RANGING, ReadingType.RANGING_AND_RSSI):
            variance = (
                reading.distance_std ** 2 if reading.distance_std is not None else None
            )
            pairs.append((
                reading.distance,
                _combine_std(variance, position_std, fallback_distance_std),
            ))

        if reading.reading_type in (ReadingType.RSSI, ReadingType.RANGING_AND_RSSI):
            if located.has_power_model:
                distance, variance = rssi_to_distance(
                    located, reading.rssi_dbm, reading.rssi_std_db
                )
                pairs.append((
                    distance,
                    _combine_std(variance, position_std, fallback_distance_std),
                ))
            else:
                metrics.increment_drop('missing_power_model')

        for distance, std in pairs:
            positions.append(located.position)
            distances.append(max(distance, EPSILON))
            stds.append(std)
            scores.append(score)
            source_indices.append(source_index)
            reading_indices.append(reading_index)

    logger.debug(
        "Flattened %d readings from %d sources into %d measurements",
        len(readings), len(sources), len(distances),
    )

    return MeasurementSet(
        positions=np.array(positions, dtype=float).reshape(len(positions), dims),
        distances=np.array(distances, dtype=float),
        distance_standard_deviations=np.array(stds, dtype=float),
        quality_scores=np.array(scores, dtype=float),
        source_indices=np.array(source_indices, dtype=int),
        reading_indices=np.array(reading_indices, dtype=int),
    )
