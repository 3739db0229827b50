"""
Quality-Score-Driven Subset Sampler.

Draws the preliminary subsets used by the robust loop. Each subset is a set
of distinct measurement indices chosen by sequential weighted draws without
replacement, with probability proportional to the measurement's combined
quality score. Every score is strictly positive, so low-quality measurements
are less likely but never impossible to pick.

With evenly_distribute_readings, measurements from a source already in the
subset are skipped while measurements from unused sources remain, so one
source with many readings does not fill a subset with near-duplicate
constraints.
"""

from typing import Optional, Sequence

import numpy as np

from rpe_core.errors import ConfigurationError


class QualityScoreSubsetSampler:
    """
    Weighted subset sampler over flattened measurements.

    Usage:
        sampler = QualityScoreSubsetSampler(scores, source_indices, rng=rng)
        subset = sampler.sample(3)
    """

    def __init__(
        self,
        quality_scores: Sequence[float],
        source_indices: Optional[Sequence[int]] = None,
        evenly_distribute_readings: bool = True,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Initialize sampler.

        Args:
            quality_scores: Combined quality score per measurement (> 0)
            source_indices: Source index per measurement; each measurement is
                its own source when omitted
            evenly_distribute_readings: Avoid repeating a source within a subset
            rng: Random generator (a fresh unseeded one if None)
        """
        scores = np.asarray(quality_scores, dtype=float)
        if scores.ndim != 1:
            raise ConfigurationError("Quality scores must be one-dimensional")
        if np.any(~np.isfinite(scores)) or np.any(scores <= 0):
            raise ConfigurationError("Quality scores must be finite and positive")

        if source_indices is None:
            sources = np.arange(scores.size)
        else:
            sources = np.asarray(source_indices, dtype=int)
            if sources.shape != scores.shape:
                raise ConfigurationError(
                    f"Source indices length {sources.size} != number of scores {scores.size}"
                )

        self.quality_scores = scores
        self.source_indices = sources
        self.evenly_distribute_readings = evenly_distribute_readings
        self.rng = rng if rng is not None else np.random.default_rng()

    @property
    def num_samples(self) -> int:
        return int(self.quality_scores.size)

    def sample(self, subset_size: int) -> np.ndarray:
        """
        Draw one subset of distinct measurement indices.

        Args:
            subset_size: Number of indices to draw

        Returns:
            Array of subset_size distinct indices, in draw order

        Raises:
            ConfigurationError: subset_size < 1 or larger than the pool
        """
        if subset_size < 1 or subset_size > self.num_samples:
            raise ConfigurationError(
                f"Subset size {subset_size} not in [1, {self.num_samples}]"
            )

        available = np.ones(self.num_samples, dtype=bool)
        used_sources = set()
        selected = []

        for _ in range(subset_size):
            candidates = available
            if self.evenly_distribute_readings and used_sources:
                fresh = available & ~np.isin(self.source_indices, list(used_sources))
                if np.any(fresh):
                    candidates = fresh

            weights = np.where(candidates, self.quality_scores, 0.0)
            index = int(self.rng.choice(self.num_samples, p=weights / weights.sum()))

            selected.append(index)
            available[index] = False
            used_sources.add(int(self.source_indices[index]))

        return np.array(selected, dtype=int)
