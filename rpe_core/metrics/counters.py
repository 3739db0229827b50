"""
Estimation counters, drop reasons and run histograms.

Every discarded measurement or candidate is counted under a reason code,
and every robust run records its iteration count, best PROMedS score and
inlier ratio. All operations are thread-safe.
"""

import logging
import statistics
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """Copy of the collector state."""

    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        return sum(self.drop_reasons.values())


class MetricsCollector:
    """
    Thread-safe metrics collection.

    Usage:
        collector = MetricsCollector()
        collector.increment('estimations_started')
        collector.increment_drop('preliminary_solve_failed')
        collector.record_histogram('promeds_best_score', 1.2e-6)
    """

    # Reason code -> description shown in the summary
    DROP_REASONS = {
        'unmatched_reading': 'Reading source not among located sources',
        'missing_position': 'Matched source has no position',
        'missing_power_model': 'RSSI reading on source without transmitted power',
        'preliminary_solve_failed': 'Candidate subset lateration failed',
        'refine_failed': 'Final refinement failed, best candidate kept',
        'covariance_failed': 'Covariance could not be computed',
    }

    STANDARD_COUNTERS = (
        'estimations_started',
        'estimations_succeeded',
        'estimations_failed',
        'promeds_iterations',
        'lateration_solves',
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._init_standard_counters()

    def _init_standard_counters(self):
        with self._lock:
            for counter in self.STANDARD_COUNTERS:
                self._counters.setdefault(counter, 0)
            for reason in self.DROP_REASONS:
                self._drop_reasons.setdefault(reason, 0)

    def increment(self, counter_name: str, value: int = 1):
        """Increment a counter by value."""
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Count dropped items under a reason code.

        Args:
            reason: Drop reason code (should be in DROP_REASONS)
            value: Number of items dropped

        Notes:
            Unknown codes are logged and still counted.
        """
        if reason not in self.DROP_REASONS:
            logger.warning("Unknown drop reason '%s'", reason)

        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['items_dropped'] += value

    def get_counter(self, counter_name: str) -> int:
        """Current value of a counter (0 if never incremented)."""
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        with self._lock:
            return self._drop_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record one value of a run statistic.

        Args:
            histogram_name: e.g. 'promeds_iterations_per_estimate'
            value: Value to record
            max_samples: Beyond this only the most recent half is kept
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)
            if len(samples) > max_samples:
                self._histograms[histogram_name] = samples[-max_samples // 2:]

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summary statistics of a histogram.

        Returns:
            Dict with count, min, max, mean and median, or None if empty
        """
        with self._lock:
            samples = list(self._histograms.get(histogram_name, []))

        if not samples:
            return None
        return {
            'count': len(samples),
            'min': min(samples),
            'max': max(samples),
            'mean': statistics.mean(samples),
            'median': statistics.median(samples),
        }

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )

    def reset(self):
        """Clear every value, keeping the standard keys."""
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
        self._init_standard_counters()

    def print_summary(self):
        """Print estimation counts, drop reasons and run statistics."""
        snapshot = self.snapshot()
        counters = snapshot.counters

        print("\n" + "=" * 70)
        print("  METRICS SUMMARY")
        print("=" * 70)

        print(f"\nESTIMATIONS: {counters.get('estimations_started', 0)} started, "
              f"{counters.get('estimations_succeeded', 0)} succeeded, "
              f"{counters.get('estimations_failed', 0)} failed")

        print("\nCOUNTERS:")
        for name, value in sorted(counters.items()):
            print(f"  {name:30s}: {value:8d}")

        if snapshot.total_dropped() > 0:
            print("\nDROP REASONS:")
            for reason, count in sorted(snapshot.drop_reasons.items()):
                if count > 0:
                    description = self.DROP_REASONS.get(reason, 'unknown reason')
                    print(f"  {reason:30s}: {count:8d}  {description}")

        if snapshot.histograms:
            print("\nRUN STATISTICS:")
            for name in sorted(snapshot.histograms):
                stats = self.get_histogram_stats(name)
                if stats:
                    print(f"  {name}: count={stats['count']}, mean={stats['mean']:.3g}, "
                          f"median={stats['median']:.3g}, max={stats['max']:.3g}")

        print("=" * 70 + "\n")
