"""
Unit tests for metrics module.

Tests cover:
- Counter increment (single-threaded and multi-threaded)
- Drop reason tracking
- Histogram recording and statistics
- Snapshot and reset functionality
"""

import logging
import threading

from rpe_core.metrics import MetricsCollector, get_metrics, reset_metrics


class TestMetricsCollectorBasic:
    """Tests for basic metrics collector functionality."""

    def test_initialization(self):
        """Test that standard counters start at 0."""
        collector = MetricsCollector()

        assert collector.get_counter('estimations_started') == 0
        assert collector.get_counter('promeds_iterations') == 0
        assert collector.get_counter('unknown_counter') == 0

    def test_increment_counter(self):
        """Test incrementing a counter."""
        collector = MetricsCollector()

        collector.increment('lateration_solves')
        collector.increment('lateration_solves', 5)

        assert collector.get_counter('lateration_solves') == 6

    def test_increment_drop_with_valid_reason(self):
        """Test incrementing drop counter with a standard reason."""
        collector = MetricsCollector()

        collector.increment_drop('preliminary_solve_failed')

        assert collector.get_counter('items_dropped') == 1
        assert collector.get_drop_count('preliminary_solve_failed') == 1

    def test_increment_drop_unknown_reason(self, caplog):
        """Test that an unknown reason logs a warning and is still counted."""
        collector = MetricsCollector()

        with caplog.at_level(logging.WARNING, logger='rpe_core.metrics.counters'):
            collector.increment_drop('mystery')

        assert 'mystery' in caplog.text
        assert collector.get_drop_count('mystery') == 1
        assert collector.get_counter('items_dropped') == 1

    def test_drop_reasons_initialized_to_zero(self):
        """Test that every standard drop reason starts at 0."""
        snapshot = MetricsCollector().snapshot()

        for reason in MetricsCollector.DROP_REASONS:
            assert snapshot.drop_reasons[reason] == 0

    def test_total_dropped(self):
        """Test snapshot drop totals."""
        collector = MetricsCollector()
        collector.increment_drop('unmatched_reading', 3)
        collector.increment_drop('refine_failed', 1)

        snapshot = collector.snapshot()

        assert snapshot.total_dropped() == 4
        assert snapshot.counters['items_dropped'] == 4


class TestHistograms:
    """Tests for histogram functionality."""

    def test_record_histogram(self):
        """Test recording values in a histogram."""
        collector = MetricsCollector()

        for value in (1.0, 3.0, 2.0):
            collector.record_histogram('promeds_best_score', value)

        stats = collector.get_histogram_stats('promeds_best_score')
        assert stats['count'] == 3
        assert stats['min'] == 1.0
        assert stats['max'] == 3.0
        assert stats['median'] == 2.0

    def test_histogram_empty(self):
        """Test stats of an unknown histogram."""
        assert MetricsCollector().get_histogram_stats('nonexistent') is None

    def test_histogram_bounded(self):
        """Test that histograms keep the most recent samples only."""
        collector = MetricsCollector()

        for i in range(1500):
            collector.record_histogram('promeds_inlier_ratio', float(i), max_samples=1000)

        samples = collector.snapshot().histograms['promeds_inlier_ratio']
        assert len(samples) <= 1000
        assert samples[-1] == 1499.0


class TestSnapshotAndReset:
    """Tests for snapshot and reset."""

    def test_snapshot_is_a_copy(self):
        """Test that snapshots are independent of later updates."""
        collector = MetricsCollector()
        collector.increment('estimations_started', 2)

        snapshot = collector.snapshot()
        collector.increment('estimations_started')

        assert snapshot.counters['estimations_started'] == 2
        assert collector.get_counter('estimations_started') == 3

    def test_reset_reinitializes_standard_counters(self):
        """Test that reset clears values but keeps standard keys."""
        collector = MetricsCollector()
        collector.increment('estimations_started', 5)
        collector.increment_drop('refine_failed')
        collector.record_histogram('promeds_best_score', 1.0)

        collector.reset()

        snapshot = collector.snapshot()
        assert snapshot.counters['estimations_started'] == 0
        assert snapshot.total_dropped() == 0
        assert not snapshot.histograms
        assert 'refine_failed' in snapshot.drop_reasons


class TestThreadSafety:
    """Tests for thread-safe operations."""

    def test_concurrent_increment(self):
        """Test that concurrent increments are not lost."""
        collector = MetricsCollector()

        def worker():
            for _ in range(1000):
                collector.increment('promeds_iterations')
                collector.increment_drop('preliminary_solve_failed')

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_counter('promeds_iterations') == 8000
        assert collector.get_drop_count('preliminary_solve_failed') == 8000


class TestGlobalSingleton:
    """Tests for the global metrics singleton."""

    def test_get_metrics_returns_same_instance(self):
        """Test singleton identity."""
        assert get_metrics() is get_metrics()

    def test_reset_metrics_creates_new_instance(self):
        """Test that reset_metrics() replaces the collector."""
        metrics = get_metrics()
        metrics.increment('estimations_started', 100)

        reset_metrics()

        assert get_metrics() is not metrics
        assert get_metrics().get_counter('estimations_started') == 0


class TestPrintSummary:
    """Tests for print_summary."""

    def test_print_summary(self, capsys):
        """Test that the summary lists counters, drops and histograms."""
        collector = MetricsCollector()
        collector.increment('estimations_started', 3)
        collector.increment_drop('refine_failed')
        collector.record_histogram('promeds_best_score', 1e-6)

        collector.print_summary()

        out = capsys.readouterr().out
        assert 'METRICS SUMMARY' in out
        assert 'estimations_started' in out
        assert 'refine_failed' in out
        assert 'promeds_best_score' in out
        assert 'Final refinement failed' in out
        assert '3 started, 0 succeeded, 0 failed' in out
