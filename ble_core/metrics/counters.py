"""
Metrics counters and histograms implementation.

Provides thread-safe counters for:
- Lateration attempts per solver strategy
- Drop reasons (no_observations, non_finite_position, invalid_report, etc.)
- Kalman smoother statistics (initializations, updates, skipped updates)
- Histograms (raw variance, innovation magnitude)

Every estimate that is not emitted must be counted under a reason code.
"""

import logging
import threading
import time
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict
import statistics

logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """Snapshot of counter state at a point in time."""

    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        """Total estimates dropped across all reasons."""
        return sum(self.drop_reasons.values())


class MetricsCollector:
    """
    Thread-safe metrics collection.

    Usage:
        collector = MetricsCollector()
        collector.increment('lateration_attempts')
        collector.increment_drop('no_observations')
        collector.record_histogram('lateration_variance_m', 1.23)

        snapshot = collector.snapshot()
        logger.info(f"Dropped: {snapshot.total_dropped()}")
    """

    # Standard drop reason codes
    DROP_REASONS = {
        'no_observations': 'No observation left after range filtering',
        'out_of_range': 'Distance outside the sensor range bounds',
        'non_finite_position': 'Solver or smoother produced NaN/inf coordinates',
        'invalid_report': 'Malformed sensor report rejected at ingestion',
        'invalid_reading': 'Malformed device reading skipped inside a report',
        'stale_reading': 'Live reading older than the time window',
    }

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._start_time = time.time()

        # Initialize standard counters to 0 for consistent reporting
        self._init_standard_counters()

    def _init_standard_counters(self):
        """Initialize standard counter keys."""
        standard_counters = [
            'reports_loaded',
            'lateration_attempts',
            'lateration_single_sensor',
            'lateration_two_sensor',
            'lateration_multi_sensor',
            'lateration_degenerate_geometry',
            'kalman_initialized',
            'kalman_updates',
            'kalman_singular_innovation',
            'position_estimates',
        ]

        with self._lock:
            for counter in standard_counters:
                if counter not in self._counters:
                    self._counters[counter] = 0

            # Initialize all drop reasons to 0
            for reason in self.DROP_REASONS:
                if reason not in self._drop_reasons:
                    self._drop_reasons[reason] = 0

    def increment(self, counter_name: str, value: int = 1):
        """
        Increment a counter by value.

        Args:
            counter_name: Name of counter to increment
            value: Amount to increment (default 1)
        """
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Increment drop counter for specific reason.

        Args:
            reason: Drop reason code (should be in DROP_REASONS)
            value: Amount to increment (default 1)
        """
        if reason not in self.DROP_REASONS:
            # Unknown reasons are still counted
            logger.warning(f"Unknown drop reason '{reason}'")

        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['estimates_dropped'] += value

    def get_counter(self, counter_name: str) -> int:
        """
        Get current value of a counter.

        Args:
            counter_name: Name of counter

        Returns:
            Current counter value
        """
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        """Get current count for a drop reason."""
        with self._lock:
            return self._drop_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record a value in a histogram.

        Args:
            histogram_name: Name of histogram
            value: Value to record
            max_samples: Maximum samples to keep (prevents unbounded growth)
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)

            # Keep only recent samples to bound memory
            if len(samples) > max_samples:
                self._histograms[histogram_name] = samples[-max_samples//2:]

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Get statistics for a histogram.

        Args:
            histogram_name: Name of histogram

        Returns:
            Dict with min, max, mean, median, p95, count
            None if histogram is empty
        """
        with self._lock:
            samples = self._histograms.get(histogram_name, [])

            if not samples:
                return None

            sorted_samples = sorted(samples)
            count = len(sorted_samples)

            return {
                'count': count,
                'min': sorted_samples[0],
                'max': sorted_samples[-1],
                'mean': statistics.mean(sorted_samples),
                'median': statistics.median(sorted_samples),
                'p95': sorted_samples[int(count * 0.95)] if count > 1 else sorted_samples[0],
            }

    def snapshot(self) -> CounterSnapshot:
        """
        Get a snapshot of current metrics state.

        Returns:
            CounterSnapshot with copies of all metrics
        """
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )

    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
            self._start_time = time.time()
        self._init_standard_counters()

    def get_uptime(self) -> float:
        """Get uptime in seconds since initialization."""
        return time.time() - self._start_time

    def format_summary(self) -> str:
        """
        Render a per-session diagnostics report.

        Counters are grouped by pipeline stage (ingestion, lateration,
        smoothing), drop reasons are listed with their description, and
        histograms with count / mean / p95.
        """
        snapshot = self.snapshot()
        counters = snapshot.counters

        stages = [
            ("Ingestion", ('reports_loaded',)),
            ("Lateration", tuple(sorted(k for k in counters if k.startswith('lateration_')))),
            ("Smoothing", tuple(sorted(k for k in counters if k.startswith('kalman_')))),
            ("Output", ('position_estimates', 'estimates_dropped')),
        ]

        lines = [f"Positioning metrics after {self.get_uptime():.1f}s"]
        for title, names in stages:
            lines.append(f"[{title}]")
            for name in names:
                lines.append(f"  {name:<32}{counters.get(name, 0):>8}")

        dropped = [(r, n) for r, n in sorted(snapshot.drop_reasons.items()) if n]
        if dropped:
            lines.append("[Drops]")
            for reason, count in dropped:
                description = self.DROP_REASONS.get(reason, "unknown reason")
                lines.append(f"  {reason:<32}{count:>8}  {description}")

        for name in sorted(snapshot.histograms):
            stats = self.get_histogram_stats(name)
            if stats:
                lines.append(
                    f"[{name}] n={stats['count']} mean={stats['mean']:.3f} "
                    f"p95={stats['p95']:.3f} max={stats['max']:.3f}"
                )

        return "\n".join(lines)
