"""
Metrics Module: Diagnostics, counters, histograms.

Every estimate the engine refuses to emit is counted under a drop reason,
so callers can surface how many devices went missing from a query and why.

Usage:
    from ble_core.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('lateration_attempts')
    metrics.increment_drop('no_observations')
    metrics.record_histogram('lateration_variance_m', 1.23)
"""

from .counters import MetricsCollector, CounterSnapshot

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.

    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics in place (for testing)."""
    get_metrics().reset()


__all__ = ['MetricsCollector', 'CounterSnapshot', 'get_metrics', 'reset_metrics']
