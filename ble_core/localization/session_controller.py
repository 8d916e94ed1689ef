"""
Session Controller.

Owns everything that lives longer than one query: the historical store,
the raw lateration cache and the per-device Kalman states.

Per query:
1. Aggregate observations in the time window around the timestamp
2. Solve each device (memoized per (timestamp, device))
3. Smooth with the device's Kalman state (if enabled, never memoized)
4. Drop estimates with non-finite coordinates

Kalman states are reset when the dataset is reloaded, when the cache is
cleared and when smoothing is switched back on.
"""

from typing import Dict, Iterable, List, Optional, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime
import logging
import math

from ble_core.proto.observation import SensorReport
from ble_core.proto.position_estimate import DevicePositionEstimate
from ble_core.localization.reading_store import ReadingStore, parse_timestamp_ms
from ble_core.localization.lateration_solver import LaterationSolver, LaterationSolverConfig
from ble_core.localization.kalman_smoother import KalmanSmoother, KalmanSmootherConfig
from ble_core.localization.time_window import (
    TimeWindowAggregator,
    TimeWindowConfig,
    LiveReadingBuffer,
    DEFAULT_WINDOW_MS,
)
from ble_core.metrics import get_metrics

logger = logging.getLogger(__name__)

Timestamp = Union[int, float, str, datetime]


@dataclass
class SessionControllerConfig:
    """
    Configuration for a positioning session.

    Attributes:
        time_window_ms: Half-width of the aggregation window (ms)
        smoothing_enabled: Apply the Kalman smoother to solver output
        solver_config: LaterationSolver configuration
        smoother_config: KalmanSmoother configuration
    """

    time_window_ms: int = DEFAULT_WINDOW_MS
    smoothing_enabled: bool = True
    solver_config: LaterationSolverConfig = field(default_factory=LaterationSolverConfig)
    smoother_config: KalmanSmootherConfig = field(default_factory=KalmanSmootherConfig)

    def __post_init__(self):
        """Validate configuration."""
        if self.time_window_ms < 0:
            raise ValueError(f"time_window_ms cannot be negative: {self.time_window_ms}")


class SessionController:
    """
    Compute device positions for a query time.

    Usage:
        session = SessionController(config=SessionControllerConfig())
        session.load_reports(reports)

        for ts in session.timestamps:
            for estimate in session.compute_all_positions(ts):
                render(estimate)

        session.set_smoothing_enabled(False)

    Notes:
        - Not thread-safe; intra-device smoothing must run in timestamp order
        - Cached estimates are never modified, smoothing returns copies
    """

    def __init__(
        self,
        store: Optional[ReadingStore] = None,
        config: Optional[SessionControllerConfig] = None,
    ):
        """
        Initialize session.

        Args:
            store: Historical reading store (empty store if None)
            config: Session configuration (uses defaults if None)
        """
        self.config = config or SessionControllerConfig()
        self.metrics = get_metrics()

        self.store = store if store is not None else ReadingStore()
        self.aggregator = TimeWindowAggregator(
            self.store, TimeWindowConfig(window_ms=self.config.time_window_ms)
        )
        self.solver = LaterationSolver(self.config.solver_config)
        self.smoother = KalmanSmoother(self.config.smoother_config)

        self._smoothing_enabled = self.config.smoothing_enabled
        self._cache: Dict[Tuple[int, str], Optional[DevicePositionEstimate]] = {}

    @property
    def timestamps(self) -> List[int]:
        """Report timestamps of the loaded dataset (epoch ms)."""
        return self.store.timestamps

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    @property
    def is_smoothing_enabled(self) -> bool:
        return self._smoothing_enabled

    @property
    def time_window_ms(self) -> int:
        return self.aggregator.window_ms

    def load_reports(self, reports: Iterable[SensorReport]) -> int:
        """
        Replace the historical dataset.

        Returns:
            Number of reports loaded
        """
        count = self.store.load(reports)
        self.clear_cache()
        return count

    def load_entries(self, entries: Iterable[Dict]) -> Tuple[int, List[str]]:
        """
        Validate raw entries and replace the historical dataset.

        Returns:
            Tuple of (reports_loaded, error_messages)
        """
        result = self.store.load_entries(entries)
        self.clear_cache()
        return result

    def set_time_window_ms(self, window_ms: int):
        """Change the aggregation window; cached results are discarded."""
        self.aggregator.set_window_ms(window_ms)
        self._cache.clear()

    def set_smoothing_enabled(self, enabled: bool):
        """
        Enable or disable Kalman smoothing.

        Switching smoothing on starts every device from a fresh state.
        """
        was_enabled = self._smoothing_enabled
        self._smoothing_enabled = bool(enabled)

        if self._smoothing_enabled and not was_enabled:
            self.smoother.reset()

        logger.info(f"Kalman filter {'enabled' if self._smoothing_enabled else 'disabled'}")

    def clear_cache(self):
        """Drop all cached solver results and all Kalman states."""
        self._cache.clear()
        self.smoother.reset()

    def reset_smoothing_states(self):
        """Drop all Kalman states, keeping cached solver results."""
        self.smoother.reset()

    def compute_all_positions(self, timestamp: Timestamp) -> List[DevicePositionEstimate]:
        """
        Estimate the position of every device seen around a timestamp.

        Args:
            timestamp: Query time (epoch ms, ISO-8601 string or datetime)

        Returns:
            List of DevicePositionEstimate, one per device with a finite fix
        """
        timestamp_ms = parse_timestamp_ms(timestamp)
        by_device = self.aggregator.collect(timestamp_ms)

        results = []
        for device_id, observations in by_device.items():
            key = (timestamp_ms, device_id)
            if key in self._cache:
                raw = self._cache[key]
            else:
                raw = self.solver.solve(device_id, observations)
                self._cache[key] = raw

            if raw is None:
                continue

            if not raw.has_finite_position:
                self.metrics.increment_drop('non_finite_position')
                logger.debug(f"Dropping non-finite estimate for {device_id}")
                continue

            estimate = raw
            if self._smoothing_enabled:
                estimate = self._smooth(raw, timestamp_ms)

            results.append(estimate)

        self.metrics.increment('position_estimates', len(results))
        return results

    def compute_live_positions(
        self,
        buffer: LiveReadingBuffer,
        now_ms: Optional[int] = None,
    ) -> List[DevicePositionEstimate]:
        """
        Estimate positions from a live reading buffer.

        Live results are neither cached nor smoothed.

        Args:
            buffer: Buffer fed by the caller's message handler
            now_ms: Current time (epoch ms, defaults to now)

        Returns:
            List of raw DevicePositionEstimate with finite coordinates
        """
        results = []
        for device_id, observations in buffer.collect(now_ms).items():
            estimate = self.solver.solve(device_id, observations)
            if estimate is None:
                continue
            if not estimate.has_finite_position:
                self.metrics.increment_drop('non_finite_position')
                continue
            results.append(estimate)

        logger.debug(f"Computed {len(results)} live device position(s)")
        return results

    def _smooth(self, raw: DevicePositionEstimate, timestamp_ms: int) -> DevicePositionEstimate:
        """Run the raw estimate through the device's Kalman state."""
        lat, lng = self.smoother.smooth(
            raw.device_id,
            raw.lat,
            raw.lng,
            raw.variance_m,
            timestamp=timestamp_ms / 1000.0,
        )

        if not (math.isfinite(lat) and math.isfinite(lng)):
            logger.debug(f"Smoother diverged for {raw.device_id}, keeping raw position")
            return raw

        return raw.with_smoothed_position(lat, lng)
