"""
Localization Module: Projection, lateration, smoothing, aggregation.

Key classes:
- geo_projection: Geographic <-> local planar (meter) transforms
- LaterationSolver: 1 / 2 / 3+ sensor position estimation
- KalmanSmoother: Per-device constant-velocity smoothing
- ReadingStore: Historical sensor reports, ingestion validation
- TimeWindowAggregator: Window synchronization of asynchronous readings
- LiveReadingBuffer: Trailing window for live reports
- SessionController: Cache and Kalman state lifecycle per session
"""

from .geo_projection import (
    EARTH_RADIUS_M,
    to_local,
    to_geo,
    offset_by_bearing,
)
from .lateration_solver import (
    LaterationSolver,
    LaterationSolverConfig,
    device_bearing_rad,
)
from .kalman_smoother import (
    KalmanSmoother,
    KalmanSmootherConfig,
    KalmanState,
)
from .reading_store import (
    ReadingStore,
    InvalidReportError,
    parse_sensor_report,
    parse_timestamp_ms,
)
from .time_window import (
    TimeWindowAggregator,
    TimeWindowConfig,
    LiveReadingBuffer,
    DEFAULT_WINDOW_MS,
)
from .session_controller import (
    SessionController,
    SessionControllerConfig,
)

__all__ = [
    # Projection
    'EARTH_RADIUS_M',
    'to_local',
    'to_geo',
    'offset_by_bearing',
    # Lateration
    'LaterationSolver',
    'LaterationSolverConfig',
    'device_bearing_rad',
    # Smoothing
    'KalmanSmoother',
    'KalmanSmootherConfig',
    'KalmanState',
    # Historical store
    'ReadingStore',
    'InvalidReportError',
    'parse_sensor_report',
    'parse_timestamp_ms',
    # Aggregation
    'TimeWindowAggregator',
    'TimeWindowConfig',
    'LiveReadingBuffer',
    'DEFAULT_WINDOW_MS',
    # Session
    'SessionController',
    'SessionControllerConfig',
]
