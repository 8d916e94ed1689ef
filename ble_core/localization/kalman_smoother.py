"""
Per-Device Kalman Smoother (Constant-Velocity).

Implements one 4D constant-velocity Kalman filter per device to turn raw
lateration output into smoothed tracks.

State: [x, y, vx, vy] in meters, relative to a per-device anchor fixed at
the device's first measurement. Later measurements are re-projected into
that same frame and never re-centered.

One call is one logical step (dt = 1.0), independent of wall-clock time.
"""

from typing import Dict, Optional, Tuple
from dataclasses import dataclass, field
import logging
import math
import time

import numpy as np

from ble_core.localization.geo_projection import to_local, to_geo
from ble_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# Measurement matrix: position only
H = np.array([
    [1.0, 0.0, 0.0, 0.0],
    [0.0, 1.0, 0.0, 0.0],
])


@dataclass
class KalmanSmootherConfig:
    """
    Configuration for the Kalman smoother.

    Attributes:
        process_noise: Added to every diagonal entry of the predicted covariance
        measurement_noise: Base measurement noise, scaled by raw variance
        dt: Logical step per call
        initial_position_variance: Initial x/y variance (m^2)
        initial_velocity_variance: Initial vx/vy variance
        singular_det_threshold: Innovation determinant below which the
            update is skipped
        default_quality_m: Raw variance used when the solver reports none
    """

    process_noise: float = 0.5
    measurement_noise: float = 2.0
    dt: float = 1.0
    initial_position_variance: float = 100.0
    initial_velocity_variance: float = 10.0
    singular_det_threshold: float = 1e-10
    default_quality_m: float = 5.0

    def __post_init__(self):
        """Validate configuration."""
        if self.process_noise < 0:
            raise ValueError(f"process_noise cannot be negative: {self.process_noise}")
        if self.measurement_noise < 0:
            raise ValueError(f"measurement_noise cannot be negative: {self.measurement_noise}")
        if self.dt <= 0:
            raise ValueError(f"dt must be positive: {self.dt}")


@dataclass
class KalmanState:
    """
    Filter state of one device.

    Attributes:
        state: [x, y, vx, vy] in the device's local frame
        covariance: 4x4 state covariance
        ref_lat: Anchor latitude of the local frame (fixed at creation)
        ref_lng: Anchor longitude of the local frame (fixed at creation)
        last_update: Caller timestamp (or wall-clock seconds) of the last step
        update_count: Number of measurement steps after initialization
    """

    state: np.ndarray
    covariance: np.ndarray
    ref_lat: float
    ref_lng: float
    last_update: float = field(default_factory=time.time)
    update_count: int = 0

    @property
    def position(self) -> Tuple[float, float]:
        """Local position (x, y) in meters."""
        return (float(self.state[0]), float(self.state[1]))

    @property
    def velocity(self) -> Tuple[float, float]:
        """Local velocity (vx, vy) in meters per step."""
        return (float(self.state[2]), float(self.state[3]))


class KalmanSmoother:
    """
    Constant-velocity Kalman smoothing for every tracked device.

    Usage:
        smoother = KalmanSmoother(config)

        estimate = solver.solve(device_id, observations)
        lat, lng = smoother.smooth(
            device_id, estimate.lat, estimate.lng, estimate.variance_m
        )

        # Dataset reloaded, filter re-enabled, cache cleared
        smoother.reset()

    Notes:
        - The first call for a device returns the measurement unchanged
        - A singular innovation covariance skips the update and keeps the
          prediction
        - Noisier raw estimates (larger variance) are trusted less
    """

    def __init__(self, config: Optional[KalmanSmootherConfig] = None):
        """
        Initialize smoother.

        Args:
            config: Smoother configuration (uses defaults if None)
        """
        self.config = config or KalmanSmootherConfig()
        self.metrics = get_metrics()
        self._states: Dict[str, KalmanState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._states

    def get_state(self, device_id: str) -> Optional[KalmanState]:
        """Get the filter state of a device, or None if not tracked."""
        return self._states.get(device_id)

    def smooth(
        self,
        device_id: str,
        lat: float,
        lng: float,
        quality_m: Optional[float] = None,
        timestamp: Optional[float] = None,
    ) -> Tuple[float, float]:
        """
        Feed a raw position and get the smoothed one.

        Args:
            device_id: Device the measurement belongs to
            lat: Measured latitude (degrees)
            lng: Measured longitude (degrees)
            quality_m: Raw lateration variance (m), lower is better
            timestamp: Time recorded as last_update (defaults to now)

        Returns:
            Smoothed (lat, lng)
        """
        t_now = time.time() if timestamp is None else timestamp

        state = self._states.get(device_id)
        if state is None:
            self._states[device_id] = self._create_state(lat, lng, t_now)
            self.metrics.increment('kalman_initialized')
            return (lat, lng)

        if quality_m and math.isfinite(quality_m):
            quality = quality_m
        else:
            quality = self.config.default_quality_m
        measurement_noise = self.config.measurement_noise * (1 + quality / 10.0)

        z = np.array(to_local(lat, lng, state.ref_lat, state.ref_lng))

        self._predict(state)
        innovation = self._update(state, z, measurement_noise)

        state.last_update = t_now
        state.update_count += 1

        if innovation is not None:
            self.metrics.increment('kalman_updates')
            self.metrics.record_histogram('kalman_innovation_m', innovation)

        return to_geo(state.state[0], state.state[1], state.ref_lat, state.ref_lng)

    def reset(self):
        """Drop the filter state of every device."""
        if self._states:
            logger.debug(f"Resetting {len(self._states)} Kalman state(s)")
        self._states.clear()
        self.metrics.increment('kalman_resets')

    def reset_device(self, device_id: str) -> bool:
        """
        Drop the filter state of one device.

        Returns:
            True if the device was tracked
        """
        return self._states.pop(device_id, None) is not None

    def _create_state(self, lat: float, lng: float, t_now: float) -> KalmanState:
        """Initialize filter at the first measurement (local origin, zero velocity)."""
        covariance = np.diag([
            self.config.initial_position_variance,
            self.config.initial_position_variance,
            self.config.initial_velocity_variance,
            self.config.initial_velocity_variance,
        ])

        return KalmanState(
            state=np.zeros(4),
            covariance=covariance,
            ref_lat=lat,
            ref_lng=lng,
            last_update=t_now,
        )

    def _predict(self, state: KalmanState):
        """Predict state one logical step forward."""
        dt = self.config.dt

        # State transition matrix: constant velocity
        F = np.array([
            [1.0, 0.0, dt, 0.0],
            [0.0, 1.0, 0.0, dt],
            [0.0, 0.0, 1.0, 0.0],
            [0.0, 0.0, 0.0, 1.0],
        ])

        # Process noise: scalar on each diagonal entry
        Q = np.eye(4) * self.config.process_noise

        state.state = F @ state.state
        state.covariance = F @ state.covariance @ F.T + Q

    def _update(self, state: KalmanState, z: np.ndarray, measurement_noise: float) -> Optional[float]:
        """
        Fuse a position measurement into the predicted state.

        Returns:
            Innovation magnitude (m), or None if the update was skipped
        """
        P = state.covariance

        y = z - H @ state.state  # Innovation
        S = H @ P @ H.T + np.eye(2) * measurement_noise

        det = S[0, 0] * S[1, 1] - S[0, 1] * S[1, 0]
        if abs(det) < self.config.singular_det_threshold:
            self.metrics.increment('kalman_singular_innovation')
            logger.debug(f"Singular innovation covariance (det={det:.3e}), keeping prediction")
            return None

        S_inv = np.array([
            [S[1, 1], -S[0, 1]],
            [-S[1, 0], S[0, 0]],
        ]) / det

        K = P @ H.T @ S_inv

        state.state = state.state + K @ y
        state.covariance = (np.eye(4) - K @ H) @ P

        return float(np.linalg.norm(y))
