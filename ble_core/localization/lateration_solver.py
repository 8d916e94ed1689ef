"""
Lateration Solver (1 / 2 / 3+ sensors).

Computes a 2D device position from the distances reported by fixed
sensors at one query time. The strategy depends on how many observations
survive range filtering:

- 1 sensor:  point on the range circle at a per-device bearing (LOW)
- 2 sensors: point on the sensor baseline (MEDIUM)
- 3+ sensors: weighted linear least squares (HIGH)

Quality level and confidence are keyed on sensor count only; the residual
is reported as variance_m but does not affect them.
"""

from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass
import logging
import math

import numpy as np

from ble_core.proto.observation import Observation
from ble_core.proto.position_estimate import (
    DevicePositionEstimate,
    SolverStrategy,
    select_strategy,
    QUALITY_BY_STRATEGY,
    CONFIDENCE_BY_STRATEGY,
)
from ble_core.localization.geo_projection import to_local, to_geo, offset_by_bearing
from ble_core.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class LaterationSolverConfig:
    """
    Configuration for the lateration solver.

    Attributes:
        min_distance_m: Distances at or below this are discarded (m)
        max_distance_m: Distances at or above this are discarded (m)
        singular_det_threshold: Normal-equation determinant below which the
            sensor geometry is treated as degenerate
        t_min: Lower clamp of the two-sensor interpolation parameter
        t_max: Upper clamp of the two-sensor interpolation parameter
    """

    min_distance_m: float = 0.0
    max_distance_m: float = 200.0     # BLE sensor range sanity bound
    singular_det_threshold: float = 1e-10
    t_min: float = -0.5
    t_max: float = 1.5

    def __post_init__(self):
        """Validate configuration."""
        if self.min_distance_m < 0:
            raise ValueError(f"min_distance_m cannot be negative: {self.min_distance_m}")
        if self.max_distance_m <= self.min_distance_m:
            raise ValueError("max_distance_m must be greater than min_distance_m")
        if self.t_max < self.t_min:
            raise ValueError("t_max must not be below t_min")


def device_bearing_rad(device_id: Optional[str]) -> float:
    """
    Deterministic bearing for a device, in radians.

    The identifier is hashed with the 32-bit "h * 31 + c" string hash over
    UTF-16 code units, and abs(hash) % 360 is used as the bearing in
    degrees. The same device always lands on the same side of its sensor.

    Args:
        device_id: Hashed device identifier (None/empty gives bearing 0)

    Returns:
        Bearing clockwise from north (radians)
    """
    if not device_id:
        return 0.0

    h = 0
    units = device_id.encode('utf-16-le')
    for i in range(0, len(units), 2):
        code = units[i] | (units[i + 1] << 8)
        h = (h * 31 + code) & 0xFFFFFFFF

    if h >= 0x80000000:
        h -= 0x100000000

    return math.radians(abs(h) % 360)


class LaterationSolver:
    """
    Estimate a device position from per-sensor distances.

    Usage:
        solver = LaterationSolver()

        observations = [obs_a, obs_b, obs_c]   # Observation
        estimate = solver.solve("dev-1", observations)

        if estimate is not None:
            print(estimate.lat, estimate.lng, estimate.quality_level)

    Notes:
        - Returns None when no observation survives range filtering
        - Sensors are projected around their own centroid, so the local
          frame differs from call to call
    """

    def __init__(self, config: Optional[LaterationSolverConfig] = None):
        """
        Initialize lateration solver.

        Args:
            config: Solver configuration (uses defaults if None)
        """
        self.config = config or LaterationSolverConfig()
        self.metrics = get_metrics()

    def filter_observations(self, observations: List[Observation]) -> List[Observation]:
        """Keep observations whose distance is inside the sensor range bounds."""
        return [
            obs for obs in observations
            if self.config.min_distance_m < obs.distance_m < self.config.max_distance_m
        ]

    def solve(
        self,
        device_id: str,
        observations: List[Observation],
    ) -> Optional[DevicePositionEstimate]:
        """
        Solve device position from its observations.

        Args:
            device_id: Device the observations belong to
            observations: Observations for one device at one instant

        Returns:
            DevicePositionEstimate, or None if no observation is usable
        """
        self.metrics.increment('lateration_attempts')

        valid_obs = self.filter_observations(observations)
        rejected = len(observations) - len(valid_obs)
        if rejected:
            self.metrics.increment_drop('out_of_range', rejected)

        strategy = select_strategy(len(valid_obs))
        if strategy == SolverStrategy.NONE:
            self.metrics.increment_drop('no_observations')
            logger.debug(f"No usable observation for {device_id}")
            return None

        if strategy == SolverStrategy.SINGLE_SENSOR:
            lat, lng, variance = self._solve_single(device_id, valid_obs[0])
            self.metrics.increment('lateration_single_sensor')
        else:
            # Project sensors around their centroid
            ref_lat = sum(obs.sensor_lat for obs in valid_obs) / len(valid_obs)
            ref_lng = sum(obs.sensor_lng for obs in valid_obs) / len(valid_obs)

            points = np.array([
                to_local(obs.sensor_lat, obs.sensor_lng, ref_lat, ref_lng)
                for obs in valid_obs
            ])
            distances = np.array([obs.distance_m for obs in valid_obs])

            if strategy == SolverStrategy.TWO_SENSOR:
                pos, variance = self._solve_two(points, distances)
                self.metrics.increment('lateration_two_sensor')
            else:
                rssi = [obs.rssi for obs in valid_obs]
                pos, variance = self._solve_multi(points, distances, rssi)
                self.metrics.increment('lateration_multi_sensor')

            if not variance:
                # Exactly consistent circles: report the mean range error instead
                variance = self._mean_abs_residual(pos, points, distances)

            lat, lng = to_geo(pos[0], pos[1], ref_lat, ref_lng)

        logger.debug(
            f"Device {device_id}: {strategy.name} with {len(valid_obs)} sensor(s), "
            f"variance {variance:.2f} m"
        )
        self.metrics.record_histogram('lateration_variance_m', variance)

        return DevicePositionEstimate(
            device_id=device_id,
            lat=lat,
            lng=lng,
            quality_level=QUALITY_BY_STRATEGY[strategy],
            sensor_count=len(valid_obs),
            confidence=CONFIDENCE_BY_STRATEGY[strategy],
            variance_m=variance,
            raw_lat=lat,
            raw_lng=lng,
            smoothed=False,
            observations=list(valid_obs),
            strategy=strategy,
        )

    def _solve_single(self, device_id: str, obs: Observation) -> Tuple[float, float, float]:
        """
        Place the device on the range circle of a single sensor.

        Returns:
            Tuple of (lat, lng, variance_m)
        """
        bearing = device_bearing_rad(device_id)
        lat, lng = offset_by_bearing(obs.sensor_lat, obs.sensor_lng, obs.distance_m, bearing)
        return lat, lng, obs.distance_m

    def _solve_two(
        self,
        points: np.ndarray,
        distances: np.ndarray,
    ) -> Tuple[np.ndarray, float]:
        """
        Place the device on the line through two sensors.

        t = (D^2 + d1^2 - d2^2) / (2 D^2) is the foot of the chord where the
        two range circles would intersect, clamped to allow bounded
        extrapolation past either sensor.

        Returns:
            Tuple of (pos_local, variance_m)
        """
        p1, p2 = points[0], points[1]
        d1, d2 = float(distances[0]), float(distances[1])

        baseline = p2 - p1
        sensor_dist = float(np.hypot(baseline[0], baseline[1]))

        if sensor_dist == 0:
            # Coincident sensors
            return p1.copy(), 0.0

        t = (sensor_dist ** 2 + d1 ** 2 - d2 ** 2) / (2 * sensor_dist ** 2)
        t = min(max(t, self.config.t_min), self.config.t_max)

        pos = p1 + t * baseline
        variance = abs(d1 + d2 - sensor_dist)

        return pos, variance

    def _solve_multi(
        self,
        points: np.ndarray,
        distances: np.ndarray,
        rssi: List[Optional[int]],
    ) -> Tuple[np.ndarray, float]:
        """
        Weighted linear least squares for 3+ sensors.

        Subtracting the first circle equation from the others gives n-1 rows
            2(x_i - x_1) x + 2(y_i - y_1) y = d_1^2 - d_i^2 + x_i^2 - x_1^2 + y_i^2 - y_1^2
        solved through the 2x2 normal equations (A^T W A) p = A^T W b.

        Returns:
            Tuple of (pos_local, variance_m)
        """
        ref = points[0]
        d_ref = distances[0]

        rows = points[1:]
        A = 2.0 * (rows - ref)
        b = (
            d_ref ** 2 - distances[1:] ** 2
            + rows[:, 0] ** 2 - ref[0] ** 2
            + rows[:, 1] ** 2 - ref[1] ** 2
        )

        # Closer readings and stronger signals are trusted more.
        # An RSSI of 0 means the sensor did not report one.
        dist_weight = 1.0 / (distances[1:] + 1.0)
        rssi_weight = np.array([
            1.0 if not r else 10.0 ** ((r + 100.0) / 20.0)
            for r in rssi[1:]
        ])
        weights = dist_weight * rssi_weight

        pos = self._solve_weighted_least_squares(A, b, weights)

        est_dist = np.hypot(points[:, 0] - pos[0], points[:, 1] - pos[1])
        variance = float(np.sqrt(np.mean((est_dist - distances) ** 2)))

        return pos, variance

    def _solve_weighted_least_squares(
        self,
        A: np.ndarray,
        b: np.ndarray,
        weights: np.ndarray,
    ) -> np.ndarray:
        """
        Solve (A^T W A) p = A^T W b with the closed-form 2x2 inverse.

        Falls back to the unweighted mean of the A rows when the sensors
        are collinear or coincident.
        """
        wA = A * weights[:, np.newaxis]
        ata = A.T @ wA            # 2x2
        atb = wA.T @ b            # 2

        det = ata[0, 0] * ata[1, 1] - ata[0, 1] * ata[1, 0]

        if abs(det) < self.config.singular_det_threshold:
            self.metrics.increment('lateration_degenerate_geometry')
            logger.debug(f"Degenerate sensor geometry (det={det:.3e}), using centroid")
            return A.mean(axis=0)

        return np.array([
            (ata[1, 1] * atb[0] - ata[0, 1] * atb[1]) / det,
            (ata[0, 0] * atb[1] - ata[1, 0] * atb[0]) / det,
        ])

    @staticmethod
    def _mean_abs_residual(
        pos: np.ndarray,
        points: np.ndarray,
        distances: np.ndarray,
    ) -> float:
        """Mean absolute difference between fitted and measured ranges (m)."""
        est_dist = np.hypot(points[:, 0] - pos[0], points[:, 1] - pos[1])
        return float(np.mean(np.abs(est_dist - distances)))

    def solve_all(
        self,
        observations_by_device: Dict[str, List[Observation]],
    ) -> Dict[str, DevicePositionEstimate]:
        """
        Solve every device in a grouped observation map.

        Devices without an estimate are left out of the result.
        """
        results = {}
        for device_id, observations in observations_by_device.items():
            estimate = self.solve(device_id, observations)
            if estimate is not None:
                results[device_id] = estimate
        return results
