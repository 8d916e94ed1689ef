"""
Device Position Estimate Output Schema.

Defines the output format of the lateration solver and the session
controller, consumed by the rendering collaborator.
"""

from dataclasses import dataclass, field, replace
from typing import List, Optional
from enum import Enum, IntEnum
import math

from ble_core.proto.observation import Observation


class QualityLevel(str, Enum):
    """Coarse confidence classification, driven by sensor count."""

    HIGH = "high"        # 3+ sensors, true lateration
    MEDIUM = "medium"    # 2 sensors, point on the sensor baseline
    LOW = "low"          # 1 sensor, point on the range circle


class SolverStrategy(IntEnum):
    """Lateration strategy chosen from the filtered sensor count."""

    NONE = 0            # No usable observation
    SINGLE_SENSOR = 1
    TWO_SENSOR = 2
    MULTI_SENSOR = 3


def select_strategy(sensor_count: int) -> SolverStrategy:
    """
    Map a filtered sensor count to its solver strategy.

    Args:
        sensor_count: Number of observations left after filtering

    Returns:
        SolverStrategy for that count
    """
    if sensor_count <= 0:
        return SolverStrategy.NONE
    if sensor_count == 1:
        return SolverStrategy.SINGLE_SENSOR
    if sensor_count == 2:
        return SolverStrategy.TWO_SENSOR
    return SolverStrategy.MULTI_SENSOR


QUALITY_BY_STRATEGY = {
    SolverStrategy.SINGLE_SENSOR: QualityLevel.LOW,
    SolverStrategy.TWO_SENSOR: QualityLevel.MEDIUM,
    SolverStrategy.MULTI_SENSOR: QualityLevel.HIGH,
}

CONFIDENCE_BY_STRATEGY = {
    SolverStrategy.SINGLE_SENSOR: 0.2,
    SolverStrategy.TWO_SENSOR: 0.5,
    SolverStrategy.MULTI_SENSOR: 1.0,
}


@dataclass
class DevicePositionEstimate:
    """
    Position estimate for one device at one query time.

    Attributes:
        device_id: Hashed device identifier
        lat: Final latitude (smoothed if smoothing applied)
        lng: Final longitude (smoothed if smoothing applied)
        quality_level: HIGH / MEDIUM / LOW
        sensor_count: Number of sensors used after filtering
        confidence: 0.2 / 0.5 / 1.0 by sensor count
        variance_m: Residual-based spread of the raw solution (m)
        raw_lat: Latitude straight from the solver
        raw_lng: Longitude straight from the solver
        smoothed: True if lat/lng come from the Kalman smoother
        observations: Observations used (for debug overlays)
        strategy: Solver strategy that produced the raw position

    Notes:
        - quality_level and confidence ignore the residual on purpose
        - Solver output has lat == raw_lat and smoothed == False
    """

    device_id: str
    lat: float
    lng: float
    quality_level: QualityLevel
    sensor_count: int
    confidence: float
    variance_m: float
    raw_lat: float
    raw_lng: float
    smoothed: bool = False
    observations: List[Observation] = field(default_factory=list)
    strategy: Optional[SolverStrategy] = None

    def __post_init__(self):
        """Validate position estimate."""
        if not 0 <= self.confidence <= 1:
            raise ValueError(f"Confidence must be in [0,1]: {self.confidence}")

        if self.sensor_count < 0:
            raise ValueError(f"Sensor count cannot be negative: {self.sensor_count}")

    @property
    def has_finite_position(self) -> bool:
        """Check that the final lat/lng are finite numbers."""
        return math.isfinite(self.lat) and math.isfinite(self.lng)

    def with_smoothed_position(self, lat: float, lng: float) -> "DevicePositionEstimate":
        """
        Copy of this estimate carrying a smoothed position.

        The raw position is kept, the receiver is left untouched so that
        cached solver output never changes.
        """
        return replace(self, lat=lat, lng=lng, smoothed=True)

    def to_dict(self, include_observations: bool = True) -> dict:
        """Convert to dictionary for serialization."""
        data = {
            'device_id': self.device_id,
            'lat': self.lat,
            'lng': self.lng,
            'quality_level': self.quality_level.value,
            'sensor_count': self.sensor_count,
            'confidence': self.confidence,
            'variance_m': self.variance_m,
            'raw_lat': self.raw_lat,
            'raw_lng': self.raw_lng,
            'smoothed': self.smoothed,
            'strategy': self.strategy.name if self.strategy is not None else None,
        }
        if include_observations:
            data['observations'] = [obs.to_dict() for obs in self.observations]
        return data
