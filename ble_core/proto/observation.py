"""
Sensor Observation Schemas.

Defines the records flowing from the historical store into the lateration
solver: raw sensor reports as ingested, and per-device observations as
assembled for one query.
"""

from dataclasses import dataclass, field
from typing import List, Optional


def _check_coordinates(lat: float, lng: float):
    if not -90.0 <= lat <= 90.0:
        raise ValueError(f"Latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise ValueError(f"Longitude out of range: {lng}")


@dataclass(frozen=True)
class Observation:
    """
    One sensor's distance measurement to one device.

    Attributes:
        sensor_id: ID of the reporting sensor
        sensor_lat: Sensor latitude (degrees)
        sensor_lng: Sensor longitude (degrees)
        distance_m: Measured distance to the device (m)
        rssi: Signal strength (dBm), if reported

        # Diagnostics
        device_id: Hashed device identifier
        original_timestamp_ms: Timestamp of the report this reading came from
        time_offset_ms: Offset of that report from the query time

    Notes:
        - Observations are assembled per query and never mutated
        - Distance sanity bounds are applied by the solver, not here
    """

    sensor_id: str
    sensor_lat: float
    sensor_lng: float
    distance_m: float
    rssi: Optional[int] = None

    device_id: Optional[str] = None
    original_timestamp_ms: Optional[int] = None
    time_offset_ms: Optional[int] = None

    def __post_init__(self):
        """Validate observation."""
        if self.distance_m < 0:
            raise ValueError(f"Distance cannot be negative: {self.distance_m}")
        _check_coordinates(self.sensor_lat, self.sensor_lng)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'sensor_id': self.sensor_id,
            'sensor_lat': self.sensor_lat,
            'sensor_lng': self.sensor_lng,
            'distance_m': self.distance_m,
            'rssi': self.rssi,
            'original_timestamp_ms': self.original_timestamp_ms,
            'time_offset_ms': self.time_offset_ms,
        }


@dataclass(frozen=True)
class DeviceReading:
    """Distance reading for one device inside a sensor report."""

    device_id: str
    distance_m: float
    rssi: Optional[int] = None

    def __post_init__(self):
        if self.distance_m < 0:
            raise ValueError(f"Distance cannot be negative: {self.distance_m}")


@dataclass
class SensorReport:
    """
    Everything one sensor reported at one timestamp.

    Attributes:
        sensor_id: ID of the sensor
        lat: Sensor latitude (degrees)
        lng: Sensor longitude (degrees)
        timestamp_ms: Report time (epoch milliseconds)
        readings: Device readings contained in the report
    """

    sensor_id: str
    lat: float
    lng: float
    timestamp_ms: int
    readings: List[DeviceReading] = field(default_factory=list)

    def __post_init__(self):
        if not self.sensor_id:
            raise ValueError("Sensor ID cannot be empty")
        _check_coordinates(self.lat, self.lng)

    def to_observation(self, reading: DeviceReading, target_ms: Optional[int] = None) -> Observation:
        """
        Build the observation for one of this report's readings.

        Args:
            reading: Reading taken from this report
            target_ms: Query time, used to fill time_offset_ms

        Returns:
            Observation carrying the sensor position
        """
        return Observation(
            sensor_id=self.sensor_id,
            sensor_lat=self.lat,
            sensor_lng=self.lng,
            distance_m=reading.distance_m,
            rssi=reading.rssi,
            device_id=reading.device_id,
            original_timestamp_ms=self.timestamp_ms,
            time_offset_ms=None if target_ms is None else self.timestamp_ms - target_ms,
        )
