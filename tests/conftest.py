"""
Pytest configuration and shared fixtures for the BLE position engine tests.

This module provides reusable sensor layouts, observation builders and
geometry helpers for testing projection, lateration, smoothing,
aggregation and the session controller.
"""

import sys
import math
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from ble_core.localization import to_local, to_geo
from ble_core.metrics import reset_metrics
from ble_core.proto import DeviceReading, Observation, SensorReport


BASE_LAT = 50.0
BASE_LNG = 6.0
T0_MS = 1714564800000  # 2024-05-01T12:00:00Z


@pytest.fixture(autouse=True)
def clean_metrics():
    """Start every test with zeroed global metrics."""
    reset_metrics()
    yield


# =============================================================================
# Sensor Layout Fixtures
# =============================================================================


@pytest.fixture
def triangle_sensors() -> Dict[str, Tuple[float, float]]:
    """
    Three sensors forming a ~110 m triangle.

    Returns:
        Sensor ID to (lat, lng).
    """
    return {
        "S1": (50.0, 6.0),
        "S2": (50.001, 6.0),
        "S3": (50.0005, 6.001),
    }


@pytest.fixture
def small_triangle_sensors() -> Dict[str, Tuple[float, float]]:
    """
    Three sensors placed in meters around the base point.

    Local layout: S1=(0, 0), S2=(30, 0), S3=(10, 25).
    """
    return {
        sid: to_geo(x, y, BASE_LAT, BASE_LNG)
        for sid, (x, y) in {
            "S1": (0.0, 0.0),
            "S2": (30.0, 0.0),
            "S3": (10.0, 25.0),
        }.items()
    }


# =============================================================================
# Helper Functions
# =============================================================================


def centroid(sensors: Dict[str, Tuple[float, float]]) -> Tuple[float, float]:
    """Arithmetic mean of sensor lat/lng."""
    lats = [p[0] for p in sensors.values()]
    lngs = [p[1] for p in sensors.values()]
    return (sum(lats) / len(lats), sum(lngs) / len(lngs))


def distances_in_solver_frame(
    sensors: Dict[str, Tuple[float, float]],
    point: Tuple[float, float],
    decimals: Optional[int] = None,
) -> Dict[str, float]:
    """
    Distances from each sensor to a point, measured in the local frame
    anchored at the sensor centroid (the frame the solver uses).

    Args:
        sensors: Sensor ID to (lat, lng).
        point: Device (lat, lng).
        decimals: Round distances to this many decimals if given.

    Returns:
        Sensor ID to distance in meters.
    """
    ref_lat, ref_lng = centroid(sensors)
    px, py = to_local(point[0], point[1], ref_lat, ref_lng)

    result = {}
    for sid, (lat, lng) in sensors.items():
        sx, sy = to_local(lat, lng, ref_lat, ref_lng)
        d = math.hypot(px - sx, py - sy)
        result[sid] = round(d, decimals) if decimals is not None else d
    return result


def make_observations(
    sensors: Dict[str, Tuple[float, float]],
    distances: Dict[str, float],
    rssi: Optional[Dict[str, int]] = None,
    device_id: str = "dev-1",
) -> List[Observation]:
    """Build observations for one device from sensor positions and distances."""
    rssi = rssi or {}
    return [
        Observation(
            sensor_id=sid,
            sensor_lat=sensors[sid][0],
            sensor_lng=sensors[sid][1],
            distance_m=distances[sid],
            rssi=rssi.get(sid),
            device_id=device_id,
        )
        for sid in distances
    ]


def make_report(
    sensor_id: str,
    position: Tuple[float, float],
    timestamp_ms: int,
    readings: Dict[str, float],
    rssi: Optional[int] = None,
) -> SensorReport:
    """Build a SensorReport from device ID -> distance."""
    return SensorReport(
        sensor_id=sensor_id,
        lat=position[0],
        lng=position[1],
        timestamp_ms=timestamp_ms,
        readings=[
            DeviceReading(device_id=device_id, distance_m=d, rssi=rssi)
            for device_id, d in readings.items()
        ],
    )


def local_distance(p1: Tuple[float, float], p2: Tuple[float, float]) -> float:
    """
    Distance in meters between two geographic points, using the
    equirectangular frame anchored at the first one.
    """
    x, y = to_local(p2[0], p2[1], p1[0], p1[1])
    return math.hypot(x, y)
