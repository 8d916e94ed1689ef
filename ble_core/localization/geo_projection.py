"""
Geo Projection.

Equirectangular conversion between geographic coordinates and a local
planar frame (meters) anchored at a caller-supplied reference point.
X points east, Y points north.

Accuracy degrades beyond ~10 km from the reference point; inside a venue
the error is well below the ranging noise.
"""

import math
from typing import Tuple

# Mean Earth radius (m)
EARTH_RADIUS_M = 6371000.0


def to_local(lat: float, lng: float, ref_lat: float, ref_lng: float) -> Tuple[float, float]:
    """
    Project a geographic point into the local frame of a reference point.

    Args:
        lat: Latitude of the point (degrees)
        lng: Longitude of the point (degrees)
        ref_lat: Latitude of the frame origin (degrees)
        ref_lng: Longitude of the frame origin (degrees)

    Returns:
        (x, y) in meters, east / north of the origin
    """
    cos_ref = math.cos(math.radians(ref_lat))

    x = (lng - ref_lng) * math.pi / 180.0 * EARTH_RADIUS_M * cos_ref
    y = (lat - ref_lat) * math.pi / 180.0 * EARTH_RADIUS_M

    return (x, y)


def to_geo(x: float, y: float, ref_lat: float, ref_lng: float) -> Tuple[float, float]:
    """
    Inverse of to_local().

    Args:
        x: East offset from the origin (m)
        y: North offset from the origin (m)
        ref_lat: Latitude of the frame origin (degrees)
        ref_lng: Longitude of the frame origin (degrees)

    Returns:
        (lat, lng) in degrees
    """
    cos_ref = math.cos(math.radians(ref_lat))

    lat = ref_lat + (y / EARTH_RADIUS_M) * (180.0 / math.pi)
    lng = ref_lng + (x / (EARTH_RADIUS_M * cos_ref)) * (180.0 / math.pi)

    return (lat, lng)


def offset_by_bearing(lat: float, lng: float, distance_m: float, bearing_rad: float) -> Tuple[float, float]:
    """
    Move a point along a bearing.

    Args:
        lat: Start latitude (degrees)
        lng: Start longitude (degrees)
        distance_m: Distance to travel (m)
        bearing_rad: Bearing clockwise from north (radians)

    Returns:
        (lat, lng) of the displaced point
    """
    x = distance_m * math.sin(bearing_rad)
    y = distance_m * math.cos(bearing_rad)
    return to_geo(x, y, lat, lng)
