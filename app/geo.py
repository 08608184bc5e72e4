"""
Great-circle helpers shared by the motion, geofence and route stages.
Zone containment lives on the geofence itself (shapely polygons).

Coordinates inside documents are stored GeoJSON style, ``[lng, lat]``.
Function arguments are always ``lat, lng`` in that order.
"""
import math
from typing import Iterable, Sequence

EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points, in metres."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def path_length_m(coords: Iterable[Sequence[float]]) -> float:
    """Sum of consecutive distances over ``[lng, lat]`` pairs."""
    total = 0.0
    prev = None
    for lng, lat in coords:
        if prev is not None:
            total += haversine_m(prev[1], prev[0], lat, lng)
        prev = (lng, lat)
    return total

