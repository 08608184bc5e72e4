# app/route_matcher.py
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from geo import haversine_m, path_length_m
from logging_config import get_logger

logger = get_logger("route", "route.log")

FORWARD = "forward"
REVERSE = "reverse"


@dataclass
class RouteSituation:
    nearest_point_index: int
    nearest_route_point: Tuple[float, float]     # (lng, lat)
    distance_from_truck: float                   # metres
    cumulative_distance: float                   # metres along the route
    distance_remaining: float
    completion_percentage: float
    travel_direction: str = FORWARD
    reverse_travel_distance: float = 0.0


def nearest_vertex(lat: float, lng: float, route_path: Sequence[Sequence[float]]) -> Tuple[int, float]:
    """
    Linear scan over [lng, lat] vertices. Strict < keeps the earliest index on ties.
    """
    best_index = 0
    best_distance = float("inf")
    for i, (v_lng, v_lat) in enumerate(route_path):
        d = haversine_m(lat, lng, v_lat, v_lng)
        if d < best_distance:
            best_distance = d
            best_index = i
    return best_index, best_distance


def travel_direction(points, route_path) -> Tuple[str, float]:
    """
    Only the first and last samples of the window are compared; a window that
    goes forward and snaps back within the same batch reads as forward.
    """
    if not points or len(points) < 2:
        return FORWARD, 0.0
    first_index, _ = nearest_vertex(points[0].lat, points[0].lng, route_path)
    last_index, _ = nearest_vertex(points[-1].lat, points[-1].lng, route_path)
    if last_index < first_index:
        return REVERSE, path_length_m(p.coordinates for p in points)
    return FORWARD, 0.0


def match_route(truck_point, points: List, route_path, route_length: float) -> Optional[RouteSituation]:
    if truck_point is None or not route_path:
        logger.info("[route] Missing truck point or route path; skipping route match")
        return None

    index, distance = nearest_vertex(truck_point.lat, truck_point.lng, route_path)
    cumulative = path_length_m(route_path[: index + 1])
    route_length = route_length or 0.0
    direction, reverse_distance = travel_direction(points, route_path)

    situation = RouteSituation(
        nearest_point_index=index,
        nearest_route_point=(route_path[index][0], route_path[index][1]),
        distance_from_truck=distance,
        cumulative_distance=cumulative,
        distance_remaining=route_length - cumulative,
        completion_percentage=(cumulative / route_length * 100) if route_length > 0 else 0.0,
        travel_direction=direction,
        reverse_travel_distance=reverse_distance,
    )
    logger.info(
        f"[route] nearest={index} off_route={distance:.0f}m progress={cumulative:.0f}m "
        f"direction={direction} reverse={reverse_distance:.0f}m"
    )
    return situation
