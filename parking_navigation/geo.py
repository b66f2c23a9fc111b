"""
Geographic helpers for route tracking
All coordinates are (longitude, latitude) pairs, distances are meters
"""
import math
from typing import Iterable, Sequence, Tuple

from geopy.distance import great_circle

Coordinate = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0


def haversine_distance(point1: Coordinate, point2: Coordinate) -> float:
    """Great-circle distance in meters on a 6,371 km sphere"""
    return great_circle(
        (point1[1], point1[0]),
        (point2[1], point2[0]),
        radius=EARTH_RADIUS_KM
    ).meters


def interpolate(origin: Coordinate, destination: Coordinate, fraction: float) -> Coordinate:
    """Linear interpolation in lon/lat space (not geodesic)"""
    return (
        origin[0] + (destination[0] - origin[0]) * fraction,
        origin[1] + (destination[1] - origin[1]) * fraction,
    )


def nearest_vertex_distance(point: Coordinate, geometry: Iterable[Coordinate]) -> float:
    """Minimum distance from point to any vertex of the polyline"""
    min_distance = math.inf
    for vertex in geometry:
        distance = haversine_distance(point, vertex)
        if distance < min_distance:
            min_distance = distance
    return min_distance


def distance_to_segment(point: Coordinate, start: Coordinate, end: Coordinate) -> float:
    """Distance from point to the segment start-end, projected on a local plane"""
    scale_x = math.cos(math.radians(point[1]))
    ax, ay = (start[0] - point[0]) * scale_x, start[1] - point[1]
    bx, by = (end[0] - point[0]) * scale_x, end[1] - point[1]
    dx, dy = bx - ax, by - ay

    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return haversine_distance(point, start)

    # Closest point parameter, clamped to the segment
    t = max(0.0, min(1.0, -(ax * dx + ay * dy) / length_sq))
    return haversine_distance(point, interpolate(start, end, t))


def nearest_segment_distance(point: Coordinate, geometry: Sequence[Coordinate]) -> float:
    """Minimum distance from point to any segment of the polyline"""
    if len(geometry) == 1:
        return haversine_distance(point, geometry[0])

    return min(
        (distance_to_segment(point, geometry[i], geometry[i + 1]) for i in range(len(geometry) - 1)),
        default=math.inf
    )
