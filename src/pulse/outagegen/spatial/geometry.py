"""
Geometry kernel for outage polygon construction.

Planar helpers work on ``(x, y)`` tuples (or arrays) in meters, produced by
``LocalProjection``: an equirectangular projection at 111,000 m per degree.
That approximation is used for everything at buffer-radius scale (clustering,
hulls, overlap tests).

Spherical helpers work on ``Coordinate`` values and use a spherical earth of
radius 6,371 km through ``pyproj.Geod``. They are used for confidence
catchments, bounding radii and perimeters only; the two models are never
mixed inside one computation.
"""

import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pyproj

from pulse.outagegen import constants
from pulse.outagegen.models import Coordinate

Point = Tuple[float, float]

_GEOD = pyproj.Geod(a=constants.EARTH_RADIUS_METERS, b=constants.EARTH_RADIUS_METERS)


# -------------------------------------------------------------------
# Planar
# -------------------------------------------------------------------

def cross(o: Point, a: Point, b: Point) -> float:
    """Z component of (a - o) x (b - o); positive for a left turn."""
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def perpendicular_distance(p: Point, a: Point, b: Point) -> float:
    """Distance from ``p`` to the line through ``a`` and ``b``."""
    dx = b[0] - a[0]
    dy = b[1] - a[1]
    length = math.hypot(dx, dy)
    if length == 0:
        return math.hypot(p[0] - a[0], p[1] - a[1])
    return abs(cross(a, b, p)) / length


def point_in_polygon(point: Point, ring: Sequence[Point]) -> bool:
    """
    Even-odd ray casting test.

    ``ring`` may be open or closed; any consistent axis order works, so the
    function accepts planar points as well as ``Coordinate`` values.
    """
    x, y = point[0], point[1]
    inside = False
    n = len(ring)
    j = n - 1
    for i in range(n):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def polygon_area(ring: Sequence[Point]) -> float:
    """Signed shoelace area; positive for counter-clockwise (x, y) rings."""
    n = len(ring)
    if n < 3:
        return 0.0
    total = 0.0
    for i in range(n):
        x1, y1 = ring[i][0], ring[i][1]
        x2, y2 = ring[(i + 1) % n][0], ring[(i + 1) % n][1]
        total += x1 * y2 - x2 * y1
    return total / 2


def is_convex(ring: Sequence[Point]) -> bool:
    """True when the cross product sign never changes around the (open) ring."""
    points = open_ring(ring)
    n = len(points)
    if n < 3:
        return False
    sign = 0
    for i in range(n):
        turn = cross(points[i], points[(i + 1) % n], points[(i + 2) % n])
        if turn == 0:
            continue
        current = 1 if turn > 0 else -1
        if sign == 0:
            sign = current
        elif current != sign:
            return False
    return sign != 0


def open_ring(ring: Sequence) -> list:
    points = list(ring)
    if len(points) > 1 and tuple(points[0]) == tuple(points[-1]):
        points.pop()
    return points


def close_ring(points: Sequence) -> list:
    ring = list(points)
    if ring and tuple(ring[0]) != tuple(ring[-1]):
        ring.append(ring[0])
    return ring


def circumcircle(a: Point, b: Point, c: Point) -> Optional[Tuple[Point, float]]:
    """Center and radius of the circle through a, b and c; None if collinear."""
    ax, ay = a[0], a[1]
    bx, by = b[0], b[1]
    cx, cy = c[0], c[1]
    d = 2 * (ax * (by - cy) + bx * (cy - ay) + cx * (ay - by))
    if abs(d) < 1e-12:
        return None
    a2 = ax * ax + ay * ay
    b2 = bx * bx + by * by
    c2 = cx * cx + cy * cy
    ux = (a2 * (by - cy) + b2 * (cy - ay) + c2 * (ay - by)) / d
    uy = (a2 * (cx - bx) + b2 * (ax - cx) + c2 * (bx - ax)) / d
    return (ux, uy), math.hypot(ax - ux, ay - uy)


def circumradius(a: Point, b: Point, c: Point) -> float:
    circle = circumcircle(a, b, c)
    return math.inf if circle is None else circle[1]


def in_circumcircle(p: Point, a: Point, b: Point, c: Point) -> bool:
    circle = circumcircle(a, b, c)
    if circle is None:
        return False
    (ux, uy), radius = circle
    return (p[0] - ux) ** 2 + (p[1] - uy) ** 2 < radius * radius


class LocalProjection:
    """
    Equirectangular projection around ``origin``.

    x grows east and y grows north, both in meters, at 111,000 m per degree
    of latitude and 111,000 * cos(origin latitude) m per degree of longitude.
    """

    def __init__(self, origin: Coordinate):
        self.origin = Coordinate(*origin)
        cos_lat = max(math.cos(math.radians(self.origin.lat)), 0.01)
        self.meters_per_degree_lat = constants.METERS_PER_DEGREE
        self.meters_per_degree_lon = constants.METERS_PER_DEGREE * cos_lat

    @classmethod
    def centered_on(cls, coordinates: Sequence[Coordinate]) -> "LocalProjection":
        array = np.asarray(coordinates, dtype=float).reshape(-1, 2)
        return cls(Coordinate(float(array[:, 0].mean()), float(array[:, 1].mean())))

    def to_plane(self, coordinate: Coordinate) -> Point:
        return (
            (coordinate[1] - self.origin.lon) * self.meters_per_degree_lon,
            (coordinate[0] - self.origin.lat) * self.meters_per_degree_lat,
        )

    def to_geographic(self, point: Point) -> Coordinate:
        return Coordinate(
            float(self.origin.lat + point[1] / self.meters_per_degree_lat),
            float(self.origin.lon + point[0] / self.meters_per_degree_lon),
        )

    def project(self, coordinates: Sequence[Coordinate]) -> np.ndarray:
        """Project (lat, lon) pairs into an (n, 2) array of (x, y) meters."""
        array = np.asarray(coordinates, dtype=float).reshape(-1, 2)
        x = (array[:, 1] - self.origin.lon) * self.meters_per_degree_lon
        y = (array[:, 0] - self.origin.lat) * self.meters_per_degree_lat
        return np.column_stack((x, y))

    def unproject(self, points) -> List[Coordinate]:
        return [self.to_geographic(p) for p in points]


def meters_to_degrees(meters: float, latitude: float) -> Tuple[float, float]:
    """Latitude and longitude spans covering ``meters`` at ``latitude``."""
    cos_lat = max(math.cos(math.radians(latitude)), 0.01)
    return (
        meters / constants.METERS_PER_DEGREE,
        meters / (constants.METERS_PER_DEGREE * cos_lat),
    )


def geodesic_area(coordinates: Sequence[Coordinate]) -> float:
    """Approximate area in square meters of a (lat, lon) ring."""
    ring = open_ring(coordinates)
    if len(ring) < 3:
        return 0.0
    projection = LocalProjection.centered_on(ring)
    return abs(polygon_area(projection.project(ring)))


# -------------------------------------------------------------------
# Spherical
# -------------------------------------------------------------------

def great_circle_distance(a: Coordinate, b: Coordinate) -> float:
    """Distance in meters between two coordinates."""
    _, _, distance = _GEOD.inv(a[1], a[0], b[1], b[0])
    return float(distance)


def great_circle_distances(origin: Coordinate, coordinates: Sequence[Coordinate]) -> np.ndarray:
    """Distances in meters from ``origin`` to each coordinate."""
    array = np.asarray(coordinates, dtype=float).reshape(-1, 2)
    if len(array) == 0:
        return np.zeros(0)
    lons = np.full(len(array), origin[1], dtype=float)
    lats = np.full(len(array), origin[0], dtype=float)
    _, _, distances = _GEOD.inv(lons, lats, array[:, 1], array[:, 0])
    return np.asarray(distances, dtype=float)


def bearing(a: Coordinate, b: Coordinate) -> float:
    """Initial bearing from ``a`` to ``b`` in degrees clockwise from north, [0, 360)."""
    azimuth, _, _ = _GEOD.inv(a[1], a[0], b[1], b[0])
    return float(azimuth) % 360.0


def destination_point(origin: Coordinate, bearing_degrees: float, distance: float) -> Coordinate:
    """Point reached by travelling ``distance`` meters from ``origin`` along a bearing."""
    lon, lat, _ = _GEOD.fwd(origin[1], origin[0], bearing_degrees, distance)
    return Coordinate(float(lat), float(lon))


def polygon_perimeter(coordinates: Sequence[Coordinate]) -> float:
    """Great-circle perimeter in meters; open rings are closed implicitly."""
    ring = close_ring(coordinates)
    return sum(great_circle_distance(ring[i], ring[i + 1]) for i in range(len(ring) - 1))


def bounding_radius(center: Coordinate, coordinates: Sequence[Coordinate]) -> float:
    """Largest great-circle distance from ``center`` to any coordinate."""
    distances = great_circle_distances(center, coordinates)
    return float(distances.max()) if len(distances) else 0.0
