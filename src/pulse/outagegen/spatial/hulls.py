"""
Hull construction for device clusters.

Two boundaries are available:

1. **graham_scan**: convex hull of planar points, O(n log n).

2. **concave_hull**: alpha shape over a buffered point cloud
   - every device contributes its location plus concentric rings of points
   - Delaunay triangulation of the cloud
   - triangles with a large circumradius are dropped
   - boundary edges are chained into a ring, smoothed and reduced

``HullBuilder`` runs them in order concave -> convex -> bounding rectangle,
falling back whenever a step degenerates. All math here is planar, in the
meters of a ``LocalProjection`` centered on the cluster.
"""

import dataclasses
import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree
from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import Polygon

from pulse.outagegen import constants
from pulse.outagegen.errors import GeometricDegeneracy
from pulse.outagegen.models import Cluster, Coordinate, HullMethod
from pulse.outagegen.spatial.geometry import (
    LocalProjection,
    close_ring,
    cross,
    open_ring,
    polygon_area,
)
from pulse.outagegen.spatial.triangulation import (
    boundary_edges,
    chain_boundary,
    circumradii,
    delaunay,
    largest_loop,
    non_manifold_edges,
)

logger = logging.getLogger(__name__)

# Clusters larger than this get a thinned point cloud
LARGE_CLUSTER_SIZE = 50
THINNING_FACTOR = 1 / 8  # grid spacing as a fraction of the buffer radius
CONNECTOR_NEIGHBOURS = 4
CONNECTOR_ANGLES = (-45.0, 0.0, 45.0)  # degrees from the connector's normal


def graham_scan(points) -> List[Tuple[float, float]]:
    """
    Convex hull by Graham scan.

    The lowest point (then leftmost) is the pivot; the rest are sorted by
    polar angle around it, ties broken by distance, and scanned keeping only
    strict left turns. Returns the hull counter-clockwise without repeating
    the first vertex. Fewer than 3 vertices means the input was degenerate.
    """
    unique = sorted({(float(p[0]), float(p[1])) for p in points})
    if len(unique) < 3:
        return unique

    pivot = min(unique, key=lambda p: (p[1], p[0]))
    others = [p for p in unique if p != pivot]
    others.sort(
        key=lambda p: (
            math.atan2(p[1] - pivot[1], p[0] - pivot[0]),
            (p[0] - pivot[0]) ** 2 + (p[1] - pivot[1]) ** 2,
        )
    )

    stack = [pivot]
    for p in others:
        while len(stack) >= 2 and cross(stack[-2], stack[-1], p) <= 0:
            stack.pop()
        stack.append(p)
    return stack


def bounding_rectangle(points, padding: float) -> List[Tuple[float, float]]:
    """Axis-aligned rectangle around ``points`` grown by ``padding``, counter-clockwise."""
    array = np.asarray(points, dtype=float).reshape(-1, 2)
    if len(array) == 0:
        raise GeometricDegeneracy("Cannot build a rectangle around no points")
    padding = max(padding, 1.0)
    min_x, min_y = array.min(axis=0) - padding
    max_x, max_y = array.max(axis=0) + padding
    return [
        (float(min_x), float(min_y)),
        (float(max_x), float(min_y)),
        (float(max_x), float(max_y)),
        (float(min_x), float(max_y)),
    ]


def rings_for(device_count: int) -> int:
    """Concentric rings per device: denser for small clusters."""
    if device_count <= 3:
        return 4
    if device_count <= 10:
        return 3
    return 2


def alpha_radius(buffer_radius: float, alpha: float) -> float:
    """
    Largest circumradius a triangle may have to survive the alpha filter.

    The bound tightens towards the buffer radius as alpha approaches 0 and
    opens up to infinity (the convex hull) as alpha approaches 1.
    """
    if alpha >= 1.0:
        return math.inf
    return buffer_radius / (1.0 - max(alpha, 0.0))


def _thin(points: np.ndarray, spacing: float) -> np.ndarray:
    """Keep the first point in each ``spacing`` grid cell, preserving order."""
    cells = np.floor(points / spacing).astype(np.int64)
    _, first = np.unique(cells, axis=0, return_index=True)
    return points[np.sort(first)]


def buffered_point_cloud(points, buffer_radius: float, rings: Optional[int] = None) -> np.ndarray:
    """
    Dense point cloud approximating the union of the devices' buffer discs.

    Parameters:
    -----------
    points : array-like
        Device locations in planar meters, shape (n, 2)
    buffer_radius : float
        Influence radius around each device in meters
    rings : int, optional
        Concentric rings per device (default depends on cluster size)

    Returns:
    --------
    numpy.ndarray : (m, 2) array of unique cloud points
    """
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    n = len(points)
    if n == 0:
        return points
    rings = rings or rings_for(n)

    step = 2 * math.pi / constants.RING_POINTS
    angles = np.arange(constants.RING_POINTS) * step
    unit = np.column_stack((np.cos(angles), np.sin(angles)))
    offset_unit = np.column_stack((np.cos(angles + step / 2), np.sin(angles + step / 2)))

    parts = [points]
    for ring in range(1, rings + 1):
        radius = buffer_radius * ring / rings
        parts.append((points[:, None, :] + radius * unit[None, :, :]).reshape(-1, 2))
    parts.append((points[:, None, :] + 0.9 * buffer_radius * offset_unit[None, :, :]).reshape(-1, 2))
    parts.append(_connector_points(points, buffer_radius))

    cloud = np.concatenate([p for p in parts if len(p)])
    cloud = _thin(cloud, 0.01)
    if n > LARGE_CLUSTER_SIZE:
        cloud = _thin(cloud, buffer_radius * THINNING_FACTOR)
    return cloud


def _connector_points(points: np.ndarray, buffer_radius: float) -> np.ndarray:
    """Points along the segment between each device and its near neighbours."""
    n = len(points)
    if n < 2:
        return np.zeros((0, 2))

    reach = constants.CONNECTOR_DISTANCE_FACTOR * buffer_radius
    tree = cKDTree(points)
    k = min(n, CONNECTOR_NEIGHBOURS + 1)
    distances, neighbours = tree.query(points, k=k, distance_upper_bound=reach)
    pairs = set()
    for i in range(n):
        for distance, j in zip(np.atleast_1d(distances[i]), np.atleast_1d(neighbours[i])):
            if j < n and j != i and distance > 0:
                pairs.add((min(i, int(j)), max(i, int(j))))
    if not pairs:
        return np.zeros((0, 2))

    pairs = np.array(sorted(pairs))
    starts = points[pairs[:, 0]]
    deltas = points[pairs[:, 1]] - starts
    lengths = np.linalg.norm(deltas, axis=1)[:, None]
    normals = np.column_stack((-deltas[:, 1], deltas[:, 0])) / lengths
    offset = constants.CONNECTOR_OFFSET_FACTOR * buffer_radius

    parts = []
    for k in range(1, constants.CONNECTOR_STEPS + 1):
        bases = starts + deltas * (k / (constants.CONNECTOR_STEPS + 1))
        parts.append(bases)
        for degrees in CONNECTOR_ANGLES:
            theta = math.radians(degrees)
            rotated = np.column_stack((
                normals[:, 0] * math.cos(theta) - normals[:, 1] * math.sin(theta),
                normals[:, 0] * math.sin(theta) + normals[:, 1] * math.cos(theta),
            ))
            parts.append(bases + offset * rotated)
            parts.append(bases - offset * rotated)
    return np.concatenate(parts)


def smooth_ring(
    ring,
    devices,
    buffer_radius: float,
    strength: float = constants.SMOOTHING_STRENGTH,
    passes: int = constants.SMOOTHING_PASSES,
) -> List[Tuple[float, float]]:
    """
    Light Laplacian corner smoothing.

    Each vertex moves ``strength`` of the way towards the midpoint of its
    neighbours. A move is rejected when the new position would be farther
    than 1.2 x buffer radius from every device.
    """
    points = np.asarray(open_ring(ring), dtype=float)
    if len(points) < 3:
        return [tuple(p) for p in points]
    tree = cKDTree(np.asarray(devices, dtype=float).reshape(-1, 2))
    limit = buffer_radius * constants.ENCLOSURE_TOLERANCE_FACTOR

    for _ in range(passes):
        midpoints = (np.roll(points, 1, axis=0) + np.roll(points, -1, axis=0)) / 2
        candidates = points + strength * (midpoints - points)
        nearest, _ = tree.query(candidates)
        points = np.where((nearest <= limit)[:, None], candidates, points)
    return [(float(x), float(y)) for x, y in points]


def _importance(points: np.ndarray) -> np.ndarray:
    """Turning angle at each vertex weighted by the length of its two edges."""
    previous = np.roll(points, 1, axis=0)
    following = np.roll(points, -1, axis=0)
    incoming = points - previous
    outgoing = following - points
    turn = np.arctan2(
        incoming[:, 0] * outgoing[:, 1] - incoming[:, 1] * outgoing[:, 0],
        (incoming * outgoing).sum(axis=1),
    )
    lengths = np.linalg.norm(incoming, axis=1) + np.linalg.norm(outgoing, axis=1)
    return np.abs(turn) * lengths


def _uncovers(points: np.ndarray, i: int, protect: Optional[np.ndarray]) -> bool:
    """Whether dropping vertex ``i`` of a CCW ring would leave a protected point outside."""
    if protect is None or len(protect) == 0:
        return False
    a = points[i - 1]
    b = points[i]
    c = points[(i + 1) % len(points)]
    if cross(a, b, c) <= 0:
        return False  # reflex vertex: removing it only adds area

    def side(p, q):
        return (q[0] - p[0]) * (protect[:, 1] - p[1]) - (q[1] - p[1]) * (protect[:, 0] - p[0])

    inside = (side(a, b) >= 0) & (side(b, c) >= 0) & (side(c, a) >= 0)
    return bool(inside.any())


def reduce_vertices(
    ring,
    target: int = constants.DEFAULT_TARGET_VERTICES,
    max_vertices: int = constants.DEFAULT_MAX_VERTICES,
    protect=None,
) -> List[Tuple[float, float]]:
    """
    Curvature-aware vertex reduction.

    Vertices with the smallest weighted turning angle go first, so flat runs
    collapse before corners do. A removal that would leave a protected point
    (a device) outside the ring is skipped. If the constrained pass stops
    above ``max_vertices``, an unconstrained pass enforces the cap.
    Returns an open counter-clockwise ring with at least 3 vertices.
    """
    points = np.asarray(open_ring(ring), dtype=float)
    if polygon_area(points) < 0:
        points = points[::-1]
    protected = None if protect is None else np.asarray(protect, dtype=float).reshape(-1, 2)
    target = max(3, min(target, max_vertices))

    while len(points) > target:
        order = np.argsort(_importance(points), kind="stable")
        removable = next((i for i in order if not _uncovers(points, int(i), protected)), None)
        if removable is None:
            break
        points = np.delete(points, removable, axis=0)

    while len(points) > max(max_vertices, 3):
        weakest = int(np.argmin(_importance(points)))
        points = np.delete(points, weakest, axis=0)

    return [(float(x), float(y)) for x, y in points]


def _encloses(ring, devices) -> bool:
    polygon = Polygon(ring)
    return all(polygon.covers(ShapelyPoint(d)) for d in np.asarray(devices).reshape(-1, 2))


def concave_hull(
    devices,
    buffer_radius: float,
    alpha: float,
    target_vertices: int = constants.DEFAULT_TARGET_VERTICES,
    max_vertices: int = constants.DEFAULT_MAX_VERTICES,
) -> Tuple[List[Tuple[float, float]], int]:
    """
    Alpha shape around buffered device locations.

    Returns the open counter-clockwise ring and the size of the point cloud.
    Raises GeometricDegeneracy when any step cannot produce a valid ring that
    encloses every device.
    """
    devices = np.asarray(devices, dtype=float).reshape(-1, 2)
    cloud = buffered_point_cloud(devices, buffer_radius)
    if len(cloud) < 3:
        raise GeometricDegeneracy("Point cloud has fewer than 3 points")

    simplices = delaunay(cloud)
    if len(simplices) == 0:
        raise GeometricDegeneracy("Triangulation produced no triangles")

    kept = simplices[circumradii(cloud, simplices) <= alpha_radius(buffer_radius, alpha)]
    if len(kept) == 0:
        raise GeometricDegeneracy(f"Alpha filter removed every triangle (alpha={alpha})")
    if non_manifold_edges(kept):
        raise GeometricDegeneracy("Triangulation has non-manifold edges")

    loops = chain_boundary(boundary_edges(kept))
    if not loops:
        raise GeometricDegeneracy("No boundary edges")
    ring = [tuple(cloud[i]) for i in largest_loop(loops, cloud)]
    if len(ring) < 3:
        raise GeometricDegeneracy("Boundary ring has fewer than 3 vertices")
    if polygon_area(ring) < 0:
        ring.reverse()

    ring = smooth_ring(ring, devices, buffer_radius)
    ring = reduce_vertices(ring, target_vertices, max_vertices, protect=devices)

    polygon = Polygon(ring)
    if not polygon.is_valid:
        raise GeometricDegeneracy("Concave ring self-intersects")
    if not _encloses(ring, devices):
        raise GeometricDegeneracy("Concave ring does not enclose every device")
    return ring, len(cloud)


def convex_hull(
    devices,
    buffer_radius: float,
    target_vertices: int = constants.DEFAULT_TARGET_VERTICES,
    max_vertices: int = constants.DEFAULT_MAX_VERTICES,
) -> Tuple[List[Tuple[float, float]], int]:
    """Convex hull of the buffered point cloud, reduced to the vertex budget."""
    devices = np.asarray(devices, dtype=float).reshape(-1, 2)
    cloud = buffered_point_cloud(devices, buffer_radius, rings=1)
    hull = graham_scan(cloud)
    if len(hull) < 3:
        raise GeometricDegeneracy("Convex hull has fewer than 3 vertices")
    return reduce_vertices(hull, target_vertices, max_vertices, protect=devices), len(cloud)


@dataclasses.dataclass
class HullResult:
    coordinates: List[Coordinate]  # closed ring
    method: HullMethod
    fallbacks: List[HullMethod]
    point_count: int

    @property
    def vertex_count(self) -> int:
        return len(self.coordinates) - 1


class HullBuilder:
    """
    Builds a boundary polygon for a cluster.

    Parameters:
    -----------
    buffer_radius : float
        Influence radius around each device in meters
    alpha : float
        Concavity; values >= 1.0 always produce the convex hull
    target_vertices : int
        Vertex count the reduction step aims for
    max_vertices : int
        Hard cap on ring vertices
    """

    def __init__(
        self,
        buffer_radius=constants.DEFAULT_BUFFER_RADIUS,
        alpha=constants.DEFAULT_ALPHA,
        target_vertices=constants.DEFAULT_TARGET_VERTICES,
        max_vertices=constants.DEFAULT_MAX_VERTICES,
    ):
        self.buffer_radius = buffer_radius
        self.alpha = alpha
        self.target_vertices = target_vertices
        self.max_vertices = max_vertices

    def build(self, cluster: Cluster, method: HullMethod = HullMethod.CONCAVE) -> HullResult:
        locations = cluster.locations
        projection = LocalProjection.centered_on(locations)
        devices = projection.project(locations)

        if method is HullMethod.CONCAVE and self.alpha >= 1.0:
            method = HullMethod.CONVEX

        fallbacks = []
        ring, point_count = None, len(devices)
        if method is HullMethod.CONCAVE:
            try:
                ring, point_count = concave_hull(
                    devices, self.buffer_radius, self.alpha, self.target_vertices, self.max_vertices
                )
            except GeometricDegeneracy as e:
                logger.debug(f"Cluster {cluster.index}: concave hull failed ({e}), using convex hull")
                fallbacks.append(HullMethod.CONCAVE)
                method = HullMethod.CONVEX

        if method is HullMethod.CONVEX:
            try:
                ring, point_count = convex_hull(
                    devices, self.buffer_radius, self.target_vertices, self.max_vertices
                )
            except GeometricDegeneracy as e:
                logger.debug(f"Cluster {cluster.index}: convex hull failed ({e}), using rectangle")
                fallbacks.append(HullMethod.CONVEX)
                method = HullMethod.RECTANGLE

        if method is HullMethod.RECTANGLE:
            ring = bounding_rectangle(devices, self.buffer_radius)

        coordinates = close_ring(projection.unproject(ring))
        return HullResult(coordinates, method, fallbacks, point_count)
