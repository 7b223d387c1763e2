"""
Delaunay triangulation for concave hull construction.

Small point clouds are triangulated with incremental Bowyer-Watson insertion.
Larger clouds go through ``scipy.spatial.Delaunay`` (Qhull). Both produce
triangles as index triples into the input point array, so the alpha filter
and boundary extraction do not care which one ran.
"""

import dataclasses
import logging
import math
from collections import defaultdict
from typing import FrozenSet, List, Sequence, Tuple

import numpy as np
from scipy.spatial import Delaunay, QhullError

from pulse.outagegen import constants
from pulse.outagegen.errors import GeometricDegeneracy
from pulse.outagegen.spatial.geometry import circumcircle, polygon_area

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, eq=False)
class Edge:
    """An undirected edge; (a, b) and (b, a) compare equal."""

    start: int
    end: int

    @property
    def key(self) -> Tuple[int, int]:
        return (self.start, self.end) if self.start <= self.end else (self.end, self.start)

    def __eq__(self, other):
        return isinstance(other, Edge) and self.key == other.key

    def __hash__(self):
        return hash(self.key)


@dataclasses.dataclass(frozen=True, eq=False)
class Triangle:
    """A triangle over point indices; equality is by vertex set."""

    a: int
    b: int
    c: int

    @property
    def vertices(self) -> FrozenSet[int]:
        return frozenset((self.a, self.b, self.c))

    @property
    def edges(self) -> Tuple[Edge, Edge, Edge]:
        return (Edge(self.a, self.b), Edge(self.b, self.c), Edge(self.c, self.a))

    def __eq__(self, other):
        return isinstance(other, Triangle) and self.vertices == other.vertices

    def __hash__(self):
        return hash(self.vertices)


def bowyer_watson(points: Sequence[Tuple[float, float]]) -> List[Triangle]:
    """
    Incremental Delaunay triangulation.

    Every point is inserted into a triangulation seeded with a super-triangle
    enclosing the whole cloud. Triangles whose circumcircle contains the new
    point are removed and the resulting hole is re-triangulated from its
    boundary. Triangles touching the super-triangle are discarded at the end.
    """
    pts = [(float(p[0]), float(p[1])) for p in points]
    n = len(pts)
    if n < 3:
        return []

    xs = [p[0] for p in pts]
    ys = [p[1] for p in pts]
    min_x, max_x, min_y, max_y = min(xs), max(xs), min(ys), max(ys)
    delta = max(max_x - min_x, max_y - min_y) or 1.0
    mid_x = (min_x + max_x) / 2
    mid_y = (min_y + max_y) / 2
    pts.extend([
        (mid_x - 100 * delta, mid_y - 100 * delta),
        (mid_x + 100 * delta, mid_y - 100 * delta),
        (mid_x, mid_y + 100 * delta),
    ])

    def make(i, j, k):
        circle = circumcircle(pts[i], pts[j], pts[k])
        if circle is None:
            # Degenerate triangles are evicted by the next insertion.
            return (i, j, k, 0.0, 0.0, math.inf)
        (ux, uy), radius = circle
        return (i, j, k, ux, uy, radius * radius)

    triangles = [make(n, n + 1, n + 2)]
    for index in range(n):
        px, py = pts[index]
        bad = []
        good = []
        for t in triangles:
            if (px - t[3]) ** 2 + (py - t[4]) ** 2 < t[5]:
                bad.append(t)
            else:
                good.append(t)

        edge_counts = defaultdict(int)
        for t in bad:
            for a, b in ((t[0], t[1]), (t[1], t[2]), (t[2], t[0])):
                edge_counts[(a, b) if a < b else (b, a)] += 1

        good.extend(make(a, b, index) for (a, b), count in edge_counts.items() if count == 1)
        triangles = good

    result = []
    for t in triangles:
        if t[0] >= n or t[1] >= n or t[2] >= n or math.isinf(t[5]):
            continue
        result.append(Triangle(t[0], t[1], t[2]))
    return result


def delaunay(points) -> np.ndarray:
    """Triangles of ``points`` as an (m, 3) integer array."""
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    if len(points) < 3:
        return np.zeros((0, 3), dtype=np.int64)

    if len(points) <= constants.INCREMENTAL_TRIANGULATION_LIMIT:
        triangles = bowyer_watson(points)
        return np.array([(t.a, t.b, t.c) for t in triangles], dtype=np.int64).reshape(-1, 3)

    try:
        return np.asarray(Delaunay(points).simplices, dtype=np.int64)
    except QhullError as e:
        raise GeometricDegeneracy(f"Triangulation of {len(points)} points failed") from e


def circumradii(points: np.ndarray, simplices: np.ndarray) -> np.ndarray:
    """Circumradius of every triangle; infinite for collinear triangles."""
    a = points[simplices[:, 0]]
    b = points[simplices[:, 1]]
    c = points[simplices[:, 2]]
    ab = np.linalg.norm(a - b, axis=1)
    bc = np.linalg.norm(b - c, axis=1)
    ca = np.linalg.norm(c - a, axis=1)
    twice_area = np.abs(
        (b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0])
    )
    with np.errstate(divide="ignore", invalid="ignore"):
        radii = ab * bc * ca / (2 * twice_area)
    radii[twice_area <= 1e-12] = np.inf
    return radii


def _edge_counts(simplices: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    edges = np.concatenate(
        [simplices[:, [0, 1]], simplices[:, [1, 2]], simplices[:, [2, 0]]]
    )
    edges.sort(axis=1)
    return np.unique(edges, axis=0, return_counts=True)


def boundary_edges(simplices: np.ndarray) -> List[Edge]:
    """Edges that belong to exactly one triangle."""
    if len(simplices) == 0:
        return []
    edges, counts = _edge_counts(np.asarray(simplices))
    return [Edge(int(a), int(b)) for a, b in edges[counts == 1]]


def non_manifold_edges(simplices: np.ndarray) -> List[Edge]:
    """Edges shared by more than two triangles; a valid triangulation has none."""
    if len(simplices) == 0:
        return []
    edges, counts = _edge_counts(np.asarray(simplices))
    return [Edge(int(a), int(b)) for a, b in edges[counts > 2]]


def chain_boundary(edges: Sequence[Edge]) -> List[List[int]]:
    """
    Order boundary edges into closed loops of point indices.

    Raises GeometricDegeneracy when an edge chain cannot be closed.
    """
    adjacency = defaultdict(list)
    for edge in edges:
        adjacency[edge.start].append(edge.end)
        adjacency[edge.end].append(edge.start)
    for neighbours in adjacency.values():
        neighbours.sort()

    unused = {edge.key for edge in edges}
    loops = []
    while unused:
        start, current = min(unused)
        unused.discard((start, current))
        loop = [start, current]
        while current != start:
            following = None
            for candidate in adjacency[current]:
                key = (current, candidate) if current < candidate else (candidate, current)
                if key in unused:
                    following = candidate
                    unused.discard(key)
                    break
            if following is None:
                raise GeometricDegeneracy(f"Boundary chain cannot close at vertex {current}")
            if following != start:
                loop.append(following)
            current = following
        loops.append(loop)
    return loops


def largest_loop(loops: List[List[int]], points: np.ndarray) -> List[int]:
    """The loop enclosing the largest area."""
    return max(loops, key=lambda loop: abs(polygon_area(points[loop])))
