"""
Viewport culling and level-of-detail simplification.
"""

import dataclasses
import logging
from typing import List, Optional, Sequence

from pulse.outagegen import constants
from pulse.outagegen.models import BoundingBox, Coordinate, OutagePolygon, clamp
from pulse.outagegen.spatial.geometry import great_circle_distance, perpendicular_distance

logger = logging.getLogger(__name__)


def lod_factor(zoom_level: float) -> float:
    """1.0 at zoom 8 and below, falling linearly to 0.1 at zoom 18 and above."""
    normalized = (zoom_level - constants.MIN_LOD_ZOOM) / constants.LOD_ZOOM_RANGE
    return clamp(1.0 - normalized, constants.MIN_LOD_FACTOR, 1.0)


def simplification_tolerance(zoom_level: float, base_tolerance=constants.DEFAULT_BASE_TOLERANCE) -> float:
    """Douglas-Peucker tolerance in degrees; coarser when zoomed out."""
    return base_tolerance * lod_factor(zoom_level)


def douglas_peucker(ring: Sequence[Coordinate], tolerance: float) -> List[Coordinate]:
    """
    Douglas-Peucker simplification of a coordinate sequence.

    The first and last points are always kept. A closed ring stays closed and
    keeps at least 3 distinct vertices; when the recursion would collapse it,
    the farthest-point triangle is returned instead. Raising the tolerance
    never increases the vertex count.
    """
    points = list(ring)
    closed = len(points) > 1 and points[0] == points[-1]
    minimum = 4 if closed else 3
    if len(points) <= minimum:
        return points

    keep = [False] * len(points)
    keep[0] = keep[-1] = True
    _simplify(points, 0, len(points) - 1, tolerance, keep)
    result = [p for p, kept in zip(points, keep) if kept]

    if len(result) < minimum:
        return _farthest_triangle(points, closed)
    return result


def _simplify(points, first, last, tolerance, keep):
    if last <= first + 1:
        return
    index, max_distance = None, 0.0
    for i in range(first + 1, last):
        distance = perpendicular_distance(points[i], points[first], points[last])
        if distance > max_distance:
            index, max_distance = i, distance
    if index is not None and max_distance > tolerance:
        keep[index] = True
        _simplify(points, first, index, tolerance, keep)
        _simplify(points, index, last, tolerance, keep)


def _farthest_triangle(points, closed):
    vertices = points[:-1] if closed else points
    anchor = vertices[0]
    second = max(
        range(1, len(vertices)),
        key=lambda i: perpendicular_distance(vertices[i], anchor, anchor),
    )
    third = max(
        (i for i in range(1, len(vertices)) if i != second),
        key=lambda i: perpendicular_distance(vertices[i], anchor, vertices[second]),
    )
    result = [anchor] + [vertices[i] for i in sorted((second, third))]
    if closed:
        result.append(anchor)
    return result


class ViewportOptimizer:
    """
    Keeps polygon output renderable: drops what is off screen and thins the
    rest according to the zoom level.
    """

    def __init__(
        self,
        detail_zoom_threshold=constants.DEFAULT_DETAIL_ZOOM_THRESHOLD,
        max_polygons=constants.DEFAULT_MAX_RENDERED_POLYGONS,
        base_tolerance=constants.DEFAULT_BASE_TOLERANCE,
        margin=constants.VIEWPORT_MARGIN,
    ):
        self.detail_zoom_threshold = detail_zoom_threshold
        self.max_polygons = max_polygons
        self.base_tolerance = base_tolerance
        self.margin = margin

    def optimize(
        self,
        polygons: Sequence[OutagePolygon],
        viewport: Optional[BoundingBox],
        zoom_level: Optional[float],
    ) -> List[OutagePolygon]:
        """
        Cull to the viewport, keep the most confident polygons and simplify
        for the zoom level. Without a viewport nothing is culled or limited;
        without a zoom level nothing is simplified.
        """
        result = list(polygons)
        if viewport is not None:
            result = self.limit(self.cull(result, viewport))
        if zoom_level is not None:
            result = self.simplify_all(result, zoom_level)
        return result

    def cull(self, polygons: Sequence[OutagePolygon], viewport: BoundingBox) -> List[OutagePolygon]:
        """Drop polygons whose bounding circle misses the viewport grown by the margin."""
        expanded = viewport.expanded(self.margin)
        visible = [p for p in polygons if self._bounding_circle_intersects(p, expanded)]
        logger.debug(f"Viewport culling kept {len(visible)} of {len(polygons)} polygons")
        return visible

    def limit(self, polygons: Sequence[OutagePolygon]) -> List[OutagePolygon]:
        """Keep the most confident ``max_polygons``, preserving their order."""
        if len(polygons) <= self.max_polygons:
            return list(polygons)
        ranked = sorted(range(len(polygons)), key=lambda i: -polygons[i].confidence)
        chosen = sorted(ranked[: self.max_polygons])
        return [polygons[i] for i in chosen]

    def simplify_all(self, polygons: Sequence[OutagePolygon], zoom_level: float) -> List[OutagePolygon]:
        if zoom_level >= self.detail_zoom_threshold:
            return list(polygons)
        tolerance = simplification_tolerance(zoom_level, self.base_tolerance)
        return [self.simplify(p, tolerance) for p in polygons]

    @staticmethod
    def simplify(polygon: OutagePolygon, tolerance: float) -> OutagePolygon:
        if polygon.vertex_count <= constants.SIMPLIFY_MIN_VERTICES:
            return polygon
        coordinates = douglas_peucker(polygon.coordinates, tolerance)
        if len(coordinates) == len(polygon.coordinates):
            return polygon
        return dataclasses.replace(polygon, coordinates=tuple(coordinates))

    @staticmethod
    def _bounding_circle_intersects(polygon: OutagePolygon, region: BoundingBox) -> bool:
        if region.contains(polygon.center):
            return True
        nearest = region.nearest_point(polygon.center)
        return great_circle_distance(polygon.center, nearest) <= polygon.bounding_radius
