"""
Merging of overlapping outage polygons.

Candidate polygons form an overlap graph: two polygons are adjacent when
their shapes overlap by at least a minimum ratio of the smaller one, or when
their centers are close enough that the outages are very likely the same
event. Each connected component with more than one member is replaced by a
single polygon that keeps every contributor's identity, confidence, device
count and outage start for drill-down.
"""

import dataclasses
import logging
import uuid
from typing import Dict, List, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree
from shapely.geometry import Polygon
from shapely.ops import unary_union
from shapely.validation import make_valid

from pulse.outagegen import constants
from pulse.outagegen.errors import GeometricDegeneracy, MergeFailure
from pulse.outagegen.models import Coordinate, OutagePolygon, QualityMetrics
from pulse.outagegen.spatial.geometry import (
    LocalProjection,
    bounding_radius,
    close_ring,
    great_circle_distance,
    open_ring,
)
from pulse.outagegen.spatial.hulls import graham_scan, reduce_vertices
from pulse.outagegen.spatial.scoring import smoothness

logger = logging.getLogger(__name__)

POLYGON_NAMESPACE = uuid.UUID("6f1c2a52-8d0e-4b7a-9a53-2f4b0c1d9e77")


def merged_polygon_id(contributor_ids: Sequence[str]) -> str:
    return str(uuid.uuid5(POLYGON_NAMESPACE, "merge:" + ",".join(sorted(contributor_ids))))


def connected_components(adjacency: Dict[int, List[int]], count: int) -> List[List[int]]:
    """Components of an undirected graph by iterative depth-first traversal."""
    seen = [False] * count
    components = []
    for root in range(count):
        if seen[root]:
            continue
        seen[root] = True
        stack = [root]
        component = []
        while stack:
            node = stack.pop()
            component.append(node)
            for neighbour in adjacency.get(node, ()):
                if not seen[neighbour]:
                    seen[neighbour] = True
                    stack.append(neighbour)
        components.append(sorted(component))
    return components


@dataclasses.dataclass
class MergeOutcome:
    polygons: List[OutagePolygon]
    overlap_count: int = 0
    merged_count: int = 0
    degraded_merges: int = 0


class PolygonAggregator:
    """
    Detects overlapping polygons and unions each overlapping group.

    Parameters:
    -----------
    buffer_radius : float
        Buffer radius used to build the polygons, in meters
    min_overlap_ratio : float
        Intersection area over the smaller polygon's area needed for an overlap
    target_vertices : int
        Vertex count merged rings are reduced to
    """

    def __init__(
        self,
        buffer_radius=constants.DEFAULT_BUFFER_RADIUS,
        min_overlap_ratio=constants.DEFAULT_MIN_OVERLAP_RATIO,
        target_vertices=constants.DEFAULT_TARGET_VERTICES,
        max_vertices=constants.DEFAULT_MAX_VERTICES,
    ):
        self.buffer_radius = buffer_radius
        self.min_overlap_ratio = min_overlap_ratio
        self.target_vertices = target_vertices
        self.max_vertices = max_vertices

    def merge_overlapping(self, polygons: Sequence[OutagePolygon]) -> MergeOutcome:
        polygons = list(polygons)
        if len(polygons) < 2:
            return MergeOutcome(polygons)

        projection = LocalProjection.centered_on([p.center for p in polygons])
        shapes = [self._shape(p, projection) for p in polygons]

        adjacency: Dict[int, List[int]] = {}
        overlaps = 0
        for i, j in self.candidate_pairs(polygons, projection):
            if self.are_adjacent(polygons[i], polygons[j], shapes[i], shapes[j]):
                adjacency.setdefault(i, []).append(j)
                adjacency.setdefault(j, []).append(i)
                overlaps += 1

        outcome = MergeOutcome([], overlap_count=overlaps)
        for component in connected_components(adjacency, len(polygons)):
            if len(component) == 1:
                outcome.polygons.append(polygons[component[0]])
                continue

            contributors = [polygons[k] for k in component]
            try:
                merged = self.merge(contributors, [shapes[k] for k in component], projection)
                outcome.merged_count += 1
            except (MergeFailure, GeometricDegeneracy) as e:
                merged = max(
                    zip(contributors, [shapes[k] for k in component]),
                    key=lambda pair: (pair[0].affected_device_count, pair[1].area),
                )[0]
                outcome.degraded_merges += 1
                logger.warning(
                    f"Degraded merge of {len(contributors)} polygons ({e}); "
                    f"kept largest contributor {merged.id}"
                )
            outcome.polygons.append(merged)

        logger.debug(
            f"Merged {len(polygons)} polygons into {len(outcome.polygons)} "
            f"({overlaps} overlaps, {outcome.degraded_merges} degraded)"
        )
        return outcome

    def candidate_pairs(self, polygons: Sequence[OutagePolygon], projection: LocalProjection) -> List[Tuple[int, int]]:
        """Index pairs whose centers are close enough to overlap or count as proximate."""
        centers = projection.project([p.center for p in polygons])
        widest = max(p.bounding_radius for p in polygons)
        reach = max(
            2 * widest,
            constants.MERGE_BUFFER_PROXIMITY_FACTOR * self.buffer_radius,
        )
        # planar distances drift from great-circle ones away from the origin
        reach = reach * 1.05 + 1.0
        return sorted(cKDTree(centers).query_pairs(reach))

    def are_adjacent(self, first: OutagePolygon, second: OutagePolygon, first_shape, second_shape) -> bool:
        if first_shape.intersects(second_shape):
            smaller = min(first_shape.area, second_shape.area)
            if smaller > 0:
                overlap = first_shape.intersection(second_shape).area / smaller
                if overlap >= self.min_overlap_ratio:
                    return True

        threshold = max(
            constants.MERGE_PROXIMITY_FACTOR * (first.bounding_radius + second.bounding_radius),
            constants.MERGE_BUFFER_PROXIMITY_FACTOR * self.buffer_radius,
        )
        return great_circle_distance(first.center, second.center) <= threshold

    def merge(self, contributors: Sequence[OutagePolygon], shapes, projection: LocalProjection) -> OutagePolygon:
        """
        Union a group of overlapping polygons.

        The merged ring is the convex hull of every contributor vertex plus
        four points around each vertex at 0.3 x buffer radius, reduced to the
        vertex budget. Raises MergeFailure when fewer than 3 vertices remain.
        """
        offset = constants.MERGE_BUFFER_FACTOR * self.buffer_radius
        spread = np.array([(0.0, offset), (offset, 0.0), (0.0, -offset), (-offset, 0.0)])

        vertices = np.concatenate(
            [projection.project(open_ring(p.coordinates)) for p in contributors]
        )
        buffered = (vertices[:, None, :] + spread[None, :, :]).reshape(-1, 2)
        hull = graham_scan(np.concatenate([vertices, buffered]))
        if len(hull) < 3:
            raise MergeFailure("Union hull collapsed")
        ring = reduce_vertices(hull, self.target_vertices, self.max_vertices)
        if len(ring) < 3:
            raise MergeFailure("Union ring has fewer than 3 vertices")

        individual_area = sum(shape.area for shape in shapes)
        union_area = unary_union(shapes).area
        if individual_area > 0:
            overlap_coefficient = (individual_area - union_area) / individual_area
        else:
            overlap_coefficient = 0.0

        coordinates = close_ring(projection.unproject(ring))
        unique = coordinates[:-1]
        center = Coordinate(
            sum(c.lat for c in unique) / len(unique),
            sum(c.lon for c in unique) / len(unique),
        )

        counts = [p.affected_device_count for p in contributors]
        enclosures = [p.quality.enclosure for p in contributors if p.quality is not None]
        quality = QualityMetrics(
            convexity=1.0,
            smoothness=smoothness(ring),
            enclosure=(
                sum(e * n for e, n in zip(enclosures, counts)) / sum(counts)
                if len(enclosures) == len(contributors) and sum(counts) > 0
                else 1.0
            ),
        )

        return OutagePolygon.merged(
            id=merged_polygon_id([p.id for p in contributors]),
            coordinates=coordinates,
            contributors=contributors,
            center=center,
            bounding_radius=bounding_radius(center, unique),
            overlap_coefficient=overlap_coefficient,
            quality=quality,
        )

    @staticmethod
    def _shape(polygon: OutagePolygon, projection: LocalProjection):
        shape = Polygon(projection.project(open_ring(polygon.coordinates)))
        if not shape.is_valid:
            shape = make_valid(shape)
        return shape
