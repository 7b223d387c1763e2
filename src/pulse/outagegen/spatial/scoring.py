"""
Confidence and quality scoring for outage polygons.
"""

import logging
import math
from typing import List, Optional, Sequence

import numpy as np
from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import Polygon

from pulse.outagegen import constants
from pulse.outagegen.models import Cluster, Coordinate, Device, QualityMetrics, clamp
from pulse.outagegen.spatial.geometry import LocalProjection, great_circle_distances, open_ring
from pulse.outagegen.spatial.spatial_index import SpatialIndex

logger = logging.getLogger(__name__)


def confidence_score(offline: int, online: int, cluster_size: int, catchment_size: int) -> float:
    """
    Weighted confidence from outage ratio, cluster size and catchment size.

    0.6 x outage ratio + 0.25 x min(1, size / 15) + 0.15 x min(1, catchment / 25),
    clamped to [0.10, 1.0]. An empty catchment is neutral (0.5).
    """
    if catchment_size == 0:
        return constants.NEUTRAL_CONFIDENCE
    known = offline + online
    ratio = offline / known if known else constants.NEUTRAL_CONFIDENCE
    raw = (
        constants.OUTAGE_RATIO_WEIGHT * ratio
        + constants.CLUSTER_SIZE_WEIGHT * min(1.0, cluster_size / constants.CLUSTER_SIZE_SATURATION)
        + constants.CATCHMENT_SIZE_WEIGHT * min(1.0, catchment_size / constants.CATCHMENT_SIZE_SATURATION)
    )
    return clamp(raw, constants.MIN_CONFIDENCE, constants.MAX_CONFIDENCE)


class ConfidenceScorer:
    """
    Scores clusters against the devices in their catchment.

    The catchment is every device, online or offline, within
    ``catchment_factor`` x the cluster's effective radius of its centroid.
    """

    def __init__(self, index: Optional[SpatialIndex], catchment_factor=constants.DEFAULT_CATCHMENT_FACTOR):
        if not constants.MIN_CATCHMENT_FACTOR <= catchment_factor <= constants.MAX_CATCHMENT_FACTOR:
            raise ValueError(
                f"Catchment factor must be between {constants.MIN_CATCHMENT_FACTOR} "
                f"and {constants.MAX_CATCHMENT_FACTOR}, got {catchment_factor}"
            )
        self.index = index
        self.catchment_factor = catchment_factor

    @staticmethod
    def effective_radius(cluster: Cluster) -> float:
        if cluster.size <= 1:
            return constants.SINGLE_DEVICE_RADIUS
        distances = great_circle_distances(cluster.centroid, cluster.locations)
        return float(distances.max()) + constants.CLUSTER_RADIUS_PADDING

    def catchment_radius(self, cluster: Cluster) -> float:
        return self.effective_radius(cluster) * self.catchment_factor

    def catchment(self, cluster: Cluster) -> List[Device]:
        if self.index is None:
            return list(cluster.devices)
        return self.index.query_radius(cluster.centroid, self.catchment_radius(cluster))

    def score(self, cluster: Cluster, catchment: Sequence[Device]) -> float:
        offline = sum(1 for d in catchment if d.offline is True)
        online = sum(1 for d in catchment if d.offline is False)
        return confidence_score(offline, online, cluster.size, len(catchment))


# -------------------------------------------------------------------
# Polygon quality
# -------------------------------------------------------------------

def turning_angles(points) -> np.ndarray:
    """Absolute exterior angle at each vertex of an open planar ring."""
    points = np.asarray(points, dtype=float)
    incoming = points - np.roll(points, 1, axis=0)
    outgoing = np.roll(points, -1, axis=0) - points
    return np.abs(np.arctan2(
        incoming[:, 0] * outgoing[:, 1] - incoming[:, 1] * outgoing[:, 0],
        (incoming * outgoing).sum(axis=1),
    ))


def convexity(polygon: Polygon) -> float:
    hull_area = polygon.convex_hull.area
    if hull_area <= 0:
        return 0.0
    return clamp(polygon.area / hull_area, 0.0, 1.0)


def smoothness(points) -> float:
    if len(points) < 3:
        return 0.0
    return clamp(1.0 - float(turning_angles(points).mean()) / math.pi, 0.0, 1.0)


def enclosure(polygon: Polygon, devices) -> float:
    devices = np.asarray(devices, dtype=float).reshape(-1, 2)
    if len(devices) == 0:
        return 1.0
    inside = sum(1 for d in devices if polygon.covers(ShapelyPoint(d)))
    return inside / len(devices)


def quality_metrics(
    coordinates: Sequence[Coordinate], device_locations: Sequence[Coordinate]
) -> QualityMetrics:
    """Convexity, smoothness and device enclosure of a (lat, lon) ring."""
    ring = open_ring(coordinates)
    projection = LocalProjection.centered_on(ring)
    points = projection.project(ring)
    polygon = Polygon(points)
    devices = projection.project(device_locations) if len(device_locations) else np.zeros((0, 2))
    return QualityMetrics(
        convexity=convexity(polygon),
        smoothness=smoothness(points),
        enclosure=enclosure(polygon, devices),
    )
