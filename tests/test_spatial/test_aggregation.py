"""
Tests for merging overlapping outage polygons.
"""

import math
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from shapely.geometry import Point, Polygon
from pulse.outagegen.errors import MergeFailure
from pulse.outagegen.models import Coordinate, HullMethod, OutagePolygon
from pulse.outagegen.spatial.aggregation import (
    PolygonAggregator,
    connected_components,
    merged_polygon_id,
)
from pulse.outagegen.spatial.geometry import LocalProjection

LAT = -33.87
LON = 151.21
METERS_PER_DEGREE_LON = 111000.0 * math.cos(math.radians(LAT))


def square_polygon(polygon_id, east_m, half_size=100.0, confidence=0.7, count=5, start=None):
    """An axis-aligned square ``half_size`` meters from its center, ``east_m`` east of the origin."""
    center = Coordinate(LAT, LON + east_m / METERS_PER_DEGREE_LON)
    dlat = half_size / 111000.0
    dlon = half_size / METERS_PER_DEGREE_LON
    return OutagePolygon(
        id=polygon_id,
        coordinates=(
            Coordinate(center.lat - dlat, center.lon - dlon),
            Coordinate(center.lat - dlat, center.lon + dlon),
            Coordinate(center.lat + dlat, center.lon + dlon),
            Coordinate(center.lat + dlat, center.lon - dlon),
        ),
        confidence=confidence,
        affected_device_count=count,
        online_device_count=1,
        center=center,
        bounding_radius=half_size * math.sqrt(2),
        outage_start_date=start,
    )


class TestConnectedComponents:
    def test_components(self):
        adjacency = {0: [2], 2: [0, 3], 3: [2]}
        assert connected_components(adjacency, 5) == [[0, 2, 3], [1], [4]]

    def test_no_edges(self):
        assert connected_components({}, 3) == [[0], [1], [2]]


class TestPolygonAggregator:
    @pytest.fixture
    def aggregator(self):
        return PolygonAggregator(buffer_radius=200.0, min_overlap_ratio=0.15)

    @pytest.fixture
    def overlapping(self):
        """Two 200 m squares whose centers are 150 m apart: 25% overlap."""
        return [
            square_polygon("a", 0.0, confidence=0.8, count=6, start=datetime(2024, 6, 1, 10, tzinfo=timezone.utc)),
            square_polygon("b", 150.0, confidence=0.5, count=4, start=datetime(2024, 6, 1, 9, tzinfo=timezone.utc)),
        ]

    def test_single_polygon_is_untouched(self, aggregator):
        polygon = square_polygon("a", 0.0)
        outcome = aggregator.merge_overlapping([polygon])
        assert outcome.polygons == [polygon]
        assert outcome.overlap_count == 0

    def test_distant_polygons_stay_separate(self, aggregator):
        polygons = [square_polygon("a", 0.0), square_polygon("b", 3000.0)]
        outcome = aggregator.merge_overlapping(polygons)
        assert outcome.polygons == polygons
        assert outcome.overlap_count == 0
        assert outcome.merged_count == 0

    def test_overlapping_polygons_merge(self, aggregator, overlapping):
        outcome = aggregator.merge_overlapping(overlapping)
        assert outcome.overlap_count == 1
        assert outcome.merged_count == 1
        assert len(outcome.polygons) == 1

        merged = outcome.polygons[0]
        assert merged.is_merged
        assert merged.hull_method is HullMethod.CONVEX
        assert merged.contributing_polygon_ids == ("a", "b")
        assert merged.individual_device_counts == (6, 4)
        assert merged.individual_confidences == (0.8, 0.5)
        assert merged.aggregated_device_count == 10
        assert merged.affected_device_count == 10
        assert merged.online_device_count == 2
        assert merged.aggregated_confidence == pytest.approx((0.8 * 6 + 0.5 * 4) / 10)
        assert merged.earliest_outage_start_date == datetime(2024, 6, 1, 9, tzinfo=timezone.utc)
        assert merged.id == merged_polygon_id(["b", "a"])

    def test_overlap_coefficient(self, aggregator, overlapping):
        merged = aggregator.merge_overlapping(overlapping).polygons[0]
        # union 70,000 m^2 against 80,000 m^2 of individual area
        assert merged.overlap_coefficient == pytest.approx(0.125, rel=2e-2)

    def test_merged_ring_covers_contributors(self, aggregator, overlapping):
        merged = aggregator.merge_overlapping(overlapping).polygons[0]
        projection = LocalProjection.centered_on([p.center for p in overlapping])
        shape = Polygon(projection.project(merged.coordinates[:-1]))
        for polygon in overlapping:
            for vertex in projection.project(polygon.coordinates[:-1]):
                assert shape.covers(Point(vertex))
        assert merged.bounding_radius > overlapping[0].bounding_radius

    def test_close_centers_merge_without_overlap(self, aggregator):
        # 100 m squares 150 m apart do not touch, but their centers are within 1.2 x buffer radius
        polygons = [square_polygon("a", 0.0, half_size=50.0), square_polygon("b", 150.0, half_size=50.0)]
        outcome = aggregator.merge_overlapping(polygons)
        assert len(outcome.polygons) == 1
        assert outcome.polygons[0].overlap_coefficient == pytest.approx(0.0, abs=1e-9)

    def test_merging_is_transitive(self, aggregator):
        polygons = [square_polygon(name, 150.0 * i) for i, name in enumerate("abc")]
        projection = LocalProjection(polygons[0].center)
        first, last = (Polygon(projection.project(p.coordinates)) for p in (polygons[0], polygons[2]))
        assert not aggregator.are_adjacent(polygons[0], polygons[2], first, last)
        outcome = aggregator.merge_overlapping(polygons)
        assert len(outcome.polygons) == 1
        assert outcome.polygons[0].contributing_polygon_ids == ("a", "b", "c")
        assert outcome.overlap_count == 2

    def test_candidate_pairs(self, aggregator):
        polygons = [square_polygon("a", 0.0), square_polygon("b", 150.0), square_polygon("c", 5000.0)]
        projection = LocalProjection.centered_on([p.center for p in polygons])
        assert aggregator.candidate_pairs(polygons, projection) == [(0, 1)]

    def test_failed_merge_keeps_largest_contributor(self, aggregator, overlapping):
        with patch.object(PolygonAggregator, "merge", side_effect=MergeFailure("collapsed")):
            outcome = aggregator.merge_overlapping(overlapping)
        assert outcome.degraded_merges == 1
        assert outcome.merged_count == 0
        assert outcome.polygons == [overlapping[0]]

    def test_merged_id_is_order_independent(self):
        assert merged_polygon_id(["a", "b"]) == merged_polygon_id(["b", "a"])
        assert merged_polygon_id(["a", "b"]) != merged_polygon_id(["a", "c"])
