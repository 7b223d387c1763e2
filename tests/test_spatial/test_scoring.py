"""
Tests for confidence and quality scoring.
"""

import math

import pytest
from pulse.outagegen.models import Cluster, Coordinate, Device
from pulse.outagegen.spatial.scoring import (
    ConfidenceScorer,
    confidence_score,
    quality_metrics,
    smoothness,
    turning_angles,
)
from pulse.outagegen.spatial.spatial_index import SpatialIndex

LAT = -33.87
LON = 151.21
METERS_PER_DEGREE_LON = 111000.0 * math.cos(math.radians(LAT))


def device(device_id, north_m=0.0, east_m=0.0, offline=True):
    return Device(device_id, LAT + north_m / 111000.0, LON + east_m / METERS_PER_DEGREE_LON, offline)


def square(half_size_m):
    dlat = half_size_m / 111000.0
    dlon = half_size_m / METERS_PER_DEGREE_LON
    return [
        Coordinate(LAT - dlat, LON - dlon),
        Coordinate(LAT - dlat, LON + dlon),
        Coordinate(LAT + dlat, LON + dlon),
        Coordinate(LAT + dlat, LON - dlon),
        Coordinate(LAT - dlat, LON - dlon),
    ]


class TestConfidenceScore:
    def test_formula(self):
        expected = 0.6 * 1.0 + 0.25 * (5 / 15) + 0.15 * (5 / 25)
        assert confidence_score(5, 0, 5, 5) == pytest.approx(expected)

    def test_online_devices_lower_confidence(self):
        assert confidence_score(5, 5, 5, 10) < confidence_score(5, 0, 5, 10)

    def test_empty_catchment_is_neutral(self):
        assert confidence_score(0, 0, 5, 0) == 0.5

    def test_unknown_status_counts_as_even_odds(self):
        expected = 0.6 * 0.5 + 0.25 * (3 / 15) + 0.15 * (3 / 25)
        assert confidence_score(0, 0, 3, 3) == pytest.approx(expected)

    def test_saturates_at_one(self):
        assert confidence_score(40, 0, 40, 40) == pytest.approx(1.0)

    @pytest.mark.parametrize(
        "offline,online,size,catchment",
        [(0, 100, 0, 100), (1, 1000, 3, 1001), (3, 0, 3, 3), (500, 10, 500, 510)],
    )
    def test_bounds(self, offline, online, size, catchment):
        assert 0.10 <= confidence_score(offline, online, size, catchment) <= 1.0


class TestConfidenceScorer:
    @pytest.fixture
    def cluster(self):
        return Cluster(0, tuple(device(f"o{i}", i * 20.0) for i in range(4)))

    @pytest.fixture
    def index(self, cluster):
        index = SpatialIndex()
        index.rebuild(
            list(cluster.devices)
            + [device("n1", 30.0, 40.0, False), device("n2", -20.0, 30.0, None), device("far", 3000.0, 0.0, False)]
        )
        return index

    @pytest.mark.parametrize("factor", [1.0, 1.19, 1.81, 3.0])
    def test_rejects_catchment_factor_out_of_range(self, factor):
        with pytest.raises(ValueError):
            ConfidenceScorer(None, factor)

    def test_effective_radius(self, cluster):
        assert ConfidenceScorer.effective_radius(cluster) == pytest.approx(30.0 + 100.0, rel=1e-2)
        single = Cluster(1, (device("solo"),))
        assert ConfidenceScorer.effective_radius(single) == 200.0

    def test_catchment_radius_scales_with_factor(self, cluster):
        narrow = ConfidenceScorer(None, 1.2).catchment_radius(cluster)
        wide = ConfidenceScorer(None, 1.8).catchment_radius(cluster)
        assert wide == pytest.approx(narrow * 1.5)

    def test_catchment_from_index(self, cluster, index):
        scorer = ConfidenceScorer(index)
        catchment = scorer.catchment(cluster)
        assert [d.id for d in catchment] == ["o0", "o1", "o2", "o3", "n1", "n2"]

        expected = confidence_score(4, 1, 4, 6)
        assert scorer.score(cluster, catchment) == pytest.approx(expected)

    def test_catchment_without_index(self, cluster):
        assert ConfidenceScorer(None).catchment(cluster) == list(cluster.devices)


class TestQuality:
    def test_turning_angles_of_square(self):
        angles = turning_angles([(0, 0), (1, 0), (1, 1), (0, 1)])
        assert angles.tolist() == pytest.approx([math.pi / 2] * 4)

    def test_smoothness(self):
        assert smoothness([(0, 0), (1, 0), (1, 1), (0, 1)]) == pytest.approx(0.5)
        assert smoothness([(0, 0), (1, 0)]) == 0.0
        many = [(math.cos(a), math.sin(a)) for a in [i * 2 * math.pi / 60 for i in range(60)]]
        assert smoothness(many) > 0.95

    def test_quality_of_square(self):
        quality = quality_metrics(square(100.0), [device("a").location, device("b", 50.0).location])
        assert quality.convexity == pytest.approx(1.0)
        assert quality.smoothness == pytest.approx(0.5)
        assert quality.enclosure == 1.0
        assert quality.score == pytest.approx(2.5 / 3)

    def test_enclosure_counts_outside_devices(self):
        quality = quality_metrics(square(100.0), [device("a").location, device("b", 500.0).location])
        assert quality.enclosure == 0.5

    def test_concave_polygon_convexity(self):
        dlat = 100.0 / 111000.0
        dlon = 100.0 / METERS_PER_DEGREE_LON
        ring = [
            Coordinate(LAT, LON),
            Coordinate(LAT, LON + 2 * dlon),
            Coordinate(LAT + dlat, LON + 2 * dlon),
            Coordinate(LAT + dlat, LON + dlon),
            Coordinate(LAT + 2 * dlat, LON + dlon),
            Coordinate(LAT + 2 * dlat, LON),
        ]
        quality = quality_metrics(ring, [])
        assert quality.convexity == pytest.approx(0.75 / (1 - 0.125), rel=1e-3)
        assert quality.enclosure == 1.0
