"""
Tests for grid-bucketed proximity clustering.
"""

import math

import pytest
from pulse.outagegen.errors import InputError
from pulse.outagegen.models import Device
from pulse.outagegen.spatial.clustering import (
    GridProximityClusterer,
    bucket_devices,
    effective_min_members,
)

LAT = -33.87
LON = 151.21
METERS_PER_DEGREE_LON = 111000.0 * math.cos(math.radians(LAT))


def device(device_id, north_m=0.0, east_m=0.0, offline=True):
    return Device(device_id, LAT + north_m / 111000.0, LON + east_m / METERS_PER_DEGREE_LON, offline)


class TestClustering:
    @pytest.fixture
    def clusterer(self):
        return GridProximityClusterer()

    @pytest.mark.parametrize("radius", [0.0, -10.0, float("nan"), None])
    def test_rejects_bad_radius(self, clusterer, radius):
        with pytest.raises(InputError):
            clusterer.cluster([device("a")], radius, 3)

    def test_privacy_floor(self, clusterer):
        devices = [device("a"), device("b", 10.0)]
        assert clusterer.cluster(devices, 200.0, 3) == []
        assert clusterer.cluster(devices, 200.0, 1) == []
        assert clusterer.cluster(devices, 200.0, None) == []

    def test_effective_min_members(self):
        assert effective_min_members(None) == 3
        assert effective_min_members(1) == 3
        assert effective_min_members(5) == 5

    def test_min_members_above_floor(self, clusterer):
        devices = [device(f"d{i}", i * 10.0) for i in range(4)]
        assert len(clusterer.cluster(devices, 200.0, 4)) == 1
        assert clusterer.cluster(devices, 200.0, 5) == []

    def test_transitive_chain(self, clusterer):
        # consecutive devices are 150 m apart, the ends are 450 m apart
        devices = [device(f"d{i}", 0.0, i * 150.0) for i in range(4)]
        clusters = clusterer.cluster(devices, 200.0, 3)
        assert len(clusters) == 1
        assert clusters[0].device_ids == ("d0", "d1", "d2", "d3")

    def test_separate_groups(self, clusterer):
        devices = [device(f"a{i}", i * 20.0) for i in range(3)]
        devices += [device(f"b{i}", i * 20.0, 1000.0) for i in range(4)]
        clusters = clusterer.cluster(devices, 200.0, 3)

        assert [c.index for c in clusters] == [0, 1]
        assert sorted(c.size for c in clusters) == [3, 4]
        members = [set(c.device_ids) for c in clusters]
        assert {"a0", "a1", "a2"} in members
        assert {"b0", "b1", "b2", "b3"} in members

    def test_only_offline_devices_cluster(self, clusterer):
        devices = [
            device("a"),
            device("b", 10.0),
            device("c", 20.0, offline=False),
            device("d", 30.0, offline=None),
            Device("bad", float("nan"), LON, True),
        ]
        assert clusterer.cluster(devices, 200.0, 3) == []
        devices.append(device("e", 40.0))
        clusters = clusterer.cluster(devices, 200.0, 3)
        assert clusters[0].device_ids == ("a", "b", "e")

    def test_every_member_is_reachable(self, clusterer):
        devices = [device(f"d{i}", (i % 5) * 90.0, (i // 5) * 90.0) for i in range(25)]
        clusters = clusterer.cluster(devices, 200.0, 3)
        assert len(clusters) == 1
        assert clusters[0].size == 25

    def test_empty_input(self, clusterer):
        assert clusterer.cluster([], 200.0, 3) == []


class TestBucketDevices:
    def test_buckets_are_sorted_and_keep_input_order(self):
        devices = [device("far", 0.0, 12000.0), device("a"), device("b", 0.0, 10.0), device("c", 0.0, -6000.0)]
        buckets = bucket_devices(devices, 5000.0)

        assert list(buckets) == sorted(buckets)
        assert sum(len(b) for b in buckets.values()) == 4
        together = next(b for b in buckets.values() if device("a") in b)
        assert [d.id for d in together] == ["a", "b"]

    def test_empty(self):
        assert bucket_devices([], 500.0) == {}
