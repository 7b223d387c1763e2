"""
Quadtree index over device locations.

The index is the only long-lived mutable structure in the engine. All
mutations are serialized behind the write side of a ``ReadWriteLock``;
region and radius queries share the read side and can run concurrently.
"""

import dataclasses
import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Tuple

from pulse.outagegen import constants
from pulse.outagegen.models import BoundingBox, Coordinate, Device
from pulse.outagegen.spatial.geometry import great_circle_distances, meters_to_degrees

logger = logging.getLogger(__name__)

WORLD = BoundingBox(-90.0, -180.0, 90.0, 180.0)


def longitude_ranges(lon: float, dlon: float) -> List[Tuple[float, float]]:
    """(west, east) ranges covering ``lon ± dlon``, split where they wrap past ±180."""
    if dlon >= 180.0:
        return [(WORLD.min_lon, WORLD.max_lon)]
    west, east = lon - dlon, lon + dlon
    ranges = [(max(west, WORLD.min_lon), min(east, WORLD.max_lon))]
    if west < WORLD.min_lon:
        ranges.append((west + 360.0, WORLD.max_lon))
    if east > WORLD.max_lon:
        ranges.append((WORLD.min_lon, east - 360.0))
    return ranges


class ReadWriteLock:
    """Shared readers, exclusive writer. A waiting writer blocks new readers."""

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False
        self._waiting_writers = 0

    @contextmanager
    def read_locked(self):
        with self._condition:
            while self._writing or self._waiting_writers:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @contextmanager
    def write_locked(self):
        with self._condition:
            self._waiting_writers += 1
            while self._writing or self._readers:
                self._condition.wait()
            self._waiting_writers -= 1
            self._writing = True
        try:
            yield
        finally:
            with self._condition:
                self._writing = False
                self._condition.notify_all()


class _Node:
    __slots__ = ("bounds", "depth", "entries", "children")

    def __init__(self, bounds: BoundingBox, depth: int):
        self.bounds = bounds
        self.depth = depth
        self.entries: Dict[str, Tuple[int, Device]] = {}
        self.children: Optional[List["_Node"]] = None

    def child_for(self, location: Coordinate) -> "_Node":
        mid = self.bounds.center
        index = (2 if location.lat >= mid.lat else 0) + (1 if location.lon >= mid.lon else 0)
        return self.children[index]

    def split(self):
        b = self.bounds
        mid = b.center
        self.children = [
            _Node(BoundingBox(b.min_lat, b.min_lon, mid.lat, mid.lon), self.depth + 1),
            _Node(BoundingBox(b.min_lat, mid.lon, mid.lat, b.max_lon), self.depth + 1),
            _Node(BoundingBox(mid.lat, b.min_lon, b.max_lat, mid.lon), self.depth + 1),
            _Node(BoundingBox(mid.lat, mid.lon, b.max_lat, b.max_lon), self.depth + 1),
        ]
        entries, self.entries = self.entries, {}
        for device_id, entry in entries.items():
            self.child_for(entry[1].location).entries[device_id] = entry


class SpatialIndex:
    """
    Region and radius queries over a working copy of the device set.

    Parameters:
    -----------
    node_capacity : int
        Entries held by a leaf before it splits
    max_depth : int
        Leaves at this depth never split
    cache_ttl : float
        Seconds the offline-device cache stays fresh
    clock : callable
        Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        node_capacity=constants.INDEX_NODE_CAPACITY,
        max_depth=constants.INDEX_MAX_DEPTH,
        cache_ttl=constants.OFFLINE_CACHE_TTL,
        clock=time.monotonic,
    ):
        self.node_capacity = node_capacity
        self.max_depth = max_depth
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._lock = ReadWriteLock()
        self._cache_lock = threading.Lock()
        self._root: Optional[_Node] = None
        self._entries: Dict[str, Tuple[int, Device]] = {}
        self._sequence = 0
        self._offline_cache: Optional[List[Device]] = None
        self._offline_cached_at = 0.0
        self._generation = 0

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)

    def __contains__(self, device_id) -> bool:
        with self._lock.read_locked():
            return device_id in self._entries

    @property
    def is_ready(self) -> bool:
        return self._root is not None

    # ---------------------------------------------------------------
    # Mutations
    # ---------------------------------------------------------------

    def rebuild(self, devices: Iterable[Device]) -> int:
        """Replace the whole working copy. Returns the number of devices indexed."""
        with self._lock.write_locked():
            self._root = _Node(WORLD, 0)
            self._entries = {}
            self._sequence = 0
            rejected = 0
            for device in devices:
                if not self._insert_unlocked(device):
                    rejected += 1
            self._invalidate()
            count = len(self._entries)
        logger.debug(f"Spatial index rebuilt with {count} devices ({rejected} rejected)")
        return count

    def insert(self, device: Device) -> bool:
        with self._lock.write_locked():
            if self._root is None:
                self._root = _Node(WORLD, 0)
            inserted = self._insert_unlocked(device)
            if inserted:
                self._invalidate()
            return inserted

    def remove(self, device_id: str) -> bool:
        with self._lock.write_locked():
            removed = self._remove_unlocked(device_id) is not None
            if removed:
                self._invalidate()
            return removed

    def update_status(self, device_id: str, offline: Optional[bool]) -> bool:
        with self._lock.write_locked():
            entry = self._entries.get(device_id)
            if entry is None:
                return False
            sequence, device = entry
            updated = (sequence, dataclasses.replace(device, offline=offline))
            self._entries[device_id] = updated
            self._leaf_for(device.location).entries[device_id] = updated
            self._invalidate()
            return True

    def _insert_unlocked(self, device: Device) -> bool:
        if not device.has_valid_location:
            logger.warning(
                f"Rejected device {device.id}: invalid coordinates ({device.lat}, {device.lon})"
            )
            return False

        previous = self._remove_unlocked(device.id)
        if previous is None:
            sequence = self._sequence
            self._sequence += 1
        else:
            sequence = previous[0]

        entry = (sequence, device)
        self._entries[device.id] = entry
        node = self._leaf_for(device.location)
        node.entries[device.id] = entry
        if len(node.entries) > self.node_capacity and node.depth < self.max_depth:
            node.split()
        return True

    def _remove_unlocked(self, device_id: str) -> Optional[Tuple[int, Device]]:
        entry = self._entries.pop(device_id, None)
        if entry is not None:
            self._leaf_for(entry[1].location).entries.pop(device_id, None)
        return entry

    def _leaf_for(self, location: Coordinate) -> _Node:
        node = self._root
        while node.children is not None:
            node = node.child_for(location)
        return node

    def _invalidate(self):
        with self._cache_lock:
            self._offline_cache = None
            self._generation += 1

    # ---------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------

    def query_region(self, region: BoundingBox) -> List[Device]:
        """Devices inside ``region``, in insertion order. Empty before the first rebuild."""
        with self._lock.read_locked():
            return self._query_region_unlocked(region)

    def query_radius(self, center: Coordinate, radius: float) -> List[Device]:
        """
        Devices within ``radius`` meters (great-circle) of ``center``. A circle
        crossing the antimeridian is searched as two boxes, one per side.
        """
        dlat, dlon = meters_to_degrees(radius, center.lat)
        min_lat = max(center.lat - dlat, WORLD.min_lat)
        max_lat = min(center.lat + dlat, WORLD.max_lat)
        regions = [
            BoundingBox(min_lat, west, max_lat, east)
            for west, east in longitude_ranges(center.lon, dlon)
        ]
        with self._lock.read_locked():
            candidates = self._query_region_unlocked(*regions)
        if not candidates:
            return []
        distances = great_circle_distances(center, [d.location for d in candidates])
        return [d for d, distance in zip(candidates, distances) if distance <= radius]

    def offline_devices(self) -> List[Device]:
        """All offline devices, served from a cache that expires after ``cache_ttl`` seconds."""
        now = self._clock()
        with self._cache_lock:
            if self._offline_cache is not None and now - self._offline_cached_at <= self.cache_ttl:
                return list(self._offline_cache)
            generation = self._generation

        with self._lock.read_locked():
            offline = [d for d in self._query_region_unlocked(WORLD) if d.offline is True]

        with self._cache_lock:
            if generation == self._generation:
                self._offline_cache = offline
                self._offline_cached_at = now
        return list(offline)

    def _query_region_unlocked(self, *regions: BoundingBox) -> List[Device]:
        if self._root is None:
            return []
        found = []
        stack = [self._root]
        while stack:
            node = stack.pop()
            if not any(node.bounds.intersects(region) for region in regions):
                continue
            if node.children is not None:
                stack.extend(node.children)
                continue
            found.extend(
                entry for entry in node.entries.values()
                if any(region.contains(entry[1].location) for region in regions)
            )
        found.sort(key=lambda entry: entry[0])
        return [device for _, device in found]
