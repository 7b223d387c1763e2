"""
Grid-bucketed proximity clustering of offline devices.

Devices are bucketed into a uniform grid whose cell size equals the buffer
radius, so a device can only be within the buffer radius of devices in its
own cell or the 8 cells around it. Cells are grown into groups by
breadth-first expansion, which keeps the work near-linear instead of the
all-pairs O(n^2) comparison.
"""

import logging
import math
from collections import deque
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
from scipy.spatial.distance import cdist

from pulse.outagegen import constants
from pulse.outagegen.errors import InputError
from pulse.outagegen.models import Cluster, Device
from pulse.outagegen.spatial.geometry import LocalProjection

logger = logging.getLogger(__name__)

CellKey = Tuple[int, int]

NEIGHBOUR_OFFSETS = [
    (-1, -1), (-1, 0), (-1, 1),
    (0, -1), (0, 1),
    (1, -1), (1, 0), (1, 1),
]


def effective_min_members(requested: Optional[int]) -> int:
    """The privacy floor: never fewer than 3 devices per cluster."""
    return max(constants.PRIVACY_FLOOR, int(requested or 0))


class Clusterer(Protocol):
    def cluster(
        self, devices: Sequence[Device], buffer_radius: float, min_members: int
    ) -> List[Cluster]:
        ...


def grid_keys(points: np.ndarray, cell_size: float) -> List[CellKey]:
    cells = np.floor(points / cell_size).astype(np.int64)
    return [(int(x), int(y)) for x, y in cells]


def bucket_devices(
    devices: Sequence[Device],
    cell_size: float,
    projection: Optional[LocalProjection] = None,
) -> Dict[CellKey, List[Device]]:
    """
    Group devices into square grid cells of ``cell_size`` meters.

    The returned dict is ordered by cell key and each bucket keeps the input
    order, so iteration is reproducible across runs.
    """
    if not devices:
        return {}
    if projection is None:
        projection = LocalProjection.centered_on([d.location for d in devices])
    points = projection.project([d.location for d in devices])

    buckets: Dict[CellKey, List[Device]] = {}
    for device, key in zip(devices, grid_keys(points, cell_size)):
        buckets.setdefault(key, []).append(device)
    return {key: buckets[key] for key in sorted(buckets)}


class GridProximityClusterer:
    """Connected components of offline devices under a buffer-radius proximity relation."""

    def cluster(
        self,
        devices: Sequence[Device],
        buffer_radius: float,
        min_members: int = constants.DEFAULT_MIN_DEVICE_COUNT,
    ) -> List[Cluster]:
        if buffer_radius is None or not math.isfinite(buffer_radius) or buffer_radius <= 0:
            raise InputError(f"Buffer radius must be positive, got {buffer_radius}")

        floor = effective_min_members(min_members)
        if min_members is not None and min_members < floor:
            logger.debug(f"Minimum cluster size {min_members} raised to privacy floor {floor}")

        candidates = [d for d in devices if d.offline is True and d.has_valid_location]
        if not candidates:
            return []

        projection = LocalProjection.centered_on([d.location for d in candidates])
        points = projection.project([d.location for d in candidates])

        cells: Dict[CellKey, List[int]] = {}
        for i, key in enumerate(grid_keys(points, buffer_radius)):
            cells.setdefault(key, []).append(i)

        groups = self._grow_groups(cells, points, buffer_radius)

        clusters = []
        for members in groups:
            if len(members) < floor:
                logger.debug(f"Dropped group of {len(members)} devices below privacy floor {floor}")
                continue
            clusters.append(Cluster(len(clusters), tuple(candidates[i] for i in members)))

        logger.debug(
            f"Clustered {len(candidates)} offline devices from {len(cells)} cells "
            f"into {len(clusters)} clusters"
        )
        return clusters

    def _grow_groups(self, cells, points, buffer_radius) -> List[List[int]]:
        visited = set()
        groups = []
        for seed in sorted(cells):
            if seed in visited:
                continue
            visited.add(seed)
            members = list(cells[seed])
            queue = deque([seed])
            while queue:
                current = queue.popleft()
                for dx, dy in NEIGHBOUR_OFFSETS:
                    neighbour = (current[0] + dx, current[1] + dy)
                    if neighbour in visited or neighbour not in cells:
                        continue
                    if self._cells_touch(points, cells[current], cells[neighbour], buffer_radius):
                        visited.add(neighbour)
                        members.extend(cells[neighbour])
                        queue.append(neighbour)
            groups.append(sorted(members))
        return groups

    @staticmethod
    def _cells_touch(points, first, second, buffer_radius) -> bool:
        distances = cdist(points[first], points[second])
        return bool((distances <= buffer_radius).any())
