"""
Timing and throughput logging for pipeline runs.
"""

import dataclasses
import logging
import time
from typing import Dict, List

from pulse.outagegen.errors import BudgetExceeded

logger = logging.getLogger(__name__)

BUDGET_RECOMMENDATIONS = {
    "clustering": [
        "Filter devices to the visible viewport before running",
        "Increase the buffer radius to reduce grid cells",
    ],
    "hull_building": [
        "Raise alpha to favour convex hulls",
        "Lower target_vertices",
        "Increase max_workers",
    ],
    "merging": [
        "Raise min_overlap_ratio",
        "Limit the number of polygons passed to the aggregator",
    ],
}


@dataclasses.dataclass
class CumulativeStats:
    sessions: int = 0
    processing_time: float = 0.0
    polygons: int = 0
    vertices: int = 0

    @property
    def average_time(self) -> float:
        return self.processing_time / self.sessions if self.sessions else 0.0


class PerformanceLogger:
    """Logs session and phase timings. One instance may serve many runs."""

    def __init__(self, clock=time.perf_counter):
        self._clock = clock
        self._session_start = None
        self._phase_starts: Dict[str, float] = {}
        self.phase_timings: Dict[str, float] = {}
        self.cumulative = CumulativeStats()

    def start_session(self, device_count: int, viewport: str = "full extent"):
        self._session_start = self._clock()
        self.phase_timings = {}
        logger.info(f"Polygon processing started: {device_count} devices, viewport {viewport}")

    def end_session(self, polygon_count: int, total_vertices: int) -> float:
        if self._session_start is None:
            logger.warning("Session end without start")
            return 0.0
        elapsed = self._clock() - self._session_start
        self._session_start = None
        self.cumulative.sessions += 1
        self.cumulative.processing_time += elapsed
        self.cumulative.polygons += polygon_count
        self.cumulative.vertices += total_vertices

        per_polygon = total_vertices // polygon_count if polygon_count else 0
        logger.info(f"Polygon processing completed in {elapsed:.3f}s")
        logger.info(f"  * Polygons         : {polygon_count}")
        logger.info(f"  * Vertices         : {total_vertices} ({per_polygon} per polygon)")
        logger.debug(f"  * Sessions         : {self.cumulative.sessions}")
        logger.debug(f"  * Average time     : {self.cumulative.average_time:.3f}s")
        return elapsed

    def start_phase(self, name: str, details: str = ""):
        self._phase_starts[name] = self._clock()
        logger.debug(f"Phase start: {name}{' - ' + details if details else ''}")

    def end_phase(self, name: str, item_count: int = 0, details: str = "") -> float:
        start = self._phase_starts.pop(name, None)
        if start is None:
            logger.warning(f"Phase end without start: {name}")
            return 0.0
        duration = self._clock() - start
        self.phase_timings[name] = duration
        rate = f"{item_count / duration:.1f} items/s" if item_count and duration > 0 else "n/a"
        logger.debug(
            f"Phase complete: {name} in {duration:.3f}s, {item_count} items ({rate})"
            f"{' - ' + details if details else ''}"
        )
        return duration

    def log_clustering(self, devices: int, clusters: int, cells: int, seconds: float):
        logger.debug(
            f"Clustering: {devices} devices -> {clusters} clusters over {cells} cells in {seconds:.3f}s"
        )

    def log_hull(self, cluster_size: int, point_count: int, vertices: int, method: str, seconds: float):
        reduction = (point_count - vertices) / point_count * 100 if point_count else 0.0
        logger.debug(
            f"Hull: {cluster_size} devices, {point_count} points -> {vertices} vertices "
            f"({method}, {reduction:.1f}% reduction) in {seconds:.3f}s"
        )

    def log_merging(self, inputs: int, outputs: int, overlaps: int, seconds: float):
        reduction = (inputs - outputs) / inputs * 100 if inputs else 0.0
        logger.debug(
            f"Merging: {inputs} -> {outputs} polygons, {overlaps} overlaps "
            f"({reduction:.1f}% reduction) in {seconds:.3f}s"
        )

    def warn_budget(self, exceeded: BudgetExceeded) -> List[str]:
        recommendations = BUDGET_RECOMMENDATIONS.get(exceeded.stage, [])
        logger.warning(f"Performance warning: {exceeded}")
        for recommendation in recommendations:
            logger.info(f"  + {recommendation}")
        return recommendations
