"""
Data models for the outagegen package.

This module contains the dataclasses passed between pipeline stages. Inputs
(devices, events) are immutable snapshots; polygons are created once per run
and never mutated afterwards.
"""

import dataclasses
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from pulse.outagegen import constants
from pulse.outagegen.errors import GeometricDegeneracy


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timezone-aware copy of ``value``; naive times are taken to be UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Coordinate(NamedTuple):
    lat: float
    lon: float


@dataclasses.dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned latitude/longitude rectangle."""

    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    @classmethod
    def from_coordinates(cls, coordinates: Sequence[Coordinate]) -> "BoundingBox":
        lats = [c.lat for c in coordinates]
        lons = [c.lon for c in coordinates]
        return cls(min(lats), min(lons), max(lats), max(lons))

    @classmethod
    def parse(cls, text: str) -> "BoundingBox":
        """Parse ``"min_lat,min_lon,max_lat,max_lon"``."""
        values = [float(v) for v in text.split(",")]
        if len(values) != 4:
            raise ValueError(f"Expected 4 comma-separated values, got {text!r}")
        return cls(*values)

    @property
    def lat_span(self) -> float:
        return self.max_lat - self.min_lat

    @property
    def lon_span(self) -> float:
        return self.max_lon - self.min_lon

    @property
    def center(self) -> Coordinate:
        return Coordinate((self.min_lat + self.max_lat) / 2, (self.min_lon + self.max_lon) / 2)

    def contains(self, coordinate: Coordinate) -> bool:
        return (
            self.min_lat <= coordinate.lat <= self.max_lat
            and self.min_lon <= coordinate.lon <= self.max_lon
        )

    def intersects(self, other: "BoundingBox") -> bool:
        return not (
            other.min_lat > self.max_lat
            or other.max_lat < self.min_lat
            or other.min_lon > self.max_lon
            or other.max_lon < self.min_lon
        )

    def expanded(self, margin: float) -> "BoundingBox":
        """Grow every side by ``margin`` times the box's span."""
        dlat = self.lat_span * margin
        dlon = self.lon_span * margin
        return BoundingBox(
            self.min_lat - dlat, self.min_lon - dlon, self.max_lat + dlat, self.max_lon + dlon
        )

    def nearest_point(self, coordinate: Coordinate) -> Coordinate:
        return Coordinate(
            min(max(coordinate.lat, self.min_lat), self.max_lat),
            min(max(coordinate.lon, self.min_lon), self.max_lon),
        )


@dataclasses.dataclass(frozen=True)
class PowerEvent:
    event_type: str
    timestamp: datetime

    def __post_init__(self):
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))

    @property
    def is_power_off(self) -> bool:
        return self.event_type == constants.POWER_OFF_EVENT


@dataclasses.dataclass(frozen=True)
class Device:
    """
    A monitored device as supplied by the caller for one pipeline run.

    ``offline`` is ``None`` when the device has not reported a power status.
    """

    id: str
    lat: float
    lon: float
    offline: Optional[bool] = None
    events: Tuple[PowerEvent, ...] = ()

    @property
    def location(self) -> Coordinate:
        return Coordinate(self.lat, self.lon)

    @property
    def has_valid_location(self) -> bool:
        return (
            isinstance(self.lat, (int, float))
            and isinstance(self.lon, (int, float))
            and math.isfinite(self.lat)
            and math.isfinite(self.lon)
            and -90.0 <= self.lat <= 90.0
            and -180.0 <= self.lon <= 180.0
        )


@dataclasses.dataclass(frozen=True)
class Cluster:
    """Offline devices that are mutually reachable through the proximity relation."""

    index: int
    devices: Tuple[Device, ...]

    @property
    def size(self) -> int:
        return len(self.devices)

    @property
    def device_ids(self) -> Tuple[str, ...]:
        return tuple(sorted(d.id for d in self.devices))

    @property
    def locations(self) -> List[Coordinate]:
        return [d.location for d in self.devices]

    @property
    def centroid(self) -> Coordinate:
        return Coordinate(
            sum(d.lat for d in self.devices) / self.size,
            sum(d.lon for d in self.devices) / self.size,
        )


class HullMethod(Enum):
    """Boundary construction method, most detailed first."""

    CONCAVE = "concave"  # alpha shape over a buffered point cloud
    CONVEX = "convex"  # Graham scan
    RECTANGLE = "rectangle"  # padded bounding box

    def cheaper(self) -> "HullMethod":
        if self is HullMethod.CONCAVE:
            return HullMethod.CONVEX
        return HullMethod.RECTANGLE


@dataclasses.dataclass(frozen=True)
class QualityMetrics:
    convexity: float  # polygon area / convex hull area
    smoothness: float  # 1 - mean |turning angle| / pi
    enclosure: float  # fraction of member devices inside the polygon

    @property
    def score(self) -> float:
        return (self.convexity + self.smoothness + self.enclosure) / 3


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclasses.dataclass(frozen=True)
class OutagePolygon:
    """
    An outage area ready for display.

    ``coordinates`` is always a closed ring (first == last) with at least
    three distinct vertices. When ``contributing_polygon_ids`` is non-empty
    the polygon is the product of a merge and every aggregation field has
    been derived from the contributors by ``OutagePolygon.merged``.
    """

    id: str
    coordinates: Tuple[Coordinate, ...]
    confidence: float
    affected_device_count: int
    online_device_count: int
    center: Coordinate
    bounding_radius: float  # meters
    outage_start_date: Optional[datetime] = None
    recent_outage_devices: int = 0
    hull_method: HullMethod = HullMethod.CONCAVE
    quality: Optional[QualityMetrics] = None

    # Aggregation
    contributing_polygon_ids: Tuple[str, ...] = ()
    individual_confidences: Tuple[float, ...] = ()
    individual_device_counts: Tuple[int, ...] = ()
    individual_outage_start_dates: Tuple[Optional[datetime], ...] = ()
    aggregated_device_count: Optional[int] = None
    aggregated_confidence: Optional[float] = None
    earliest_outage_start_date: Optional[datetime] = None
    overlap_coefficient: float = 0.0

    def __post_init__(self):
        ring = tuple(Coordinate(*c) for c in self.coordinates)
        if ring and ring[0] != ring[-1]:
            ring = ring + (ring[0],)
        if len(set(ring)) < 3:
            raise GeometricDegeneracy(f"Polygon {self.id} has fewer than 3 distinct vertices")
        object.__setattr__(self, "coordinates", ring)
        object.__setattr__(
            self,
            "confidence",
            clamp(self.confidence, constants.MIN_CONFIDENCE, constants.MAX_CONFIDENCE),
        )
        object.__setattr__(self, "overlap_coefficient", clamp(self.overlap_coefficient, 0.0, 1.0))
        object.__setattr__(self, "outage_start_date", as_utc(self.outage_start_date))
        object.__setattr__(self, "earliest_outage_start_date", as_utc(self.earliest_outage_start_date))
        object.__setattr__(
            self,
            "individual_outage_start_dates",
            tuple(as_utc(d) for d in self.individual_outage_start_dates),
        )
        if self.aggregated_device_count is None:
            object.__setattr__(self, "aggregated_device_count", self.affected_device_count)
        if self.aggregated_confidence is None:
            object.__setattr__(self, "aggregated_confidence", self.confidence)
        if self.earliest_outage_start_date is None:
            object.__setattr__(self, "earliest_outage_start_date", self.outage_start_date)

    @classmethod
    def merged(
        cls,
        id: str,
        coordinates: Sequence[Coordinate],
        contributors: Sequence["OutagePolygon"],
        center: Coordinate,
        bounding_radius: float,
        overlap_coefficient: float,
        quality: Optional[QualityMetrics] = None,
    ) -> "OutagePolygon":
        counts = tuple(p.affected_device_count for p in contributors)
        confidences = tuple(p.confidence for p in contributors)
        total = sum(counts)
        if total > 0:
            confidence = sum(c * n for c, n in zip(confidences, counts)) / total
        else:
            confidence = sum(confidences) / len(confidences)
        dates = tuple(as_utc(p.outage_start_date) for p in contributors)
        known_dates = [d for d in dates if d is not None]
        earliest = min(known_dates) if known_dates else None

        return cls(
            id=id,
            coordinates=tuple(coordinates),
            confidence=confidence,
            affected_device_count=total,
            online_device_count=sum(p.online_device_count for p in contributors),
            center=center,
            bounding_radius=bounding_radius,
            outage_start_date=earliest,
            recent_outage_devices=sum(p.recent_outage_devices for p in contributors),
            hull_method=HullMethod.CONVEX,
            quality=quality,
            contributing_polygon_ids=tuple(p.id for p in contributors),
            individual_confidences=confidences,
            individual_device_counts=counts,
            individual_outage_start_dates=dates,
            aggregated_device_count=total,
            aggregated_confidence=clamp(
                confidence, constants.MIN_CONFIDENCE, constants.MAX_CONFIDENCE
            ),
            earliest_outage_start_date=earliest,
            overlap_coefficient=overlap_coefficient,
        )

    @property
    def is_merged(self) -> bool:
        return len(self.contributing_polygon_ids) > 0

    @property
    def vertex_count(self) -> int:
        return len(self.coordinates) - 1

    @property
    def total_device_count(self) -> int:
        return self.affected_device_count + self.online_device_count

    @property
    def outage_percentage(self) -> float:
        if self.total_device_count == 0:
            return 0.0
        return self.affected_device_count / self.total_device_count * 100

    @property
    def should_display(self) -> bool:
        return self.confidence >= constants.DISPLAY_CONFIDENCE_THRESHOLD

    @property
    def is_privacy_compliant(self) -> bool:
        return self.aggregated_device_count >= constants.PRIVACY_FLOOR

    @property
    def merge_description(self) -> str:
        if not self.is_merged:
            return f"{self.affected_device_count} devices affected"
        return (
            f"Merged from {len(self.contributing_polygon_ids)} areas: "
            f"{self.aggregated_device_count} devices, "
            f"{self.overlap_coefficient:.0%} overlap"
        )


class PipelineState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CLUSTERING = "clustering"
    HULL_BUILDING = "hull_building"
    SCORING = "scoring"
    MERGING = "merging"
    OPTIMIZING = "optimizing"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.CANCELLED, PipelineState.ERROR)

    def can_transition_to(self, other: "PipelineState") -> bool:
        if self.is_terminal:
            return False
        if other in (PipelineState.CANCELLED, PipelineState.ERROR):
            return True
        return _NEXT_STATE.get(self) is other


_NEXT_STATE = {
    PipelineState.IDLE: PipelineState.FETCHING,
    PipelineState.FETCHING: PipelineState.CLUSTERING,
    PipelineState.CLUSTERING: PipelineState.HULL_BUILDING,
    PipelineState.HULL_BUILDING: PipelineState.SCORING,
    PipelineState.SCORING: PipelineState.MERGING,
    PipelineState.MERGING: PipelineState.OPTIMIZING,
    PipelineState.OPTIMIZING: PipelineState.DONE,
}


class ProcessingStrategy(Enum):
    DIRECT = "direct"  # detailed hull per cluster
    BUCKETED = "bucketed"  # suburb-scale buckets clustered independently
    GRID = "grid"  # padded rectangles per grid cell

    @classmethod
    def for_device_count(cls, count: int) -> "ProcessingStrategy":
        if count < constants.DIRECT_STRATEGY_LIMIT:
            return cls.DIRECT
        if count <= constants.BUCKETED_STRATEGY_LIMIT:
            return cls.BUCKETED
        return cls.GRID


def quality_grade(score: float) -> str:
    for threshold, grade in constants.QUALITY_GRADES:
        if score >= threshold:
            return grade
    return constants.LOWEST_QUALITY_GRADE


@dataclasses.dataclass
class RunMetrics:
    """Timings, counts and degradation flags for one pipeline run."""

    stage_timings: Dict[str, float] = dataclasses.field(default_factory=dict)  # seconds
    device_count: int = 0
    rejected_device_count: int = 0
    offline_device_count: int = 0
    cluster_count: int = 0
    raw_polygon_count: int = 0
    merged_polygon_count: int = 0
    output_polygon_count: int = 0
    overlap_count: int = 0
    total_vertices: int = 0
    strategy: Optional[ProcessingStrategy] = None
    hull_method: Optional[HullMethod] = None
    hull_fallbacks: Dict[str, int] = dataclasses.field(default_factory=dict)
    degraded_merges: int = 0
    degraded: List[str] = dataclasses.field(default_factory=list)
    average_quality: float = 0.0
    quality_grade: str = constants.LOWEST_QUALITY_GRADE

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded) or self.degraded_merges > 0

    @property
    def total_time(self) -> float:
        return sum(self.stage_timings.values())


@dataclasses.dataclass(frozen=True)
class Success:
    polygons: Tuple[OutagePolygon, ...]
    metrics: RunMetrics


@dataclasses.dataclass(frozen=True)
class Cancelled:
    pass


@dataclasses.dataclass(frozen=True)
class Failed:
    reason: str


PipelineResult = Union[Success, Cancelled, Failed]
