"""
The outage polygon pipeline.

Stages run in a fixed order over an immutable device snapshot:

    fetch -> cluster -> build hulls -> score -> merge -> optimize

Each stage is wrapped by ``recorder``, which checks for cancellation, moves
the state machine, times the stage and reports progress. Stages never raise
for bad geometry; they fall back to cheaper algorithms and record what
degraded in the run metrics. Only a failing device source propagates.
"""

import dataclasses
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from funcy import decorator, partial, rcompose
from returns.maybe import Maybe

from pulse.outagegen import constants
from pulse.outagegen.errors import BudgetExceeded, GeometricDegeneracy, PipelineCancelled
from pulse.outagegen.models import (
    BoundingBox,
    Cancelled,
    Cluster,
    Device,
    Failed,
    HullMethod,
    OutagePolygon,
    PipelineResult,
    PipelineState,
    ProcessingStrategy,
    RunMetrics,
    Success,
    clamp,
    as_utc,
    quality_grade,
)
from pulse.outagegen.outage_start import infer_outage_start
from pulse.outagegen.performance import PerformanceLogger
from pulse.outagegen.spatial.aggregation import POLYGON_NAMESPACE, MergeOutcome, PolygonAggregator
from pulse.outagegen.spatial.clustering import (
    Clusterer,
    GridProximityClusterer,
    bucket_devices,
    effective_min_members,
)
from pulse.outagegen.spatial.geometry import LocalProjection, bounding_radius
from pulse.outagegen.spatial.hulls import HullBuilder, HullResult
from pulse.outagegen.spatial.scoring import ConfidenceScorer, quality_metrics
from pulse.outagegen.spatial.spatial_index import SpatialIndex
from pulse.outagegen.spatial.viewport import ViewportOptimizer

logger = logging.getLogger(__name__)

DeviceSource = Union[Sequence[Device], Callable[[], Sequence[Device]]]
ProgressCallback = Callable[[float, str], None]


@decorator
def log(call):
    logger.info(f"  {call._func.__name__}")
    return call()


def polygon_id(cluster: Cluster) -> str:
    """Stable id derived from the member device ids."""
    return str(uuid.uuid5(POLYGON_NAMESPACE, ",".join(cluster.device_ids)))


@dataclasses.dataclass(frozen=True)
class PipelineSettings:
    """Tunables beyond the entry point's core parameters. Budgets are in seconds."""

    target_vertices: int = constants.DEFAULT_TARGET_VERTICES
    max_vertices: int = constants.DEFAULT_MAX_VERTICES
    min_overlap_ratio: float = constants.DEFAULT_MIN_OVERLAP_RATIO
    catchment_factor: float = constants.DEFAULT_CATCHMENT_FACTOR
    max_workers: int = constants.DEFAULT_MAX_WORKERS
    batch_size: int = constants.DEFAULT_BATCH_SIZE
    clustering_budget: float = constants.DEFAULT_CLUSTERING_BUDGET / 1000
    hull_budget: float = constants.DEFAULT_HULL_BUDGET / 1000
    merging_budget: float = constants.DEFAULT_MERGING_BUDGET / 1000
    detail_zoom_threshold: int = constants.DEFAULT_DETAIL_ZOOM_THRESHOLD
    max_polygons: int = constants.DEFAULT_MAX_RENDERED_POLYGONS
    base_tolerance: float = constants.DEFAULT_BASE_TOLERANCE

    def __post_init__(self):
        for name in ("max_workers", "batch_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")

    @classmethod
    def from_config(cls, configuration) -> "PipelineSettings":
        return cls(
            target_vertices=configuration.target_vertices,
            max_vertices=configuration.max_vertices,
            min_overlap_ratio=configuration.min_overlap_ratio,
            catchment_factor=configuration.catchment_factor,
            max_workers=configuration.max_workers,
            batch_size=configuration.batch_size,
            clustering_budget=configuration.clustering_budget / 1000,
            hull_budget=configuration.hull_budget / 1000,
            merging_budget=configuration.merging_budget / 1000,
        )


class CancellationToken:
    """Cooperative cancellation flag shared between the caller and a run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise PipelineCancelled()


class ProgressReporter:
    """Forwards progress to a callback, never letting the fraction go backwards."""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self.fraction = 0.0

    def report(self, fraction: float, label: str):
        self.fraction = clamp(fraction, self.fraction, 1.0)
        if self._callback is not None:
            self._callback(self.fraction, label)


@dataclasses.dataclass
class Run:
    source: DeviceSource
    devices: Tuple[Device, ...] = ()
    hull_method: HullMethod = HullMethod.CONCAVE
    clusters: List[Cluster] = dataclasses.field(default_factory=list)
    catchments: Dict[int, List[Device]] = dataclasses.field(default_factory=dict)
    hulls: List[HullResult] = dataclasses.field(default_factory=list)
    polygons: List[OutagePolygon] = dataclasses.field(default_factory=list)
    metrics: RunMetrics = dataclasses.field(default_factory=RunMetrics)


class OutagePipeline:
    """
    One run of the outage polygon engine.

    Parameters:
    -----------
    buffer_radius : float
        Influence radius around each device in meters
    alpha : float
        Concavity of the hulls; >= 1.0 gives convex hulls
    min_device_count : int
        Minimum devices per polygon; never below the privacy floor of 3
    viewport : BoundingBox, optional
        Visible region used for culling
    zoom_level : float, optional
        Map zoom used for level-of-detail simplification
    settings : PipelineSettings, optional
        Vertex budgets, worker pool size, stage budgets
    progress : callable, optional
        Called with (fraction, label) as the run advances
    cancellation : CancellationToken, optional
        Checked at every stage and batch boundary
    now : datetime, optional
        Reference time for outage start inference
    """

    def __init__(
        self,
        buffer_radius=constants.DEFAULT_BUFFER_RADIUS,
        alpha=constants.DEFAULT_ALPHA,
        min_device_count=constants.DEFAULT_MIN_DEVICE_COUNT,
        viewport: Optional[BoundingBox] = None,
        zoom_level: Optional[float] = None,
        settings: Optional[PipelineSettings] = None,
        progress: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None,
        now: Optional[datetime] = None,
        clusterer: Optional[Clusterer] = None,
    ):
        self.buffer_radius = buffer_radius
        self.alpha = alpha
        self.min_device_count = effective_min_members(min_device_count)
        self.settings = settings or PipelineSettings()
        self.viewport: Maybe[BoundingBox] = Maybe.from_optional(viewport)
        self.zoom_level: Maybe[float] = Maybe.from_optional(zoom_level)
        self.progress = ProgressReporter(progress)
        self.cancellation = cancellation or CancellationToken()
        self.now = as_utc(now) or datetime.now(timezone.utc)
        self.clusterer = clusterer or GridProximityClusterer()

        self.index = SpatialIndex()
        self.hull_builder = HullBuilder(
            buffer_radius, alpha, self.settings.target_vertices, self.settings.max_vertices
        )
        self.scorer = ConfidenceScorer(self.index, self.settings.catchment_factor)
        self.aggregator = PolygonAggregator(
            buffer_radius,
            self.settings.min_overlap_ratio,
            self.settings.target_vertices,
            self.settings.max_vertices,
        )
        self.optimizer = ViewportOptimizer(
            self.settings.detail_zoom_threshold,
            self.settings.max_polygons,
            self.settings.base_tolerance,
        )
        self.performance = PerformanceLogger()

        self.state = PipelineState.IDLE
        self.state_history = [PipelineState.IDLE]
        self._band = (0.0, 0.0, "")
        self._source_failed = False
        self._clock = time.perf_counter

    # ---------------------------------------------------------------
    # Running
    # ---------------------------------------------------------------

    def run(self, devices: DeviceSource) -> PipelineResult:
        if self.state is not PipelineState.IDLE:
            raise RuntimeError("An OutagePipeline can only be run once")

        stages = [
            (PipelineState.FETCHING, self.fetch_devices, 0.05, "Fetching devices"),
            (PipelineState.CLUSTERING, self.cluster_devices, 0.25, "Clustering offline devices"),
            (PipelineState.HULL_BUILDING, self.build_hulls, 0.75, "Building outage boundaries"),
            (PipelineState.SCORING, self.score_polygons, 0.85, "Scoring confidence"),
            (PipelineState.MERGING, self.merge_polygons, 0.95, "Merging overlapping areas"),
            (PipelineState.OPTIMIZING, self.optimize_polygons, 1.0, "Optimizing for display"),
        ]
        recorded_stages = [
            partial(self.recorder, state, fraction, label, stage)
            for state, stage, fraction, label in stages
        ]
        pipeline = rcompose(self.start_run, *recorded_stages, self.end_run, self.log_run)

        try:
            run = pipeline(Run(source=devices))
        except PipelineCancelled:
            self._transition(PipelineState.CANCELLED)
            logger.info("Polygon processing cancelled; partial results discarded")
            return Cancelled()
        except Exception as e:
            if not self.state.is_terminal:
                self._transition(PipelineState.ERROR)
            if self._source_failed:
                raise
            logger.exception(f"Polygon processing failed: {e}")
            return Failed(str(e))

        return Success(tuple(run.polygons), run.metrics)

    def cancel(self):
        self.cancellation.cancel()

    def recorder(self, state: PipelineState, fraction: float, label: str, stage, run: Run) -> Run:
        self.cancellation.raise_if_cancelled()
        self._transition(state)
        self._band = (self.progress.fraction, fraction, label)
        self.progress.report(self.progress.fraction, label)

        self.performance.start_phase(state.value)
        run = stage(run)
        run.metrics.stage_timings[state.value] = self.performance.end_phase(state.value)

        self.cancellation.raise_if_cancelled()
        self.progress.report(fraction, label)
        return run

    def start_run(self, run: Run) -> Run:
        logger.info("Generating outage polygons")
        return run

    def end_run(self, run: Run) -> Run:
        metrics = run.metrics
        metrics.output_polygon_count = len(run.polygons)
        metrics.total_vertices = sum(p.vertex_count for p in run.polygons)
        metrics.hull_method = run.hull_method
        scores = [p.quality.score for p in run.polygons if p.quality is not None]
        metrics.average_quality = sum(scores) / len(scores) if scores else 0.0
        metrics.quality_grade = quality_grade(metrics.average_quality)

        self.performance.end_session(len(run.polygons), metrics.total_vertices)
        self._transition(PipelineState.DONE)
        return run

    def log_run(self, run: Run) -> Run:
        metrics = run.metrics
        logger.info("Processing Summary")
        logger.info("==================")
        logger.info(f"Devices        : {metrics.device_count} ({metrics.rejected_device_count} rejected)")
        logger.info(f"Offline        : {metrics.offline_device_count}")
        logger.info(f"Strategy       : {metrics.strategy.value if metrics.strategy else 'n/a'}")
        logger.info(f"Clusters       : {metrics.cluster_count}")
        logger.info(f"Polygons       : {metrics.output_polygon_count}")
        logger.info(f"Quality grade  : {metrics.quality_grade} ({metrics.average_quality:.2f})")
        if metrics.is_degraded:
            logger.info(f"Degraded       : {', '.join(metrics.degraded) or 'merges'}")
        logger.debug("Stage timings:")
        for stage, seconds in metrics.stage_timings.items():
            logger.debug(f"  + {stage:<14}: {seconds:.3f}s")
        return run

    # ---------------------------------------------------------------
    # Stages
    # ---------------------------------------------------------------

    @log
    def fetch_devices(self, run: Run) -> Run:
        try:
            devices = run.source() if callable(run.source) else run.source
            snapshot = tuple(devices)
        except Exception:
            self._source_failed = True
            raise

        valid = tuple(d for d in snapshot if d.has_valid_location)
        rejected = len(snapshot) - len(valid)
        if rejected:
            logger.warning(f"Skipped {rejected} devices with invalid coordinates")
        if not valid:
            logger.info("No devices to process")

        strategy = ProcessingStrategy.for_device_count(len(valid))
        if strategy is not ProcessingStrategy.GRID:
            self.index.rebuild(valid)

        run.metrics.device_count = len(snapshot)
        run.metrics.rejected_device_count = rejected
        run.metrics.strategy = strategy
        self.performance.start_session(
            len(snapshot), self.viewport.map(str).value_or("full extent")
        )
        logger.debug(f"Selected {strategy.value} strategy for {len(valid)} devices")

        method = HullMethod.RECTANGLE if strategy is ProcessingStrategy.GRID else HullMethod.CONCAVE
        return dataclasses.replace(run, devices=valid, hull_method=method)

    @log
    def cluster_devices(self, run: Run) -> Run:
        offline = [d for d in run.devices if d.offline is True]
        run.metrics.offline_device_count = len(offline)

        start = self._clock()
        catchments: Dict[int, List[Device]] = {}
        if run.metrics.strategy is ProcessingStrategy.GRID:
            clusters, catchments = self._grid_clusters(run.devices)
        elif run.metrics.strategy is ProcessingStrategy.BUCKETED:
            clusters = self._bucketed_clusters(offline)
        else:
            clusters = self.clusterer.cluster(offline, self.buffer_radius, self.min_device_count)
        elapsed = self._clock() - start

        self.performance.log_clustering(len(offline), len(clusters), len(catchments), elapsed)
        run.metrics.cluster_count = len(clusters)
        method = self._check_budget(
            "clustering", elapsed, self.settings.clustering_budget, run.hull_method, run.metrics
        )
        return dataclasses.replace(run, clusters=clusters, catchments=catchments, hull_method=method)

    @log
    def build_hulls(self, run: Run) -> Run:
        method = run.hull_method
        hulls: List[HullResult] = []
        batches = list(self._batches(run.clusters))
        window_start = self._clock()

        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            for n, batch in enumerate(batches, 1):
                self.cancellation.raise_if_cancelled()
                futures = [executor.submit(self._timed_build, c, method) for c in batch]
                for cluster, future in zip(batch, futures):
                    hulls.append(self._collect_hull(cluster, method, future, run.metrics))
                self._report_stage(n / len(batches))

                elapsed = self._clock() - window_start
                if elapsed > self.settings.hull_budget and method is not HullMethod.RECTANGLE:
                    method = self._check_budget(
                        "hull_building", elapsed, self.settings.hull_budget, method, run.metrics
                    )
                    window_start = self._clock()

        return dataclasses.replace(run, hulls=hulls, hull_method=method)

    @log
    def score_polygons(self, run: Run) -> Run:
        polygons = []
        for n, (cluster, hull) in enumerate(zip(run.clusters, run.hulls), 1):
            if n % self.settings.batch_size == 0:
                self.cancellation.raise_if_cancelled()
                self._report_stage(n / len(run.clusters))
            polygon = self._score(cluster, hull, run.catchments.get(cluster.index))
            if polygon is not None:
                polygons.append(polygon)

        run.metrics.raw_polygon_count = len(polygons)
        return dataclasses.replace(run, polygons=polygons)

    @log
    def merge_polygons(self, run: Run) -> Run:
        start = self._clock()
        try:
            outcome = self.aggregator.merge_overlapping(run.polygons)
        except Exception as e:
            logger.error(f"Merging failed, keeping unmerged polygons: {e}")
            run.metrics.degraded.append(f"merging failed: {e}")
            outcome = MergeOutcome(list(run.polygons))
        elapsed = self._clock() - start

        self.performance.log_merging(
            len(run.polygons), len(outcome.polygons), outcome.overlap_count, elapsed
        )
        run.metrics.merged_polygon_count = outcome.merged_count
        run.metrics.overlap_count = outcome.overlap_count
        run.metrics.degraded_merges = outcome.degraded_merges
        method = self._check_budget(
            "merging", elapsed, self.settings.merging_budget, run.hull_method, run.metrics
        )
        return dataclasses.replace(run, polygons=outcome.polygons, hull_method=method)

    @log
    def optimize_polygons(self, run: Run) -> Run:
        polygons = self.optimizer.optimize(
            run.polygons,
            self.viewport.value_or(None),
            self.zoom_level.value_or(None),
        )

        compliant = [p for p in polygons if p.aggregated_device_count >= self.min_device_count]
        if len(compliant) < len(polygons):
            logger.error(f"Dropped {len(polygons) - len(compliant)} polygons below the privacy floor")
        return dataclasses.replace(run, polygons=compliant)

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    def _bucketed_clusters(self, offline: Sequence[Device]) -> List[Cluster]:
        buckets = bucket_devices(offline, constants.BUCKET_SIZE)
        clusters: List[Cluster] = []
        for n, devices in enumerate(buckets.values(), 1):
            self.cancellation.raise_if_cancelled()
            for cluster in self.clusterer.cluster(devices, self.buffer_radius, self.min_device_count):
                clusters.append(Cluster(len(clusters), cluster.devices))
            self._report_stage(n / len(buckets))
        logger.debug(f"Clustered {len(buckets)} buckets into {len(clusters)} clusters")
        return clusters

    def _grid_clusters(self, devices: Sequence[Device]) -> Tuple[List[Cluster], Dict[int, List[Device]]]:
        offline = [d for d in devices if d.offline is True]
        if not offline:
            return [], {}
        projection = LocalProjection.centered_on([d.location for d in devices])
        offline_cells = bucket_devices(offline, constants.GRID_CELL_SIZE, projection)
        all_cells = bucket_devices(devices, constants.GRID_CELL_SIZE, projection)

        clusters: List[Cluster] = []
        catchments: Dict[int, List[Device]] = {}
        for key, members in offline_cells.items():
            if len(members) < self.min_device_count:
                continue
            cluster = Cluster(len(clusters), tuple(members))
            catchments[cluster.index] = all_cells[key]
            clusters.append(cluster)
        return clusters, catchments

    def _batches(self, clusters: Sequence[Cluster]) -> Iterator[List[Cluster]]:
        batch: List[Cluster] = []
        size = 0
        for cluster in clusters:
            batch.append(cluster)
            size += cluster.size
            if size >= self.settings.batch_size:
                yield batch
                batch, size = [], 0
        if batch:
            yield batch

    def _timed_build(self, cluster: Cluster, method: HullMethod) -> Tuple[HullResult, float]:
        start = self._clock()
        result = self.hull_builder.build(cluster, method)
        return result, self._clock() - start

    def _collect_hull(
        self, cluster: Cluster, method: HullMethod, future: Future, metrics: RunMetrics
    ) -> HullResult:
        try:
            result, elapsed = future.result()
        except Exception as e:
            logger.error(f"Hull construction failed for cluster {cluster.index}: {e}")
            result, elapsed = self._timed_build(cluster, HullMethod.RECTANGLE)
            result.fallbacks.append(method)
        for fallback in result.fallbacks:
            metrics.hull_fallbacks[fallback.value] = metrics.hull_fallbacks.get(fallback.value, 0) + 1
        self.performance.log_hull(
            cluster.size, result.point_count, result.vertex_count, result.method.value, elapsed
        )
        return result

    def _score(
        self, cluster: Cluster, hull: HullResult, catchment: Optional[List[Device]]
    ) -> Optional[OutagePolygon]:
        if cluster.size < self.min_device_count:
            logger.warning(f"Skipped cluster {cluster.index}: below privacy floor")
            return None
        if catchment is None:
            catchment = self.scorer.catchment(cluster)

        start = infer_outage_start(cluster.devices, self.now)
        center = cluster.centroid
        try:
            return OutagePolygon(
                id=polygon_id(cluster),
                coordinates=tuple(hull.coordinates),
                confidence=self.scorer.score(cluster, catchment),
                affected_device_count=cluster.size,
                online_device_count=sum(1 for d in catchment if d.offline is False),
                center=center,
                bounding_radius=bounding_radius(center, hull.coordinates),
                outage_start_date=start.start,
                recent_outage_devices=start.recent_devices,
                hull_method=hull.method,
                quality=quality_metrics(hull.coordinates, cluster.locations),
            )
        except GeometricDegeneracy as e:
            logger.warning(f"Skipped cluster {cluster.index}: {e}")
            return None

    def _check_budget(
        self, stage: str, elapsed: float, budget: float, method: HullMethod, metrics: RunMetrics
    ) -> HullMethod:
        if elapsed <= budget:
            return method
        exceeded = BudgetExceeded(stage, elapsed, budget)
        self.performance.warn_budget(exceeded)
        metrics.degraded.append(str(exceeded))
        cheaper = method.cheaper()
        if cheaper is not method:
            logger.warning(f"Downgrading hulls from {method.value} to {cheaper.value}")
        return cheaper

    def _report_stage(self, stage_fraction: float):
        start, end, label = self._band
        self.progress.report(start + (end - start) * clamp(stage_fraction, 0.0, 1.0), label)

    def _transition(self, state: PipelineState):
        if not self.state.can_transition_to(state):
            raise RuntimeError(f"Invalid pipeline transition {self.state.value} -> {state.value}")
        logger.debug(f"Pipeline state {self.state.value} -> {state.value}")
        self.state = state
        self.state_history.append(state)


def generate_outage_polygons(
    devices: DeviceSource,
    buffer_radius: float = constants.DEFAULT_BUFFER_RADIUS,
    alpha: float = constants.DEFAULT_ALPHA,
    min_device_count: int = constants.DEFAULT_MIN_DEVICE_COUNT,
    viewport: Optional[BoundingBox] = None,
    zoom_level: Optional[float] = None,
    *,
    settings: Optional[PipelineSettings] = None,
    progress: Optional[ProgressCallback] = None,
    cancellation: Optional[CancellationToken] = None,
    now: Optional[datetime] = None,
) -> PipelineResult:
    """
    Turn a device snapshot into outage polygons.

    ``devices`` is either a sequence of devices or a zero-argument callable
    returning one; exceptions raised by that callable propagate. Everything
    else degrades gracefully into a (possibly empty) ``Success``, a
    ``Cancelled`` result when the token is cancelled, or ``Failed``.
    """
    pipeline = OutagePipeline(
        buffer_radius,
        alpha,
        min_device_count,
        viewport=viewport,
        zoom_level=zoom_level,
        settings=settings,
        progress=progress,
        cancellation=cancellation,
        now=now,
    )
    return pipeline.run(devices)
