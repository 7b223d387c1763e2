"""
Geometry for outage polygon generation.

The modules build on each other roughly in pipeline order:

1. **geometry**: planar and great-circle primitives and a local tangent-plane
   projection used by everything below
2. **spatial_index**: thread-safe quadtree over devices for radius and region
   queries, with a short-lived offline-device cache
3. **clustering**: grid-accelerated proximity clustering of offline devices
4. **triangulation** and **hulls**: Delaunay-based alpha shapes over a buffered
   point cloud, with convex hull and bounding rectangle fallbacks
5. **scoring**: catchment-based confidence and polygon quality metrics
6. **aggregation**: merging of overlapping polygons into combined areas
7. **viewport**: culling and zoom-dependent Douglas-Peucker simplification

Callers normally go through ``pulse.outagegen.pipeline.generate_outage_polygons``
rather than using these modules directly.
"""

from .aggregation import PolygonAggregator
from .clustering import GridProximityClusterer
from .hulls import HullBuilder
from .scoring import ConfidenceScorer
from .spatial_index import SpatialIndex
from .viewport import ViewportOptimizer

__all__ = [
    "ConfidenceScorer",
    "GridProximityClusterer",
    "HullBuilder",
    "PolygonAggregator",
    "SpatialIndex",
    "ViewportOptimizer",
]
