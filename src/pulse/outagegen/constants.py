# Geometry
METERS_PER_DEGREE = 111000.0
EARTH_RADIUS_METERS = 6371000.0

# Default configuration values
DEFAULT_BUFFER_RADIUS = 200.0  # meters
DEFAULT_ALPHA = 0.3
DEFAULT_MIN_DEVICE_COUNT = 3
PRIVACY_FLOOR = 3
DEFAULT_TARGET_VERTICES = 25
DEFAULT_MAX_VERTICES = 500
DEFAULT_MIN_OVERLAP_RATIO = 0.15
DEFAULT_CATCHMENT_FACTOR = 1.2
MIN_CATCHMENT_FACTOR = 1.2
MAX_CATCHMENT_FACTOR = 1.8
DEFAULT_MAX_WORKERS = 4
DEFAULT_BATCH_SIZE = 500  # devices between suspension points
DEFAULT_OUTPUT_FILE = 'outages.geojson'

# Confidence scoring
MIN_CONFIDENCE = 0.10
MAX_CONFIDENCE = 1.0
NEUTRAL_CONFIDENCE = 0.5
DISPLAY_CONFIDENCE_THRESHOLD = 0.10
OUTAGE_RATIO_WEIGHT = 0.6
CLUSTER_SIZE_WEIGHT = 0.25
CATCHMENT_SIZE_WEIGHT = 0.15
CLUSTER_SIZE_SATURATION = 15
CATCHMENT_SIZE_SATURATION = 25
CLUSTER_RADIUS_PADDING = 100.0  # meters
SINGLE_DEVICE_RADIUS = 200.0  # meters

# Concave hull construction
RING_POINTS = 24
CONNECTOR_DISTANCE_FACTOR = 2.5
CONNECTOR_STEPS = 5
CONNECTOR_OFFSET_FACTOR = 0.3
SMOOTHING_STRENGTH = 0.15
SMOOTHING_PASSES = 2
ENCLOSURE_TOLERANCE_FACTOR = 1.2
INCREMENTAL_TRIANGULATION_LIMIT = 400  # points; larger clouds use scipy
MERGE_BUFFER_FACTOR = 0.3
MERGE_PROXIMITY_FACTOR = 0.8
MERGE_BUFFER_PROXIMITY_FACTOR = 1.2

# Spatial index
INDEX_NODE_CAPACITY = 16
INDEX_MAX_DEPTH = 18
OFFLINE_CACHE_TTL = 30.0  # seconds

# Processing strategy thresholds (device counts)
DIRECT_STRATEGY_LIMIT = 10000
BUCKETED_STRATEGY_LIMIT = 100000
BUCKET_SIZE = 5000.0  # meters, suburb scale
GRID_CELL_SIZE = 500.0  # meters

# Stage budgets (milliseconds)
DEFAULT_CLUSTERING_BUDGET = 200
DEFAULT_HULL_BUDGET = 5000
DEFAULT_MERGING_BUDGET = 1000

# Viewport optimisation
DEFAULT_DETAIL_ZOOM_THRESHOLD = 14
DEFAULT_MAX_RENDERED_POLYGONS = 100
DEFAULT_BASE_TOLERANCE = 0.0005  # degrees
VIEWPORT_MARGIN = 0.2
MIN_LOD_ZOOM = 8
LOD_ZOOM_RANGE = 10
MIN_LOD_FACTOR = 0.1
SIMPLIFY_MIN_VERTICES = 6

# Smart outage start
POWER_OFF_EVENT = 'Power Off'
RECENT_OUTAGE_HOURS = 24
LONG_TERM_ANOMALY_DAYS = 7
OUTAGE_WINDOW_HOURS = 2
MIN_EVENTS_FOR_WINDOW = 3

# Quality grades
QUALITY_GRADES = [
    (0.95, 'A+'),
    (0.90, 'A'),
    (0.80, 'B'),
    (0.70, 'C'),
]
LOWEST_QUALITY_GRADE = 'D'

# Configuration sections
SOURCE_SECTION_NAME = 'Source'
DESTINATION_SECTION_NAME = 'Destination'
POLYGONS_SECTION_NAME = 'Polygons'
PIPELINE_SECTION_NAME = 'Pipeline'
VIEWPORT_SECTION_NAME = 'Viewport'
