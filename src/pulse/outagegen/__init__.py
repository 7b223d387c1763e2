__version__ = "v1.0.0"


__all__ = [
    "__version__",
    "cli",
    "config",
    "constants",
    "generate_outage_polygons",
    "outagegen",
    "pipeline",
]

from . import cli
from . import config
from . import constants
from . import outagegen
from . import pipeline
from .pipeline import generate_outage_polygons
