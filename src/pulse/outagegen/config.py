import configparser
import dataclasses
import os.path
from typing import Optional

from pulse.outagegen import constants
from pulse.outagegen.models import BoundingBox


@dataclasses.dataclass
class Config:
    devices_file: str
    events_file: Optional[str]
    output_file: str
    buffer_radius: float
    alpha: float
    min_device_count: int
    target_vertices: int
    max_vertices: int
    min_overlap_ratio: float
    catchment_factor: float
    max_workers: int
    batch_size: int
    clustering_budget: int
    hull_budget: int
    merging_budget: int
    viewport: Optional[str] = None
    zoom_level: Optional[float] = None

    def show(self):
        print()
        print('Using configuration:')
        for k, v in self.__dict__.items():
            print(f'  + {k}: {v}')

    def bounding_box(self) -> Optional[BoundingBox]:
        return BoundingBox.parse(self.viewport) if self.viewport else None


def config_parser_factory(configuration_file):
    """
    Returns a ConfigParser by reading the specified file.
    """
    if configuration_file is None or not os.path.exists(configuration_file):
        raise ValueError(f'Unable to find configuration file {configuration_file}')
    cfg_parser = configparser.ConfigParser(interpolation=configparser.ExtendedInterpolation())
    cfg_parser.read(configuration_file)
    return cfg_parser


def _get_configuration_value(section, name, value_type, config_parser, overrides, optional=False):
    """
    Returns a value from the provided config parser; any value for the key that
    is provided in the 'overrides' dictionary will take precedence. Optional
    values that are missing or blank come back as None.
    """
    if overrides.get(name) is not None:
        return overrides.get(name)

    if optional:
        raw = config_parser.get(section, name, fallback='')
        if raw is None or raw.strip() == '':
            return None

    if value_type is bool:
        return config_parser.getboolean(section, name)
    elif value_type is int:
        return config_parser.getint(section, name)
    elif value_type is float:
        return config_parser.getfloat(section, name)
    else:
        return config_parser.get(section, name)


def configuration(config_parser, overrides):
    """
    Returns a Config object that is populated from the provided config parser,
    with values overriden with anything provided in 'overrides'.
    """
    config_parser['DEFAULT'] = {
        'events_file': '',
        'output_file': constants.DEFAULT_OUTPUT_FILE,
        'buffer_radius': constants.DEFAULT_BUFFER_RADIUS,
        'alpha': constants.DEFAULT_ALPHA,
        'min_device_count': constants.DEFAULT_MIN_DEVICE_COUNT,
        'target_vertices': constants.DEFAULT_TARGET_VERTICES,
        'max_vertices': constants.DEFAULT_MAX_VERTICES,
        'min_overlap_ratio': constants.DEFAULT_MIN_OVERLAP_RATIO,
        'catchment_factor': constants.DEFAULT_CATCHMENT_FACTOR,
        'max_workers': constants.DEFAULT_MAX_WORKERS,
        'batch_size': constants.DEFAULT_BATCH_SIZE,
        'clustering_budget': constants.DEFAULT_CLUSTERING_BUDGET,
        'hull_budget': constants.DEFAULT_HULL_BUDGET,
        'merging_budget': constants.DEFAULT_MERGING_BUDGET,
        'bbox': '',
        'zoom_level': '',
    }
    for section in [
        constants.SOURCE_SECTION_NAME,
        constants.DESTINATION_SECTION_NAME,
        constants.POLYGONS_SECTION_NAME,
        constants.PIPELINE_SECTION_NAME,
        constants.VIEWPORT_SECTION_NAME,
    ]:
        if not config_parser.has_section(section):
            config_parser.add_section(section)

    source = constants.SOURCE_SECTION_NAME
    destination = constants.DESTINATION_SECTION_NAME
    polygons = constants.POLYGONS_SECTION_NAME
    pipeline = constants.PIPELINE_SECTION_NAME
    viewport = constants.VIEWPORT_SECTION_NAME
    try:
        return Config(
            _get_configuration_value(source, 'devices_file', str, config_parser, overrides),
            _get_configuration_value(source, 'events_file', str, config_parser, overrides, optional=True),
            _get_configuration_value(destination, 'output_file', str, config_parser, overrides),
            _get_configuration_value(polygons, 'buffer_radius', float, config_parser, overrides),
            _get_configuration_value(polygons, 'alpha', float, config_parser, overrides),
            _get_configuration_value(polygons, 'min_device_count', int, config_parser, overrides),
            _get_configuration_value(polygons, 'target_vertices', int, config_parser, overrides),
            _get_configuration_value(polygons, 'max_vertices', int, config_parser, overrides),
            _get_configuration_value(polygons, 'min_overlap_ratio', float, config_parser, overrides),
            _get_configuration_value(polygons, 'catchment_factor', float, config_parser, overrides),
            _get_configuration_value(pipeline, 'max_workers', int, config_parser, overrides),
            _get_configuration_value(pipeline, 'batch_size', int, config_parser, overrides),
            _get_configuration_value(pipeline, 'clustering_budget', int, config_parser, overrides),
            _get_configuration_value(pipeline, 'hull_budget', int, config_parser, overrides),
            _get_configuration_value(pipeline, 'merging_budget', int, config_parser, overrides),
            _get_configuration_value(viewport, 'bbox', str, config_parser, overrides, optional=True),
            _get_configuration_value(viewport, 'zoom_level', float, config_parser, overrides, optional=True),
        )
    except (configparser.Error, ValueError) as e:
        raise ValueError(f'Unable to read the configuration file: {e}') from e


def _parses_as_bbox(text):
    if text is None:
        return True
    try:
        BoundingBox.parse(text)
    except ValueError:
        return False
    return True


def validate(configuration):
    """
    Validates each value in the configuration.
    """
    validations = [
        ['devices_file', lambda f: os.path.exists(f), 'The devices_file does not exist.'],
        ['events_file', lambda f: f is None or os.path.exists(f), 'The events_file does not exist.'],
        ['buffer_radius', lambda r: r > 0, 'The buffer_radius must be positive.'],
        ['alpha', lambda a: a >= 0, 'The alpha must not be negative.'],
        ['min_device_count', lambda n: n >= constants.PRIVACY_FLOOR,
         f'The min_device_count must be at least {constants.PRIVACY_FLOOR}.'],
        ['catchment_factor',
         lambda f: constants.MIN_CATCHMENT_FACTOR <= f <= constants.MAX_CATCHMENT_FACTOR,
         f'The catchment_factor must be between {constants.MIN_CATCHMENT_FACTOR} '
         f'and {constants.MAX_CATCHMENT_FACTOR}.'],
        ['max_workers', lambda n: n >= 1, 'The max_workers must be at least 1.'],
        ['batch_size', lambda n: n >= 1, 'The batch_size must be at least 1.'],
        ['max_vertices', lambda n: n >= configuration.target_vertices,
         'The max_vertices must not be less than target_vertices.'],
        ['viewport', _parses_as_bbox, 'The viewport bbox must be "min_lat,min_lon,max_lat,max_lon".'],
        ['zoom_level', lambda z: z is None or 0 <= z <= 22, 'The zoom_level must be between 0 and 22.'],
    ]
    errors = [msg for name, fn, msg in validations if not fn(getattr(configuration, name))]
    return len(errors) == 0, errors
