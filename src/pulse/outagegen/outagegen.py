import configparser
import logging
import os.path
import sys

from pyfiglet import Figlet
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.prompt import Confirm, Prompt

from pulse.outagegen import config
from pulse.outagegen import constants
from pulse.outagegen import devices
from pulse.outagegen.errors import OutageGenError
from pulse.outagegen.models import Cancelled, Failed, PipelineResult
from pulse.outagegen.pipeline import PipelineSettings, generate_outage_polygons


CONSOLE_FORMAT = "%(message)s"
LOGFILE_FORMAT = "%(asctime)s|%(levelname)s|%(name)s|%(message)s"
LOGGER_NAME = "pulse.outagegen"
LOGFILE_NAME = "outagegen.log"


def init_logging(configuration: config.Config):
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    logfile_handler = logging.FileHandler(LOGFILE_NAME, "w")
    logfile_handler.setLevel(logging.DEBUG)
    logfile_handler.setFormatter(logging.Formatter(LOGFILE_FORMAT))
    logger.addHandler(logfile_handler)
    return logger


def banner():
    """
    Displays the name of this utility using incredible ASCII-art.
    """
    f = Figlet(font='slant')
    return f.renderText('outagegen')


def init_config(configuration_file):
    """
    Prompts the user for configuration values and then creates a valid configuration file.
    """
    print("""This utility will create an outage polygon configuration file by prompting """
          """you for values for each of the configuration parameters.""")
    print()
    if not configuration_file:
        configuration_file = Prompt.ask("configuration file name", default="outages.ini")
    else:
        print(f'Creating configuration file {configuration_file}')
        print()

    if (os.path.exists(configuration_file)):
        print(f'WARNING: The {configuration_file} already exists.')
        overwrite = Confirm.ask("Overwrite?")
        if not overwrite:
            print('Not overwriting existing file. Exiting.')
            exit(1)

    cfg_parser = configparser.ConfigParser()

    print()
    print(f'{constants.SOURCE_SECTION_NAME} Parameters')
    print('--------------------------------------------------')
    cfg_parser.add_section(constants.SOURCE_SECTION_NAME)
    cfg_parser.set(constants.SOURCE_SECTION_NAME, "devices_file", Prompt.ask("Devices CSV file", default="devices.csv"))
    cfg_parser.set(constants.SOURCE_SECTION_NAME, "events_file", Prompt.ask("Power events CSV file (blank for none)", default=""))

    print()
    print(f'{constants.DESTINATION_SECTION_NAME} Parameters')
    print('--------------------------------------------------')
    cfg_parser.add_section(constants.DESTINATION_SECTION_NAME)
    cfg_parser.set(constants.DESTINATION_SECTION_NAME, "output_file", Prompt.ask("GeoJSON output file", default=constants.DEFAULT_OUTPUT_FILE))

    print()
    print(f'{constants.POLYGONS_SECTION_NAME} Parameters')
    print('--------------------------------------------------')
    cfg_parser.add_section(constants.POLYGONS_SECTION_NAME)
    cfg_parser.set(constants.POLYGONS_SECTION_NAME, "buffer_radius", Prompt.ask("Buffer radius in meters", default=str(constants.DEFAULT_BUFFER_RADIUS)))
    cfg_parser.set(constants.POLYGONS_SECTION_NAME, "alpha", Prompt.ask("Alpha (1.0 or more for convex hulls)", default=str(constants.DEFAULT_ALPHA)))
    cfg_parser.set(constants.POLYGONS_SECTION_NAME, "min_device_count", Prompt.ask("Minimum devices per polygon", default=str(constants.DEFAULT_MIN_DEVICE_COUNT)))
    cfg_parser.set(constants.POLYGONS_SECTION_NAME, "target_vertices", Prompt.ask("Target vertices per polygon", default=str(constants.DEFAULT_TARGET_VERTICES)))

    print()
    print(f'{constants.PIPELINE_SECTION_NAME} Parameters')
    print('--------------------------------------------------')
    cfg_parser.add_section(constants.PIPELINE_SECTION_NAME)
    cfg_parser.set(constants.PIPELINE_SECTION_NAME, "max_workers", Prompt.ask("Hull worker threads", default=str(constants.DEFAULT_MAX_WORKERS)))

    print()
    print(f'{constants.VIEWPORT_SECTION_NAME} Parameters')
    print('--------------------------------------------------')
    cfg_parser.add_section(constants.VIEWPORT_SECTION_NAME)
    cfg_parser.set(constants.VIEWPORT_SECTION_NAME, "bbox", Prompt.ask("Viewport min_lat,min_lon,max_lat,max_lon (blank for none)", default=""))
    cfg_parser.set(constants.VIEWPORT_SECTION_NAME, "zoom_level", Prompt.ask("Zoom level (blank for full detail)", default=""))

    print()
    print(f'Saving new configuration: {configuration_file}')
    with open(configuration_file, "tw") as file:
        cfg_parser.write(file)

    return configuration_file


def process(configuration: config.Config) -> PipelineResult:
    """
    Reads the device snapshot, generates outage polygons and writes them as GeoJSON.
    """
    logger = init_logging(configuration)

    valid, errors = config.validate(configuration)
    if not valid:
        raise OutageGenError("Invalid configuration: " + " ".join(errors))

    snapshot = devices.read_devices(configuration.devices_file, configuration.events_file)

    with Progress(
        TextColumn("{task.description:<32}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
    ) as progress:
        task = progress.add_task("Starting", total=1.0)

        def report(fraction, label):
            progress.update(task, completed=fraction, description=label)

        result = generate_outage_polygons(
            snapshot,
            configuration.buffer_radius,
            configuration.alpha,
            configuration.min_device_count,
            viewport=configuration.bounding_box(),
            zoom_level=configuration.zoom_level,
            settings=PipelineSettings.from_config(configuration),
            progress=report,
        )

    if isinstance(result, Failed):
        raise OutageGenError(f"Polygon generation failed: {result.reason}")
    if isinstance(result, Cancelled):
        raise OutageGenError("Polygon generation was cancelled")

    devices.write_geojson(result.polygons, configuration.output_file)
    summarize_result(logger, result)
    return result


def summarize_result(logger, result) -> None:
    displayed = [p for p in result.polygons if p.should_display]
    merged = [p for p in result.polygons if p.is_merged]
    logger.info("Output Summary")
    logger.info("==============")
    logger.info(f"Polygons: {len(result.polygons)} ({len(displayed)} above display threshold)")
    logger.info(f"Merged: {len(merged)}")
    logger.info(f"Total time: {result.metrics.total_time:.3f}s")
    for polygon in result.polygons:
        logger.debug(f"  {polygon.id}: {polygon.merge_description}, confidence {polygon.confidence:.2f}")
