import dataclasses
from configparser import ConfigParser, ExtendedInterpolation
from unittest.mock import patch

import pytest
from pulse.outagegen import config, constants
from pulse.outagegen.models import BoundingBox

# Unit tests for the 'config' module functions.
#
# The test boundary is the config module's interface with the filesystem, so
# in addition to testing the config module's behavior, the tests mock
# os.path.exists where a file must (or must not) be found.


@pytest.fixture
def expected_keys():
    return set(
        [
            "devices_file",
            "events_file",
            "output_file",
            "buffer_radius",
            "alpha",
            "min_device_count",
            "target_vertices",
            "max_vertices",
            "min_overlap_ratio",
            "catchment_factor",
            "max_workers",
            "batch_size",
            "clustering_budget",
            "hull_budget",
            "merging_budget",
            "viewport",
            "zoom_level",
        ]
    )


@pytest.fixture
def cfg_parser():
    cp = ConfigParser(interpolation=ExtendedInterpolation())
    cp["Source"] = {"devices_file": "/data/devices.csv", "events_file": "/data/events.csv"}
    cp["Destination"] = {"output_file": "/output/outages.geojson"}
    cp["Polygons"] = {
        "buffer_radius": 250,
        "alpha": 0.5,
        "min_device_count": 4,
        "catchment_factor": 1.5,
    }
    cp["Pipeline"] = {"max_workers": 2}
    cp["Viewport"] = {"bbox": "-34.0,151.0,-33.5,151.5", "zoom_level": 12}
    return cp


def test_config_parser_without_filename():
    with pytest.raises(ValueError):
        config.config_parser_factory(None)


def test_config_parser_with_missing_file(tmp_path):
    with pytest.raises(ValueError):
        config.config_parser_factory(str(tmp_path / "missing.ini"))


@patch("pulse.outagegen.config.os.path.exists", return_value=True)
def test_config_parser_return_type(mock):
    result = config.config_parser_factory("foo.ini")
    assert isinstance(result, ConfigParser)


def test_config_from_config_parser(cfg_parser, expected_keys):
    cfg = config.configuration(cfg_parser, {})
    assert isinstance(cfg, config.Config)
    assert set(cfg.__dict__) == expected_keys

    assert cfg.devices_file == "/data/devices.csv"
    assert cfg.events_file == "/data/events.csv"
    assert cfg.output_file == "/output/outages.geojson"
    assert cfg.buffer_radius == 250.0
    assert cfg.alpha == 0.5
    assert cfg.min_device_count == 4
    assert cfg.catchment_factor == 1.5
    assert cfg.max_workers == 2
    assert cfg.viewport == "-34.0,151.0,-33.5,151.5"
    assert cfg.zoom_level == 12.0


def test_config_reads_from_file(tmp_path):
    ini = tmp_path / "outages.ini"
    ini.write_text("[Source]\ndevices_file = devices.csv\n\n[Polygons]\nbuffer_radius = 150\n")
    cfg = config.configuration(config.config_parser_factory(str(ini)), {})
    assert cfg.devices_file == "devices.csv"
    assert cfg.buffer_radius == 150.0


def test_config_without_devices_file_raises(cfg_parser):
    cfg_parser.remove_option("Source", "devices_file")
    with pytest.raises(ValueError):
        config.configuration(cfg_parser, {})


def test_config_with_bad_number_raises(cfg_parser):
    cfg_parser.set("Polygons", "buffer_radius", "wide")
    with pytest.raises(ValueError):
        config.configuration(cfg_parser, {})


def test_blank_optional_values_are_none(cfg_parser):
    cfg_parser.set("Source", "events_file", "")
    cfg_parser.set("Viewport", "bbox", "")
    cfg_parser.set("Viewport", "zoom_level", "")
    cfg = config.configuration(cfg_parser, {})
    assert cfg.events_file is None
    assert cfg.viewport is None
    assert cfg.zoom_level is None
    assert cfg.bounding_box() is None


def test_bounding_box(cfg_parser):
    cfg = config.configuration(cfg_parser, {})
    assert cfg.bounding_box() == BoundingBox(-34.0, 151.0, -33.5, 151.5)


def test_get_configuration_value(cfg_parser):
    result = config._get_configuration_value("Source", "devices_file", str, cfg_parser, {})
    assert result == cfg_parser.get("Source", "devices_file")


def test_get_configuration_value_with_override(cfg_parser):
    overrides = {"devices_file": "foobar.csv"}
    result = config._get_configuration_value("Source", "devices_file", str, cfg_parser, overrides)
    assert result == overrides["devices_file"]


def test_overrides_take_precedence(cfg_parser):
    cfg = config.configuration(cfg_parser, {"buffer_radius": 400.0, "bbox": "0,0,1,1", "alpha": None})
    assert cfg.buffer_radius == 400.0
    assert cfg.viewport == "0,0,1,1"
    assert cfg.alpha == 0.5


@pytest.mark.parametrize(
    "section,option,expected",
    [
        ("Destination", "output_file", constants.DEFAULT_OUTPUT_FILE),
        ("Polygons", "buffer_radius", constants.DEFAULT_BUFFER_RADIUS),
        ("Polygons", "alpha", constants.DEFAULT_ALPHA),
        ("Polygons", "min_device_count", constants.DEFAULT_MIN_DEVICE_COUNT),
        ("Polygons", "catchment_factor", constants.DEFAULT_CATCHMENT_FACTOR),
        ("Pipeline", "max_workers", constants.DEFAULT_MAX_WORKERS),
        ("Viewport", "zoom_level", None),
        ("Source", "events_file", None),
    ],
)
def test_configuration_has_good_defaults(cfg_parser, section, option, expected):
    cfg_parser.remove_option(section, option)
    result = config.configuration(cfg_parser, {})
    result_dict = dataclasses.asdict(result)
    assert result_dict[option] == expected


def test_configuration_without_optional_sections():
    cp = ConfigParser(interpolation=ExtendedInterpolation())
    cp["Source"] = {"devices_file": "devices.csv"}
    cfg = config.configuration(cp, {})
    assert cfg.target_vertices == constants.DEFAULT_TARGET_VERTICES
    assert cfg.hull_budget == constants.DEFAULT_HULL_BUDGET
    assert cfg.viewport is None


@patch("pulse.outagegen.config.os.path.exists", return_value=True)
def test_validate_with_valid_checks(mock, cfg_parser):
    cfg = config.configuration(cfg_parser, {})
    valid, errors = config.validate(cfg)
    assert valid
    assert errors == []


@patch("pulse.outagegen.config.os.path.exists", return_value=False)
def test_validate_with_missing_files(mock, cfg_parser):
    cfg = config.configuration(cfg_parser, {})
    valid, errors = config.validate(cfg)
    assert not valid
    assert len(errors) == 2


@patch("pulse.outagegen.config.os.path.exists", return_value=True)
def test_validate_with_invalid_values(mock, cfg_parser):
    overrides = {
        "buffer_radius": -5.0,
        "min_device_count": 2,
        "catchment_factor": 2.5,
        "bbox": "not,a,box",
        "zoom_level": 30.0,
    }
    cfg = config.configuration(cfg_parser, overrides)
    valid, errors = config.validate(cfg)
    assert not valid
    assert len(errors) == 5


@pytest.mark.parametrize("option", ["batch_size", "max_workers"])
@pytest.mark.parametrize("value", [0, -1])
@patch("pulse.outagegen.config.os.path.exists", return_value=True)
def test_validate_rejects_non_positive_pipeline_sizes(mock, cfg_parser, option, value):
    cfg = config.configuration(cfg_parser, {option: value})
    valid, errors = config.validate(cfg)
    assert not valid
    assert errors == [f"The {option} must be at least 1."]
