import json
from unittest.mock import patch

import pytest
from pulse.outagegen import config, outagegen
from pulse.outagegen.errors import OutageGenError
from pulse.outagegen.models import Failed, Success

# Unit tests for the 'outagegen' module functions.
#
# process() is exercised end to end against small CSV files in a temporary
# directory; the pipeline itself is mocked only where a failure is needed.


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    rows = ["id,latitude,longitude,offline"]
    for i in range(5):
        rows.append(f"out-{i},{-33.8700 + i * 0.0001},{151.2100 + i * 0.0001},true")
    rows.append("on-1,-33.9000,151.3000,false")
    (tmp_path / "devices.csv").write_text("\n".join(rows) + "\n")
    return tmp_path


@pytest.fixture
def configuration(workspace):
    return config.Config(
        devices_file=str(workspace / "devices.csv"),
        events_file=None,
        output_file=str(workspace / "outages.geojson"),
        buffer_radius=200.0,
        alpha=0.3,
        min_device_count=3,
        target_vertices=25,
        max_vertices=500,
        min_overlap_ratio=0.15,
        catchment_factor=1.2,
        max_workers=2,
        batch_size=500,
        clustering_budget=60000,
        hull_budget=60000,
        merging_budget=60000,
    )


def test_banner():
    assert len(outagegen.banner()) > 0


def test_process_writes_geojson(configuration):
    result = outagegen.process(configuration)

    assert isinstance(result, Success)
    assert len(result.polygons) == 1
    collection = json.loads(open(configuration.output_file).read())
    assert len(collection["features"]) == 1
    assert collection["features"][0]["properties"]["affected_device_count"] == 5


def test_process_rejects_invalid_configuration(configuration):
    configuration.buffer_radius = -1.0
    with pytest.raises(OutageGenError):
        outagegen.process(configuration)


def test_process_raises_on_failed_result(configuration):
    with patch("pulse.outagegen.outagegen.generate_outage_polygons", return_value=Failed("bad")):
        with pytest.raises(OutageGenError) as exc_info:
            outagegen.process(configuration)
    assert "bad" in str(exc_info.value)


def test_init_config_writes_file(workspace):
    answers = iter(["devices.csv", "", "out.geojson", "200", "0.3", "3", "25", "4", "", ""])
    with patch("pulse.outagegen.outagegen.Prompt.ask", side_effect=lambda *a, **k: next(answers)):
        filename = outagegen.init_config("new.ini")

    cfg = config.configuration(config.config_parser_factory(filename), {})
    assert cfg.devices_file == "devices.csv"
    assert cfg.events_file is None
    assert cfg.output_file == "out.geojson"
    assert cfg.buffer_radius == 200.0
    assert cfg.viewport is None
