from unittest.mock import patch

from click.testing import CliRunner
import pytest

from pulse.outagegen.cli import cli


# Unit tests for the 'cli' module functions.
#
# The test boundary is the cli module's interface with the outagegen module,
# so in addition to testing the cli module's behavior, the tests should mock
# that module's functions and assert that cli functions call them with the
# correct parameters, correctly handle their return values, and handle any
# exceptions they may throw.

@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    ini = tmp_path / "outages.ini"
    ini.write_text(
        "[Source]\n"
        "devices_file = devices.csv\n"
        "\n"
        "[Destination]\n"
        "output_file = outages.geojson\n"
        "\n"
        "[Polygons]\n"
        "buffer_radius = 200\n"
        "alpha = 0.3\n"
        "min_device_count = 3\n"
    )
    return str(ini)


def test_without_subcommand(cli_runner):
    result = cli_runner.invoke(cli)
    assert result.exit_code == 0
    assert 'Usage' in result.output
    assert 'Commands' in result.output
    for subcommand in ['info', 'init', 'process']:
        assert subcommand in result.output


def test_help(cli_runner):
    result = cli_runner.invoke(cli, ['--help'])
    assert result.exit_code == 0


def test_info_requires_config(cli_runner):
    result = cli_runner.invoke(cli, ['info'])
    assert result.exit_code != 0


def test_info_with_config(cli_runner, config_file):
    result = cli_runner.invoke(cli, ['info', '--config', config_file])
    assert result.exit_code == 0


def test_info_with_config_summarizes(cli_runner, config_file):
    result = cli_runner.invoke(cli, ['info', '--config', config_file])

    for key in ['devices_file', 'output_file', 'buffer_radius', 'alpha', 'min_device_count', 'max_workers']:
        assert key in result.output


def test_info_with_missing_config_fails(cli_runner, tmp_path):
    result = cli_runner.invoke(cli, ['info', '--config', str(tmp_path / 'nope.ini')])
    assert result.exit_code != 0


@patch('pulse.outagegen.outagegen.init_config', return_value='new.ini')
def test_init_calls_init_config(mock, cli_runner):
    result = cli_runner.invoke(cli, ['init', '--config', 'new.ini'])
    assert mock.called
    assert 'new.ini' in result.output
    assert result.exit_code == 0


@patch('pulse.outagegen.outagegen.process')
def test_process_requires_config_does_not_call_process(mock, cli_runner):
    result = cli_runner.invoke(cli, ['process'])
    assert not mock.called
    assert result.exit_code != 0


@patch('pulse.outagegen.outagegen.process')
def test_process_with_config_calls_process(mock, cli_runner, config_file):
    result = cli_runner.invoke(cli, ['process', '--config', config_file])
    assert mock.called
    assert result.exit_code == 0


@patch('pulse.outagegen.outagegen.process')
def test_process_with_overrides(process_mock, cli_runner, config_file):
    result = cli_runner.invoke(
        cli,
        ['process', '-r', '350', '-a', '1.0', '-b', '0,0,1,1', '-z', '11', '--config', config_file],
    )

    assert process_mock.called
    args = process_mock.call_args.args
    assert len(args) == 1
    configuration = args[0]
    assert configuration.buffer_radius == 350.0
    assert configuration.alpha == 1.0
    assert configuration.viewport == '0,0,1,1'
    assert configuration.zoom_level == 11.0
    assert configuration.min_device_count == 3
    assert result.exit_code == 0


@patch('pulse.outagegen.outagegen.process', side_effect=RuntimeError('boom'))
def test_process_failure_exits_non_zero(mock, cli_runner, config_file):
    result = cli_runner.invoke(cli, ['process', '--config', config_file])
    assert mock.called
    assert result.exit_code == 1
    assert 'Unable to process devices: boom' in result.output
