import click

from pulse.outagegen import config
from pulse.outagegen import outagegen


@click.group(epilog="For detailed help on each command, run: outagegen COMMAND --help")
def cli():
    """The outagegen utility turns a snapshot of device online/offline
    states into outage polygons: clusters of offline devices, their
    boundaries, confidence scores and estimated outage start times."""
    pass


@cli.command()
@click.option('-c', '--config', help='Path to configuration file to create or replace')
def init(config):
    """Populates a configuration file based on user input."""
    click.echo(outagegen.banner())
    config = outagegen.init_config(config)
    click.echo(f'Initialized the outagegen configuration file {config}')


@cli.command()
@click.option('-c', '--config', 'config_filename', help='Path to configuration file to display', required=True)
def info(config_filename):
    """Summarizes the contents of a configuration file."""
    click.echo(outagegen.banner())
    try:
        configuration = config.configuration(config.config_parser_factory(config_filename), {})
    except ValueError as e:
        click.echo(str(e))
        exit(1)
    configuration.show()


@cli.command()
@click.option('-c', '--config', 'config_filename', help='Path to configuration file', required=True)
@click.option('-o', '--output', 'output_file', help='GeoJSON file to write polygons to')
@click.option('-r', '--buffer-radius', type=float, help='Influence radius around each device in meters')
@click.option('-a', '--alpha', type=float, help='Hull concavity; 1.0 or more gives convex hulls')
@click.option('-m', '--min-devices', 'min_device_count', type=int, help='Minimum devices per polygon')
@click.option('-b', '--bbox', help='Viewport as min_lat,min_lon,max_lat,max_lon')
@click.option('-z', '--zoom', 'zoom_level', type=float, help='Map zoom level for simplification')
def process(config_filename, output_file, buffer_radius, alpha, min_device_count, bbox, zoom_level):
    """Generates outage polygons based on configuration file contents."""
    click.echo(outagegen.banner())
    overrides = {
        'output_file': output_file,
        'buffer_radius': buffer_radius,
        'alpha': alpha,
        'min_device_count': min_device_count,
        'bbox': bbox,
        'zoom_level': zoom_level,
    }
    try:
        configuration = config.configuration(config.config_parser_factory(config_filename), overrides)
        outagegen.process(configuration)
    except Exception as e:
        print("\nUnable to process devices: " + str(e))
        exit(1)
    click.echo(f'Processed devices using the configuration file {config_filename}')


if __name__ == "__main__":
    cli()
