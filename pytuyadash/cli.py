import asyncio
import logging
import sys

import click
import requests

from pytuyadash import __version__
from pytuyadash.config import DEFAULT_CONFIG_FILE, ConfigStore
from pytuyadash.dashboard import Dashboard
from pytuyadash.discover import DEFAULT_SCAN_RETRIES, Discover
from pytuyadash.exceptions import BootError, ConfigError
from pytuyadash.link import PROTOCOL_VERSIONS, probe_versions
from pytuyadash.models import DeviceType

DEFAULT_URL = "http://localhost:5000"
REQUEST_TIMEOUT = 20

pass_config = click.make_pass_decorator(dict, ensure=True)


@click.group(invoke_without_command=True)
@click.option('--config', 'config_path', envvar="PYTUYADASH_CONFIG",
              default=DEFAULT_CONFIG_FILE, show_default=True,
              help='JSON file listing the devices.')
@click.option('--url', envvar="PYTUYADASH_URL", default=DEFAULT_URL,
              show_default=True,
              help='Base URL of a running dashboard, used by the remote '
                   'commands.')
@click.option('--debug/--normal', default=False)
@click.version_option(__version__)
@click.pass_context
def cli(ctx, config_path, url, debug):
    """A cli tool for running and controlling a dashboard of Tuya smart
    plugs on the local network."""
    if debug:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.INFO)

    ctx.obj = {"config": config_path, "url": url.rstrip("/")}

    if ctx.invoked_subcommand is None:
        click.echo("No command given, see usage below")
        click.echo(ctx.get_help())


def api_request(config: dict, method: str, path: str, **kwargs) -> dict:
    url = config['url'] + path
    try:
        response = requests.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
    except requests.exceptions.RequestException as ex:
        raise click.ClickException(
            "Unable to connect to dashboard at %s: %s" % (config['url'], ex))

    try:
        data = response.json()
    except ValueError:
        data = {}

    if not response.ok:
        error = data.get("error") if isinstance(data, dict) else None
        raise click.ClickException(error or "HTTP %s" % response.status_code)
    return data


def print_device_details(device: dict):
    click.echo(
        click.style("== Device: %s (%s) ==" % (device['name'], device['id']),
                    bold=True)
    )

    if not device.get('enabled', True):
        click.echo("State: " + click.style("DISABLED", fg="yellow"))
        return

    click.echo("State: " + click.style(
        "ON" if device['power_state'] else "OFF",
        fg="green" if device['power_state'] else "red")
               )
    click.echo("Connected: %s" % ("yes" if device['connected'] else "no"))
    click.echo("Current: %s mA, Power: %s W, Voltage: %s V, Energy: %s kWh" % (
        device['current'], device['power'], device['voltage'], device['energy']))


@cli.command()
@click.option('--host', envvar="PYTUYADASH_HOST", default="0.0.0.0",
              show_default=True, help='Interface to listen on.')
@click.option('--port', envvar="PORT", default=5000, type=int,
              show_default=True, help='REST API port.')
@click.option('--ws-port', envvar="PYTUYADASH_WS_PORT", default=8080,
              type=int, show_default=True, help='WebSocket feed port.')
@click.option('--data-dir', envvar="PYTUYADASH_DATA_DIR", default=".",
              type=click.Path(file_okay=False), show_default=True,
              help='Directory of the per-device CSV files.')
@click.option('--allow-empty', is_flag=True,
              help='Start with no devices when the device file is malformed.')
@pass_config
def serve(config: dict, host, port, ws_port, data_dir, allow_empty):
    """Connect to all configured devices and serve the dashboard."""
    dashboard = Dashboard(config['config'], host=host, port=port,
                          ws_port=ws_port, data_dir=data_dir,
                          allow_empty=allow_empty)
    try:
        asyncio.run(dashboard.run())
    except BootError as ex:
        raise click.ClickException(str(ex))
    except KeyboardInterrupt:
        click.echo("Shutting down")


@cli.command()
@pass_config
def devices(config: dict):
    """List the devices in the device file."""
    try:
        configs = ConfigStore(config['config']).load()
    except ConfigError as ex:
        raise click.ClickException(str(ex))

    if not configs:
        click.echo("No devices configured in %s" % config['config'])
        return

    for device in configs:
        click.echo("%s: %s [%s, %s] %s v%s%s" % (
            device.id, device.name, device.type.value, device.room,
            device.address, device.version,
            "" if device.enabled else " (disabled)"))


@cli.command()
@pass_config
def state(config: dict):
    """Print the live state of every device of a running dashboard."""
    for device in api_request(config, "GET", "/api/devices"):
        print_device_details(device)


@cli.command()
@click.argument('device_id')
@pass_config
def toggle(config: dict, device_id):
    """Toggle the power state of a device."""
    data = api_request(config, "POST", "/api/devices/%s/toggle" % device_id)
    click.echo("%s is now %s" % (device_id, "ON" if data['new_state'] else "OFF"))


@cli.command()
@click.option('--id', 'dashboard_id', required=True,
              help='Identifier of the device in the dashboard.')
@click.option('--device-id', required=True, help='Tuya device id (gwId).')
@click.option('--key', required=True, help='Tuya local key.')
@click.option('--ip', required=True, help='IP address of the device.')
@click.option('--name', help='Display name.')
@click.option('--room', default="Unknown", show_default=True)
@click.option('--version', 'protocol_version', default="3.4",
              type=click.Choice(PROTOCOL_VERSIONS), show_default=True)
@click.option('--type', 'device_type', default=DeviceType.PLUG.value,
              type=click.Choice([member.value for member in DeviceType]),
              show_default=True)
@pass_config
def add(config: dict, dashboard_id, device_id, key, ip, name, room,
        protocol_version, device_type):
    """Add a device to a running dashboard."""
    payload = {
        "id": dashboard_id,
        "name": name,
        "device_id": device_id,
        "device_key": key,
        "device_ip": ip,
        "version": protocol_version,
        "type": device_type,
        "room": room,
    }
    data = api_request(config, "POST", "/api/devices", json=payload)
    click.echo("Added %s (%s)" % (data['device']['name'], data['device']['id']))


@cli.command()
@click.argument('device_id')
@pass_config
def remove(config: dict, device_id):
    """Remove a device from a running dashboard."""
    api_request(config, "DELETE", "/api/devices/%s" % device_id)
    click.echo("Removed %s" % device_id)


@cli.command()
@click.option('--retries', default=DEFAULT_SCAN_RETRIES, type=int,
              show_default=True, help='How many rounds to listen for broadcasts.')
def discover(retries):
    """Discover Tuya devices on the local network."""
    click.echo(
        "Attempting to discover Tuya devices "
        "on the local network, please wait..."
    )
    found_devices = asyncio.run(Discover.discover(retries=retries))
    if not found_devices:
        click.echo("No devices found")
    for found_device_id, info in found_devices.items():
        click.echo("Found Tuya device at IP %s with ID: %s (version %s)" % (
            info['ip'], found_device_id, info['version']))


@cli.command()
@click.argument('device_id')
@click.option('--timeout', default=5, type=float, show_default=True)
@pass_config
def probe(config: dict, device_id, timeout):
    """Find which protocol versions a configured device answers to."""
    try:
        configs = ConfigStore(config['config']).load()
    except ConfigError as ex:
        raise click.ClickException(str(ex))

    matches = [device for device in configs if device.id == device_id]
    if not matches:
        raise click.ClickException("No device %s in %s" % (device_id, config['config']))

    click.echo("Testing protocol versions of %s at %s..." % (
        device_id, matches[0].address))
    results = asyncio.run(probe_versions(matches[0], timeout=timeout))

    working = [version for version, outcome in results.items() if outcome['ok']]
    for version, outcome in results.items():
        if outcome['ok']:
            click.echo("Version %s: " % version + click.style("OK", fg="green")
                       + " %s" % outcome['dps'])
        else:
            click.echo("Version %s: " % version + click.style("FAILED", fg="red")
                       + " %s" % outcome['error'])

    if not working:
        click.echo("No protocol version worked")
        sys.exit(1)


if __name__ == "__main__":
    cli()
