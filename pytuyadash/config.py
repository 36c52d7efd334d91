"""
Persistence of the device list in ``devices.json``.

The file holds a JSON list of device objects::

    [{"id": "device_1", "name": "Desk", "device_id": "bf0d...", "device_key": "...",
      "device_ip": "192.168.1.20", "version": "3.4", "type": "plug",
      "room": "Office", "enabled": true}]

When the file does not exist, a single device may be described by the
``TUYA_DEVICE_ID``, ``TUYA_DEVICE_KEY`` and ``TUYA_DEVICE_IP`` environment
variables (also read from a ``.env`` file).
"""
import json
import logging
import os
from typing import Any, Dict, List, Mapping

from dotenv import load_dotenv

from .exceptions import ConfigError, InvalidConfig
from .models import DeviceConfig, DeviceType

DEFAULT_CONFIG_FILE = "devices.json"
DEFAULT_VERSION = "3.4"
REQUIRED_FIELDS = ("id", "device_id", "device_key", "device_ip")
POINT_FIELDS = ("power_state", "current", "power", "voltage", "energy")

_LOGGER = logging.getLogger(__name__)


def _parse_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def parse_device(data: Mapping[str, Any]) -> DeviceConfig:
    """
    Build a DeviceConfig from one ``devices.json`` entry.

    :raises InvalidConfig: on missing required fields or a malformed entry
    """
    if not isinstance(data, Mapping):
        raise InvalidConfig("Device entry must be an object, not %s"
                            % type(data).__name__)

    missing = [field for field in REQUIRED_FIELDS
               if not str(data.get(field) or "").strip()]
    if missing:
        raise InvalidConfig("Missing required fields: %s" % ", ".join(missing))

    points = data.get("points")
    if points is not None:
        if not isinstance(points, Mapping):
            raise InvalidConfig("points must map field names to point ids")
        unknown = sorted(set(points) - set(POINT_FIELDS))
        if unknown:
            raise InvalidConfig("Unknown point fields: %s" % ", ".join(unknown))
        points = {field: str(point_id) for field, point_id in points.items()}

    version = str(data.get("version") or DEFAULT_VERSION)
    try:
        float(version)
    except ValueError:
        raise InvalidConfig("Invalid protocol version %r" % version) from None

    device_id = str(data["id"]).strip()
    return DeviceConfig(
        id=device_id,
        name=str(data.get("name") or "Device %s" % device_id),
        address=str(data["device_ip"]).strip(),
        device_id=str(data["device_id"]).strip(),
        local_key=str(data["device_key"]).replace('"', ""),
        room=str(data.get("room") or "Unknown"),
        type=DeviceType.parse(data.get("type") or DeviceType.PLUG.value),
        version=version,
        enabled=_parse_bool(data.get("enabled", True)),
        points=points,
    )


def device_from_env(environ: Mapping[str, str] = None) -> List[DeviceConfig]:
    """Single-device configuration from ``TUYA_DEVICE_*`` variables, if set."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    if not environ.get("TUYA_DEVICE_ID"):
        return []

    return [parse_device({
        "id": "device_1",
        "name": "Smart Plug",
        "device_id": environ.get("TUYA_DEVICE_ID"),
        "device_key": environ.get("TUYA_DEVICE_KEY"),
        "device_ip": environ.get("TUYA_DEVICE_IP"),
        "version": environ.get("TUYA_DEVICE_VERSION") or DEFAULT_VERSION,
        "type": "plug",
        "room": "Unknown",
        "enabled": True,
    })]


class ConfigStore(object):
    """Read and update the device list file."""

    def __init__(self,
                 path: str = DEFAULT_CONFIG_FILE,
                 use_env_fallback: bool = True,
                 logger: logging.Logger = None) -> None:
        self.path = path
        self.use_env_fallback = use_env_fallback
        self.logger = logger or _LOGGER

    def _read(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as ex:
            raise ConfigError("Malformed JSON in %s: %s" % (self.path, ex)) from ex
        except OSError as ex:
            raise ConfigError("Unable to read %s: %s" % (self.path, ex)) from ex
        if not isinstance(data, list):
            raise ConfigError("%s must contain a list of devices" % self.path)
        return data

    def _write(self, entries: List[Dict[str, Any]]) -> None:
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(entries, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as ex:
            raise ConfigError("Unable to write %s: %s" % (self.path, ex)) from ex
        self.logger.debug('wrote %i device(s) to %s', len(entries), self.path)

    def load(self) -> List[DeviceConfig]:
        """
        :raises ConfigError: when the file exists but cannot be parsed
        :rtype: list
        """
        if not os.path.exists(self.path):
            if self.use_env_fallback:
                configs = device_from_env()
                if configs:
                    self.logger.info('%s not found, using device from environment',
                                     self.path)
                return configs
            return []

        configs = [parse_device(entry) for entry in self._read()]
        self.logger.info('Loaded %i device(s) from %s', len(configs), self.path)
        return configs

    def add(self, config: DeviceConfig) -> None:
        """:raises InvalidConfig: when the id is already stored"""
        entries = self._read()
        if not entries and not os.path.exists(self.path) and self.use_env_fallback:
            # keep the environment device once the file takes over
            entries = [device.as_dict() for device in device_from_env()]
        if any(entry.get("id") == config.id for entry in entries
               if isinstance(entry, dict)):
            raise InvalidConfig("Device ID already exists")
        entries.append(config.as_dict())
        self._write(entries)

    def remove(self, device_id: str) -> bool:
        """Drop a device; returns whether it was stored."""
        entries = self._read()
        kept = [entry for entry in entries
                if not (isinstance(entry, dict) and entry.get("id") == device_id)]
        if len(kept) == len(entries):
            return False
        self._write(kept)
        return True
