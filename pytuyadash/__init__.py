# -*- coding: utf-8 -*-

"""
pyTuyaDash
This module runs a local-network dashboard for Tuya smart plugs,
such as energy-monitoring plugs, switches and outlets, talking to them directly
over the LAN with the tinytuya library.

Each configured device gets a `DeviceSession`, which keeps a connection open,
reconnects with a bounded backoff when it drops, and turns the raw data points
the device reports into a normalized `DeviceReading`:

    registry = SessionRegistry(EventBus(), store=ConfigStore("devices.json"))
    await registry.boot()
    print(registry.list_snapshots())
    await registry.toggle("device_1")

Readings fan out through an `EventBus` to the WebSocket feed and the CSV
history; the REST API and the CLI drive the same `SessionRegistry`.

Expected failures of registry operations come back as `Result` values.
Module-specific errors are raised as subclasses of `PyTuyaDashException`.
"""

__author__ = """pyTuyaDash contributors"""
__version__ = '0.1.0'

# flake8: noqa
from .bus import EventBus, Subscription
from .config import ConfigStore, parse_device
from .exceptions import (BootError, ConfigError, InvalidConfig, LinkError,
                         PyTuyaDashException)
from .link import ConnectionLost, DeviceLink, RawPointUpdate, TuyaDeviceLink
from .models import (Command, DeviceConfig, DeviceReading, DeviceType, Event,
                     Result, SessionState, Status)
from .normalizer import PointMap, PointNormalizer, PointSpec
from .registry import SessionRegistry
from .session import DeviceSession, RetryPolicy
