"""
Value types shared by the session core, the servers and the CLI.
"""
import copy
import enum
from datetime import datetime, timezone
from typing import Any, Dict, NamedTuple, Optional


class DeviceType(enum.Enum):
    PLUG = "plug"
    SWITCH = "switch"
    OUTLET = "outlet"
    OTHER = "other"

    @classmethod
    def parse(cls, value) -> "DeviceType":
        """
        Map a persisted type name onto a DeviceType.

        ``smart_plug`` is the name older configuration files use for plugs,
        anything unrecognised is treated as ``other``.
        """
        if isinstance(value, cls):
            return value
        name = str(value or "").strip().lower()
        if name == "smart_plug":
            return cls.PLUG
        for member in cls:
            if member.value == name:
                return member
        return cls.OTHER


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class DeviceConfig(NamedTuple):
    """Identity and credentials of one configured device."""
    id: str
    name: str
    address: str
    device_id: str
    local_key: str
    room: str = "Unknown"
    type: DeviceType = DeviceType.PLUG
    version: str = "3.4"
    enabled: bool = True
    points: Optional[Dict[str, str]] = None

    def as_dict(self) -> Dict[str, Any]:
        """Render the config in the layout of ``devices.json``."""
        data = {
            "id": self.id,
            "name": self.name,
            "device_id": self.device_id,
            "device_key": self.local_key,
            "device_ip": self.address,
            "version": self.version,
            "type": self.type.value,
            "room": self.room,
            "enabled": self.enabled,
        }
        if self.points:
            data["points"] = dict(self.points)
        return data


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceReading(object):
    """
    Latest known, normalized state of one device.

    The owning session mutates its instance in place; every other component
    only ever sees copies made with :meth:`copy`.
    """

    METRICS = ("power_state", "current", "power", "voltage", "energy")

    def __init__(self,
                 device_id: str,
                 name: str = "",
                 room: str = "Unknown",
                 type: DeviceType = DeviceType.PLUG,
                 address: str = "",
                 version: str = "",
                 enabled: bool = True,
                 timestamp: datetime = None,
                 power_state: bool = False,
                 current: float = 0,
                 power: float = 0,
                 voltage: float = 0,
                 energy: float = 0,
                 connected: bool = False) -> None:
        self.device_id = device_id
        self.name = name
        self.room = room
        self.type = type
        self.address = address
        self.version = version
        self.enabled = enabled
        self.timestamp = timestamp or utcnow()
        self.power_state = power_state
        self.current = current
        self.power = power
        self.voltage = voltage
        self.energy = energy
        self.connected = connected

    @classmethod
    def from_config(cls, config: DeviceConfig) -> "DeviceReading":
        return cls(
            device_id=config.id,
            name=config.name,
            room=config.room,
            type=config.type,
            address=config.address,
            version=config.version,
            enabled=config.enabled,
        )

    def copy(self) -> "DeviceReading":
        return copy.copy(self)

    def assign(self, other: "DeviceReading") -> None:
        """Overwrite this instance in place with the values of ``other``."""
        self.__dict__.update(other.__dict__)

    def metrics(self) -> Dict[str, Any]:
        return {field: getattr(self, field) for field in self.METRICS}

    def as_dict(self) -> Dict[str, Any]:
        """JSON-ready rendering used by the REST API and the WebSocket feed."""
        return {
            "id": self.device_id,
            "name": self.name,
            "type": self.type.value,
            "room": self.room,
            "timestamp": self.timestamp.isoformat(),
            "power_state": self.power_state,
            "current": self.current,
            "power": self.power,
            "voltage": self.voltage,
            "energy": self.energy,
            "connected": self.connected,
            "ip": self.address,
            "version": self.version,
            "enabled": self.enabled,
        }

    def __eq__(self, other):
        if not isinstance(other, DeviceReading):
            return NotImplemented
        return vars(self) == vars(other)

    def __repr__(self):
        return "<%s %s connected=%s %s>" % (
            self.__class__.__name__,
            self.device_id,
            self.connected,
            self.metrics())


class Command(NamedTuple):
    device_id: str
    point_id: str
    value: Any


class Status(enum.Enum):
    OK = "ok"
    BUSY = "busy"
    NOT_CONNECTED = "not_connected"
    LINK_ERROR = "link_error"
    TIMEOUT = "timeout"
    DUPLICATE_ID = "duplicate_id"
    INVALID_CONFIG = "invalid_config"
    NOT_FOUND = "not_found"


class Result(NamedTuple):
    """Outcome of a registry or session operation."""
    status: Status
    value: Any = None
    error: str = None

    @property
    def ok(self) -> bool:
        return self.status is Status.OK

    @classmethod
    def success(cls, value=None) -> "Result":
        return cls(Status.OK, value)

    @classmethod
    def failure(cls, status: Status, error: str) -> "Result":
        return cls(status, None, error)


class Event(object):
    """A message fanned out through the EventBus."""

    DEVICE_DATA = "device_data"
    DEVICE_CONNECT = "device_connect"
    DEVICE_DISCONNECT = "device_disconnect"
    DEVICE_ERROR = "device_error"
    DEVICE_ADDED = "device_added"
    DEVICE_REMOVED = "device_removed"

    def __init__(self, type: str, device_id: str, data: Any = None) -> None:
        self.type = type
        self.device_id = device_id
        self.data = data

    def as_message(self) -> Dict[str, Any]:
        message = {"type": self.type, "deviceId": self.device_id}
        if isinstance(self.data, DeviceReading):
            message["data"] = self.data.as_dict()
        elif self.data is not None:
            message["data"] = self.data
        return message

    def __repr__(self):
        return "<Event %s %s>" % (self.type, self.device_id)
