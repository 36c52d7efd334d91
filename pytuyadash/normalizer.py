"""
Translation of raw Tuya data points (DPS) into canonical readings.

Each device type publishes its metrics on its own set of point ids and in its
own units. A :class:`PointMap` names, for every canonical field, the point id
carrying it and the divisor turning the raw integer into the canonical unit.
"""
from typing import Any, Mapping, NamedTuple, Optional

from .models import DeviceReading, DeviceType, utcnow

NUMERIC_FIELDS = ("current", "power", "voltage", "energy")


class PointSpec(NamedTuple):
    point_id: str
    divisor: float = 1


class PointMap(object):
    """Point ids and scaling for the canonical fields of one device type."""

    def __init__(self,
                 power_state: str = None,
                 current: PointSpec = None,
                 power: PointSpec = None,
                 voltage: PointSpec = None,
                 energy: PointSpec = None) -> None:
        self.power_state = power_state
        self.current = current
        self.power = power
        self.voltage = voltage
        self.energy = energy

    def with_points(self, overrides: Mapping[str, str]) -> "PointMap":
        """
        Return a copy with some point ids replaced, keeping the divisors.

        :param overrides: canonical field name -> point id
        """
        fields = {}
        for field in ("power_state",) + NUMERIC_FIELDS:
            fields[field] = getattr(self, field)
        for field, point_id in overrides.items():
            if field not in fields:
                continue
            if field == "power_state":
                fields[field] = str(point_id)
            else:
                divisor = fields[field].divisor if fields[field] else 1
                fields[field] = PointSpec(str(point_id), divisor)
        return PointMap(**fields)


PLUG_POINTS = PointMap(
    power_state="1",
    current=PointSpec("18", 1),
    power=PointSpec("19", 10),
    voltage=PointSpec("20", 10),
    energy=PointSpec("22", 1000),
)

# layout used by older v3.1 firmware
SWITCH_POINTS = PointMap(
    power_state="1",
    current=PointSpec("4", 1),
    power=PointSpec("5", 10),
    voltage=PointSpec("6", 10),
    energy=PointSpec("17", 1000),
)

DEFAULT_TABLES = {
    DeviceType.PLUG: PLUG_POINTS,
    DeviceType.OUTLET: PLUG_POINTS,
    DeviceType.SWITCH: SWITCH_POINTS,
    DeviceType.OTHER: PointMap(power_state="1"),
}


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "on", "1"):
            return True
        if lowered in ("false", "off", "0"):
            return False
    return None


class PointNormalizer(object):
    """
    Pure mapping from raw points to a DeviceReading.

    Usage::

        normalizer = PointNormalizer()
        reading = normalizer.normalize(DeviceType.PLUG, {"1": True, "20": 2301},
                                       previous)
        reading.voltage   # 230.1

    Fields whose point is absent from the update keep the previous value.
    Unknown points, and values that do not convert, are ignored.
    """

    def __init__(self, tables: Mapping[DeviceType, PointMap] = None) -> None:
        self.tables = dict(DEFAULT_TABLES)
        if tables:
            self.tables.update(tables)

    def register(self, device_type: DeviceType, point_map: PointMap) -> None:
        self.tables[device_type] = point_map

    def point_map(self,
                  device_type: DeviceType,
                  overrides: Mapping[str, str] = None) -> PointMap:
        point_map = self.tables.get(device_type, self.tables[DeviceType.OTHER])
        if overrides:
            point_map = point_map.with_points(overrides)
        return point_map

    def power_point(self,
                    device_type: DeviceType,
                    overrides: Mapping[str, str] = None) -> str:
        return self.point_map(device_type, overrides).power_state or "1"

    def normalize(self,
                  device_type: DeviceType,
                  raw_points: Mapping[Any, Any],
                  previous: DeviceReading,
                  overrides: Mapping[str, str] = None) -> DeviceReading:
        """
        :param device_type: selects the point table
        :param raw_points: point id -> raw value, as delivered by the device
        :param previous: reading to carry unseen fields forward from
        :param overrides: per-device point id replacements
        :return: a new reading; ``previous`` is left untouched
        :rtype: DeviceReading
        """
        point_map = self.point_map(device_type, overrides)
        points = {str(key): value for key, value in raw_points.items()}
        reading = previous.copy()

        if point_map.power_state in points:
            state = _to_bool(points[point_map.power_state])
            if state is not None:
                reading.power_state = state

        for field in NUMERIC_FIELDS:
            spec = getattr(point_map, field)
            if spec is None or spec.point_id not in points:
                continue
            number = _to_number(points[spec.point_id])
            if number is None:
                continue
            value = number / spec.divisor if spec.divisor != 1 else number
            if field != "energy":
                value = max(0, value)
            setattr(reading, field, value)

        reading.timestamp = utcnow()
        return reading

