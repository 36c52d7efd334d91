"""
Append-only CSV history, one file per device.
"""
import asyncio
import csv
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from .bus import EventBus, Subscription
from .models import DeviceReading, Event

CSV_COLUMNS = [
    ("timestamp", "Timestamp"),
    ("device_id", "Device ID"),
    ("device_name", "Device Name"),
    ("power_state", "Power State"),
    ("current", "Current (mA)"),
    ("power", "Power (W)"),
    ("voltage", "Voltage (V)"),
    ("energy", "Energy (kWh)"),
]
CSV_HEADER = [title for _, title in CSV_COLUMNS]
NUMERIC_COLUMNS = ("current", "power", "voltage", "energy")


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def reading_row(reading: DeviceReading) -> List[Any]:
    return [
        reading.timestamp.isoformat(),
        reading.device_id,
        reading.name,
        reading.power_state,
        reading.current,
        reading.power,
        reading.voltage,
        reading.energy,
    ]


class CsvSink(object):
    """
    Bus subscriber writing every ``device_data`` reading to
    ``<data_dir>/<device id>_data.csv``.

    Writes run on the default executor so a slow disk never stalls the
    event loop; a failed write is logged and the reading is dropped.
    """

    def __init__(self, data_dir: str = ".", logger: logging.Logger = None) -> None:
        self.data_dir = data_dir
        self.logger = logger or logging.getLogger(__name__)
        self._subscription = None                       # type: Subscription
        self._task = None

    def csv_path(self, device_id: str) -> str:
        safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", device_id).lstrip(".")
        return os.path.join(self.data_dir, "%s_data.csv" % safe_id)

    def append(self, reading: DeviceReading) -> None:
        path = self.csv_path(reading.device_id)
        os.makedirs(self.data_dir, exist_ok=True)
        exists = os.path.exists(path)

        with open(path, mode="a", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            if not exists:
                writer.writerow(CSV_HEADER)
                self.logger.info('CSV file created for %s', reading.name)
            writer.writerow(reading_row(reading))

    def rows(self, device_id: str) -> Iterator[Dict[str, str]]:
        path = self.csv_path(device_id)
        if not os.path.exists(path):
            return
        with open(path, newline="", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                yield row

    def history(self,
                device_id: str,
                start: datetime = None,
                end: datetime = None) -> List[Dict[str, Any]]:
        """
        Stored readings of a device between ``start`` and ``end`` inclusive.

        :return: dicts with ``timestamp`` and the metric columns
        :rtype: list
        """
        if start is not None and start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end is not None and end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)

        points = []
        for row in self.rows(device_id):
            timestamp = parse_timestamp(row.get("Timestamp", ""))
            if timestamp is None:
                continue
            if start is not None and timestamp < start:
                continue
            if end is not None and timestamp > end:
                continue

            point = {
                "timestamp": timestamp.isoformat(),
                "power_state": row.get("Power State") == "True",
            }
            for key, title in CSV_COLUMNS:
                if key in NUMERIC_COLUMNS:
                    try:
                        point[key] = float(row.get(title) or 0)
                    except ValueError:
                        point[key] = None
            points.append(point)
        return points

    def start(self, bus: EventBus) -> None:
        self._subscription = bus.subscribe()
        self._task = asyncio.ensure_future(self._consume(self._subscription))

    async def _consume(self, subscription: Subscription) -> None:
        loop = asyncio.get_running_loop()
        async for event in subscription:
            if event.type != Event.DEVICE_DATA:
                continue
            try:
                await loop.run_in_executor(None, self.append, event.data)
            except OSError as ex:
                self.logger.error('Error writing to CSV for %s: %s',
                                  event.device_id, ex)

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
