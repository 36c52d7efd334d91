"""
Transport to a single Tuya device.

The session core only depends on the :class:`DeviceLink` interface. The
production implementation, :class:`TuyaDeviceLink`, drives a blocking
``tinytuya.OutletDevice`` from executor threads so the event loop never
waits on a socket.
"""
import asyncio
import collections
import logging
import threading
import time
from typing import Any, AsyncIterator, Dict, Iterable, Union

import tinytuya

from .exceptions import LinkError
from .models import DeviceConfig

# tinytuya error codes
ERR_TIMEOUT = "902"

DEFAULT_RECEIVE_TIMEOUT = 1
DEFAULT_HEARTBEAT_INTERVAL = 9
PROTOCOL_VERSIONS = ("3.1", "3.2", "3.3", "3.4", "3.5")


class RawPointUpdate(object):
    """Raw points reported by the device, point id -> raw value."""

    def __init__(self, points: Dict[str, Any]) -> None:
        self.points = points

    def __repr__(self):
        return "<RawPointUpdate %s>" % self.points


class ConnectionLost(object):
    """The link went away; no further events follow."""

    def __init__(self, reason: str = "") -> None:
        self.reason = reason

    def __repr__(self):
        return "<ConnectionLost %s>" % self.reason


LinkEvent = Union[RawPointUpdate, ConnectionLost]


class DeviceLink(object):
    """
    Opaque per-device transport consumed by a DeviceSession.

    ``connect``, ``get`` and ``set`` raise :class:`LinkError` on transport
    failure. ``events`` is consumed by exactly one task and ends after
    yielding a :class:`ConnectionLost`.
    """

    async def connect(self, timeout: float) -> None:
        raise NotImplementedError("DeviceLink subclass needs to implement this.")

    async def disconnect(self) -> None:
        raise NotImplementedError("DeviceLink subclass needs to implement this.")

    async def get(self, timeout: float) -> Dict[str, Any]:
        raise NotImplementedError("DeviceLink subclass needs to implement this.")

    async def set(self, point_id: str, value: Any, timeout: float) -> None:
        raise NotImplementedError("DeviceLink subclass needs to implement this.")

    def events(self) -> AsyncIterator[LinkEvent]:
        raise NotImplementedError("DeviceLink subclass needs to implement this.")


def check_response(data) -> Dict[str, Any]:
    """
    Extract the dps of a tinytuya response, raising on error payloads.

    tinytuya reports most failures by returning ``{"Error": ..., "Err": code}``
    instead of raising.
    """
    if data is None:
        raise LinkError("no response from device")
    if "Error" in data:
        raise LinkError(str(data["Error"]), code=data.get("Err"))
    return {str(key): value for key, value in (data.get("dps") or {}).items()}


class TuyaDeviceLink(DeviceLink):

    def __init__(self,
                 config: DeviceConfig,
                 receive_timeout: float = DEFAULT_RECEIVE_TIMEOUT,
                 heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
                 logger: logging.Logger = None) -> None:
        self.config = config
        self.receive_timeout = receive_timeout
        self.heartbeat_interval = heartbeat_interval
        self.logger = logger or logging.getLogger(__name__)

        self._device = None
        self._lock = threading.Lock()                   # one socket, many executor threads
        self._pending = collections.deque()
        self._closed = False
        self._last_heartbeat = 0.0

    async def _call(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _open(self, timeout: float) -> Dict[str, Any]:
        with self._lock:
            device = tinytuya.OutletDevice(
                dev_id=self.config.device_id,
                address=self.config.address,
                local_key=self.config.local_key,
                version=float(self.config.version),
                connection_timeout=timeout,
                connection_retry_limit=1,
            )
            device.set_socketPersistent(True)
            device.set_socketTimeout(timeout)
            try:
                dps = check_response(device.status())
            except (LinkError, OSError):
                device.close()
                raise
            if self._closed:
                device.close()
                raise LinkError("link closed while connecting")
            self._device = device
            self._last_heartbeat = time.monotonic()
            return dps

    async def connect(self, timeout: float) -> None:
        self.logger.debug('connecting to %s at %s (v%s)',
                          self.config.device_id, self.config.address,
                          self.config.version)
        self._closed = False
        try:
            dps = await self._call(self._open, timeout)
        except OSError as ex:
            raise LinkError("unable to connect: %s" % ex) from ex
        self._pending.append(RawPointUpdate(dps))

    def _close(self) -> None:
        device, self._device = self._device, None
        if device is not None:
            device.close()

    async def disconnect(self) -> None:
        self._closed = True
        await self._call(self._close)

    def _status(self, timeout: float) -> Dict[str, Any]:
        with self._lock:
            device = self._require_device()
            device.set_socketTimeout(timeout)
            try:
                return check_response(device.status())
            finally:
                device.set_socketTimeout(self.receive_timeout)

    async def get(self, timeout: float) -> Dict[str, Any]:
        try:
            dps = await self._call(self._status, timeout)
        except OSError as ex:
            raise LinkError("status request failed: %s" % ex) from ex
        return dps

    def _set_value(self, point_id: str, value: Any, timeout: float):
        with self._lock:
            device = self._require_device()
            device.set_socketTimeout(timeout)
            try:
                response = device.set_value(int(point_id), value)
                # a bare ACK without payload comes back as None
                if response is None:
                    return {}
                return check_response(response)
            finally:
                device.set_socketTimeout(self.receive_timeout)

    async def set(self, point_id: str, value: Any, timeout: float) -> None:
        try:
            dps = await self._call(self._set_value, point_id, value, timeout)
        except OSError as ex:
            raise LinkError("set request failed: %s" % ex) from ex
        if dps:
            self._pending.append(RawPointUpdate(dps))

    def _receive(self):
        with self._lock:
            device = self._require_device()
            device.set_socketTimeout(self.receive_timeout)
            data = device.receive()
            if data is None or data.get("Err") == ERR_TIMEOUT:
                if time.monotonic() - self._last_heartbeat >= self.heartbeat_interval:
                    device.heartbeat(nowait=True)
                    self._last_heartbeat = time.monotonic()
                return {}
            return check_response(data)

    async def events(self) -> AsyncIterator[LinkEvent]:
        while True:
            if self._pending:
                yield self._pending.popleft()
                continue
            if self._closed:
                return
            try:
                dps = await self._call(self._receive)
            except (LinkError, OSError) as ex:
                yield ConnectionLost(str(ex))
                return
            if dps:
                self._pending.append(RawPointUpdate(dps))

    def _require_device(self):
        if self._device is None:
            raise LinkError("link is not connected")
        return self._device

    def __repr__(self):
        return "<%s %s at %s>" % (
            self.__class__.__name__,
            self.config.device_id,
            self.config.address)


async def probe_versions(config: DeviceConfig,
                         versions: Iterable[str] = PROTOCOL_VERSIONS,
                         timeout: float = 5,
                         logger: logging.Logger = None) -> Dict[str, Dict[str, Any]]:
    """
    Try to talk to a device with each protocol version in turn.

    :return: version -> {"ok": bool, "dps": dict} or {"ok": False, "error": str}
    :rtype: dict
    """
    logger = logger or logging.getLogger(__name__)
    results = {}

    for version in versions:
        link = TuyaDeviceLink(config._replace(version=version), logger=logger)
        try:
            await asyncio.wait_for(link.connect(timeout), timeout + 1)
            dps = await asyncio.wait_for(link.get(timeout), timeout + 1)
            results[version] = {"ok": True, "dps": dps}
        except LinkError as ex:
            results[version] = {"ok": False, "error": str(ex)}
        except asyncio.TimeoutError:
            results[version] = {"ok": False, "error": "timed out"}
        finally:
            try:
                await link.disconnect()
            except OSError as ex:
                logger.debug('closing probe link for v%s failed: %s', version, ex)
        logger.info('version %s: %s', version,
                    "ok" if results[version]["ok"] else results[version]["error"])

    return results
