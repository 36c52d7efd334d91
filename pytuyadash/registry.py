import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .bus import EventBus
from .config import ConfigStore, parse_device
from .exceptions import BootError, ConfigError, InvalidConfig
from .link import TuyaDeviceLink
from .models import DeviceConfig, DeviceReading, Event, Result, Status
from .normalizer import PointNormalizer
from .session import DeviceSession, LinkFactory, RetryPolicy


class SessionRegistry(object):
    """
    The set of device sessions, keyed by device id, in configuration order.

    This is the whole surface the REST and WebSocket layers use::

        registry = SessionRegistry(bus, store=ConfigStore("devices.json"))
        await registry.boot()
        registry.list_snapshots()
        await registry.toggle("device_1")

    Operations report expected failures through :class:`Result` values and
    never raise for them.
    """

    DEFAULT_STAGGER = 2

    def __init__(self,
                 bus: EventBus = None,
                 store: ConfigStore = None,
                 link_factory: LinkFactory = TuyaDeviceLink,
                 normalizer: PointNormalizer = None,
                 retry_policy: RetryPolicy = None,
                 stagger: float = DEFAULT_STAGGER,
                 session_options: Dict[str, Any] = None,
                 logger: logging.Logger = None) -> None:
        self.bus = bus or EventBus()
        self.store = store
        self.link_factory = link_factory
        self.normalizer = normalizer or PointNormalizer()
        self.retry_policy = retry_policy or RetryPolicy()
        self.stagger = stagger
        self.session_options = session_options or {}
        self.logger = logger or logging.getLogger(__name__)

        self._sessions = {}                             # type: Dict[str, DeviceSession]

    def _create_session(self, config: DeviceConfig) -> DeviceSession:
        return DeviceSession(
            config,
            self.bus,
            link_factory=self.link_factory,
            normalizer=self.normalizer,
            retry_policy=self.retry_policy,
            logger=self.logger.getChild(config.id),
            **self.session_options
        )

    async def boot(self) -> List[DeviceConfig]:
        """
        Load the persisted devices and start their sessions.

        :raises BootError: when the configuration store is malformed
        """
        if self.store is None:
            raise BootError("no configuration store to boot from")
        try:
            configs = self.store.load()
        except ConfigError as ex:
            raise BootError("Unable to load device configuration: %s" % ex) from ex
        await self.load_and_start(configs)
        return configs

    async def load_and_start(self, configs: Iterable[DeviceConfig]) -> None:
        """
        Create a session for every config and start the enabled ones,
        ``stagger`` seconds apart.
        """
        configs = list(configs)
        position = 0
        for config in configs:
            if config.id in self._sessions:
                self.logger.warning('Ignoring duplicate device id %s', config.id)
                continue
            session = self._create_session(config)
            self._sessions[config.id] = session
            if config.enabled:
                session.start(delay=position * self.stagger)
                position += 1

        self.logger.info('Found %i device(s) total, %i enabled, %i disabled',
                         len(configs), position, len(configs) - position)

    def list_snapshots(self) -> List[DeviceReading]:
        return [session.snapshot() for session in self._sessions.values()]

    def snapshot(self, device_id: str) -> Optional[DeviceReading]:
        session = self._sessions.get(device_id)
        return session.snapshot() if session is not None else None

    def session(self, device_id: str) -> Optional[DeviceSession]:
        return self._sessions.get(device_id)

    def configs(self) -> List[DeviceConfig]:
        return [session.config for session in self._sessions.values()]

    async def toggle(self, device_id: str) -> Result:
        """
        Invert the power state of a device.

        The reading flips before the device confirms and flips back if the
        command fails.

        :return: ``Result(OK, new_state)`` or a failure with status
            NOT_FOUND, BUSY, NOT_CONNECTED, LINK_ERROR or TIMEOUT
        """
        session = self._sessions.get(device_id)
        if session is None:
            return Result.failure(Status.NOT_FOUND, "Device not found")

        new_state = not session.snapshot().power_state
        point_id = self.normalizer.power_point(session.config.type,
                                               session.config.points)
        self.logger.info('Toggling %s to %s', device_id, new_state)
        return await session.submit(point_id, new_state,
                                    optimistic={"power_state": new_state})

    async def add(self, config: Union[DeviceConfig, Mapping[str, Any]]) -> Result:
        """
        Register, persist and start a new device.

        :param config: a DeviceConfig or its ``devices.json`` mapping
        :return: ``Result(OK, config)``, or DUPLICATE_ID / INVALID_CONFIG
        """
        if not isinstance(config, DeviceConfig):
            try:
                config = parse_device(config)
            except InvalidConfig as ex:
                return Result.failure(Status.INVALID_CONFIG, str(ex))

        if config.id in self._sessions:
            return Result.failure(Status.DUPLICATE_ID, "Device ID already exists")

        if self.store is not None:
            try:
                self.store.add(config)
            except ConfigError as ex:
                return Result.failure(Status.INVALID_CONFIG, str(ex))

        session = self._create_session(config)
        self._sessions[config.id] = session
        session.start()
        self.logger.info('Added device %s (%s)', config.name, config.id)
        self.bus.publish(Event(Event.DEVICE_ADDED, config.id, session.snapshot()))
        return Result.success(config)

    async def remove(self, device_id: str) -> Result:
        """Stop a device's session, forget its reading and persist the removal."""
        session = self._sessions.pop(device_id, None)
        if session is None:
            return Result.failure(Status.NOT_FOUND, "Device not found")

        await session.stop()

        if self.store is not None:
            try:
                self.store.remove(device_id)
            except ConfigError as ex:
                self.logger.error('Unable to persist removal of %s: %s',
                                  device_id, ex)

        self.logger.info('Removed device %s', device_id)
        self.bus.publish(Event(Event.DEVICE_REMOVED, device_id))
        return Result.success(device_id)

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        if sessions:
            await asyncio.gather(*(session.stop() for session in sessions))
        self.logger.debug('all sessions stopped')

    def __contains__(self, device_id) -> bool:
        return device_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
