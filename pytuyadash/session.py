"""
Connection lifecycle of a single device.

A :class:`DeviceSession` owns one DeviceLink at a time and runs the loop

    DISCONNECTED -> CONNECTING -> CONNECTED -> (ERROR | DISCONNECTED) -> ...

as a single asyncio task, waiting according to its :class:`RetryPolicy`
between attempts. While connected it consumes the link's event stream,
polls a status snapshot periodically and accepts one command at a time.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping

from .bus import EventBus
from .exceptions import LinkError
from .link import ConnectionLost, DeviceLink, TuyaDeviceLink
from .models import (Command, DeviceConfig, DeviceReading, Event, Result,
                     SessionState, Status, utcnow)
from .normalizer import PointNormalizer


class RetryPolicy(object):
    """
    Reconnect delays growing by ``factor`` from ``initial`` up to ``maximum``.

    The sequence returned for consecutive attempts never decreases and never
    exceeds ``maximum``.
    """

    def __init__(self,
                 initial: float = 5,
                 maximum: float = 30,
                 factor: float = 2) -> None:
        if initial <= 0:
            raise ValueError("initial delay must be positive")
        if maximum < initial:
            raise ValueError("maximum delay must not be below the initial delay")
        if factor < 1:
            raise ValueError("factor must be at least 1")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0 based)."""
        delay = self.initial
        for _ in range(attempt):
            delay *= self.factor
            if delay >= self.maximum:
                return self.maximum
        return min(delay, self.maximum)

    def delays(self, count: int) -> List[float]:
        return [self.delay(attempt) for attempt in range(count)]

    def __repr__(self):
        return "<RetryPolicy %s..%s x%s>" % (self.initial, self.maximum, self.factor)


LinkFactory = Callable[[DeviceConfig], DeviceLink]


class DeviceSession(object):

    DEFAULT_CONNECT_TIMEOUT = 5
    DEFAULT_COMMAND_TIMEOUT = 5
    DEFAULT_POLL_INTERVAL = 10
    DEFAULT_POLL_TIMEOUT = 3

    def __init__(self,
                 config: DeviceConfig,
                 bus: EventBus,
                 link_factory: LinkFactory = TuyaDeviceLink,
                 normalizer: PointNormalizer = None,
                 retry_policy: RetryPolicy = None,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 poll_timeout: float = DEFAULT_POLL_TIMEOUT,
                 logger: logging.Logger = None) -> None:
        """
        Create a session for one configured device. Nothing happens on the
        network until :meth:`start` is called.

        :param config: the device to manage
        :param bus: where readings and lifecycle events are published
        :param link_factory: builds a fresh DeviceLink for every attempt
        :param poll_timeout: deadline of the periodic status request, must not
            exceed ``poll_interval``
        """
        if poll_timeout > poll_interval:
            raise ValueError("poll_timeout must not exceed poll_interval")

        self.config = config
        self.bus = bus
        self.link_factory = link_factory
        self.normalizer = normalizer or PointNormalizer()
        self.retry_policy = retry_policy or RetryPolicy()
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.logger = logger or logging.getLogger(__name__)

        self.retry_delays = []                          # type: List[float]
        self._reading = DeviceReading.from_config(config)
        self._state = SessionState.DISCONNECTED
        self._link = None
        self._task = None
        self._poll_task = None
        self._in_flight = None
        self._stopping = False

    @property
    def device_id(self) -> str:
        return self.config.id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def in_flight(self) -> Command:
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> DeviceReading:
        return self._reading.copy()

    def start(self, delay: float = 0) -> None:
        """
        Begin connecting after ``delay`` seconds. Sessions of disabled
        devices stay disconnected.
        """
        if not self.config.enabled:
            self.logger.debug('%s is disabled, not connecting', self.device_id)
            return
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.ensure_future(self._run(delay))

    async def stop(self) -> None:
        """
        Cancel the retry timer, any connect attempt and the event stream,
        then close the link.
        """
        self._stopping = True
        tasks = [task for task in (self._poll_task, self._task) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._poll_task = None

        link, self._link = self._link, None
        if link is not None:
            await self._close_link(link)

        self._reading.connected = False
        self._set_state(SessionState.DISCONNECTED)
        self.logger.debug('%s stopped', self.device_id)

    async def _run(self, delay: float) -> None:
        try:
            if delay:
                await asyncio.sleep(delay)

            attempt = 0
            # asyncio.wait_for may swallow a cancellation on 3.10 and 3.11,
            # so every await is followed by a check of the stop flag
            while not self._stopping:
                link = await self._connect()
                if self._stopping:
                    break
                if link is not None:
                    attempt = 0                         # reset after a successful connection
                    await self._serve(link)
                    if self._stopping:
                        break
                await self.wait_before_retry(attempt)
                attempt += 1

        except asyncio.CancelledError:
            self.logger.debug('%s session task cancelled', self.device_id)
            raise

        except Exception as ex:
            self.logger.exception('Unexpected error in session for %s: %s',
                                  self.device_id, ex)
            self._reading.connected = False
            self._set_state(SessionState.ERROR)

    async def wait_before_retry(self, attempt: int) -> None:
        delay = self.retry_policy.delay(attempt)
        self.retry_delays.append(delay)
        self.logger.debug('%s: waiting %s seconds before retry',
                          self.device_id, delay)
        await asyncio.sleep(delay)

    async def _connect(self):
        self._set_state(SessionState.CONNECTING)
        self.logger.info('Attempting to connect to %s (%s)...',
                         self.config.name, self.device_id)

        link = self.link_factory(self.config)
        self._link = link
        try:
            await asyncio.wait_for(link.connect(self.connect_timeout),
                                   self.connect_timeout)
        except asyncio.TimeoutError:
            error = "connect timed out after %ss" % self.connect_timeout
        except LinkError as ex:
            error = str(ex)
        else:
            if self._stopping:
                self._link = None
                await self._close_link(link)
                return None
            self._mark_connected()
            return link

        self._link = None
        await self._close_link(link)
        if self._stopping:
            return None

        self.logger.warning('Failed to connect to %s: %s', self.config.name, error)
        self._set_state(SessionState.DISCONNECTED)
        self.bus.publish(Event(Event.DEVICE_ERROR, self.device_id, {"error": error}))
        return None

    async def _serve(self, link: DeviceLink) -> None:
        self._poll_task = asyncio.ensure_future(self._poll_loop(link))
        state = SessionState.DISCONNECTED
        reason = "event stream ended"

        try:
            async for event in link.events():
                if isinstance(event, ConnectionLost):
                    reason = event.reason or "connection lost"
                    break
                if self._stopping:
                    break
                self._apply(event.points)

        except LinkError as ex:
            state = SessionState.ERROR
            reason = str(ex)

        finally:
            self._poll_task.cancel()
            self._poll_task = None

        self.logger.warning('%s disconnected: %s', self.config.name, reason)
        self._link = None
        await self._close_link(link)
        self._mark_disconnected(state, reason)

    async def _poll_loop(self, link: DeviceLink) -> None:
        while not self._stopping:
            await asyncio.sleep(self.poll_interval)
            try:
                points = await asyncio.wait_for(link.get(self.poll_timeout),
                                                self.poll_timeout)
            except asyncio.TimeoutError:
                # a slow answer is not a lost link
                self.logger.info('Status poll of %s timed out, ignoring',
                                 self.device_id)
                continue
            except LinkError as ex:
                self.logger.warning('Status poll of %s failed: %s',
                                    self.device_id, ex)
                continue
            if points and self.connected and not self._stopping:
                self._apply(points)

    def _apply(self, points: Mapping[str, Any]) -> None:
        reading = self.normalizer.normalize(self.config.type, points,
                                            self._reading, self.config.points)
        reading.connected = True
        self._reading.assign(reading)
        self.logger.debug('%s: %s -> %s', self.device_id, points,
                          self._reading.metrics())
        self._publish_reading()

    async def submit(self,
                     point_id: str,
                     value: Any,
                     optimistic: Dict[str, Any] = None) -> Result:
        """
        Send one command to the device.

        Returns ``BUSY`` straight away while another command is in flight and
        ``NOT_CONNECTED`` unless connected. ``optimistic`` reading fields are
        applied and published before the link confirms, and reverted if the
        command fails or times out.

        :rtype: Result
        """
        if self._in_flight is not None:
            return Result.failure(Status.BUSY,
                                  "Command already in flight for %s" % self.device_id)
        link = self._link
        if not self.connected or link is None:
            return Result.failure(Status.NOT_CONNECTED, "Device not connected")

        command = Command(self.device_id, str(point_id), value)
        self._in_flight = command
        try:
            previous = self._apply_optimistic(optimistic)
            try:
                await asyncio.wait_for(
                    link.set(command.point_id, command.value, self.command_timeout),
                    self.command_timeout)
            except asyncio.TimeoutError:
                result = Result.failure(Status.TIMEOUT, "Command timed out")
            except LinkError as ex:
                result = Result.failure(Status.LINK_ERROR, str(ex))
            else:
                self.logger.debug('%s: point %s set to %r', self.device_id,
                                  command.point_id, command.value)
                return Result.success(command.value)

            self.logger.warning('Command %s=%r for %s failed: %s',
                                command.point_id, command.value,
                                self.device_id, result.error)
            if not self._stopping:
                self._revert_optimistic(optimistic, previous)
            return result
        finally:
            self._in_flight = None

    def _apply_optimistic(self, optimistic) -> Dict[str, Any]:
        if not optimistic:
            return {}
        previous = {field: getattr(self._reading, field) for field in optimistic}
        for field, value in optimistic.items():
            setattr(self._reading, field, value)
        self._reading.timestamp = utcnow()
        self._publish_reading()
        return previous

    def _revert_optimistic(self, optimistic, previous: Dict[str, Any]) -> None:
        reverted = False
        for field, value in previous.items():
            # the device may have reported the field meanwhile; it wins
            if getattr(self._reading, field) == optimistic[field]:
                setattr(self._reading, field, value)
                reverted = True
        if reverted:
            self._reading.timestamp = utcnow()
            self._publish_reading()

    async def _close_link(self, link: DeviceLink) -> None:
        try:
            await asyncio.wait_for(link.disconnect(), self.connect_timeout)
        except (LinkError, OSError, asyncio.TimeoutError) as ex:
            self.logger.warning('Failed to close link to %s: %s',
                                self.device_id, ex)

    def _mark_connected(self) -> None:
        self._reading.connected = True
        self._reading.timestamp = utcnow()
        self._set_state(SessionState.CONNECTED)
        self.logger.info('Connected to %s', self.config.name)
        self.bus.publish(Event(Event.DEVICE_CONNECT, self.device_id,
                               self._reading.copy()))

    def _mark_disconnected(self, state: SessionState, reason: str) -> None:
        # metrics are retained so a lost device still shows its last values
        self._reading.connected = False
        self._set_state(state)
        if state is SessionState.ERROR:
            self.bus.publish(Event(Event.DEVICE_ERROR, self.device_id,
                                   {"error": reason}))
        self.bus.publish(Event(Event.DEVICE_DISCONNECT, self.device_id,
                               self._reading.copy()))

    def _publish_reading(self) -> None:
        self.bus.publish(Event(Event.DEVICE_DATA, self.device_id,
                               self._reading.copy()))

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            self.logger.debug('%s: %s -> %s', self.device_id,
                              self._state.value, state.value)
            self._state = state

    def __repr__(self):
        return "<%s %s %s>" % (self.__class__.__name__, self.device_id,
                               self._state.value)
