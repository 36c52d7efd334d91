"""
Wiring of the registry, the CSV sink, the WebSocket feed and the REST API
into one running process.
"""
import asyncio
import logging
import signal

from .api import ApiServer, create_app
from .bus import EventBus
from .config import ConfigStore
from .exceptions import BootError
from .registry import SessionRegistry
from .server import DashboardServer
from .storage import CsvSink


class Dashboard(object):

    def __init__(self,
                 config_path: str,
                 host: str = "0.0.0.0",
                 port: int = 5000,
                 ws_port: int = 8080,
                 data_dir: str = ".",
                 allow_empty: bool = False,
                 registry: SessionRegistry = None,
                 logger: logging.Logger = None) -> None:
        self.host = host
        self.port = port
        self.ws_port = ws_port
        self.allow_empty = allow_empty
        self.logger = logger or logging.getLogger(__name__)

        if registry is None:
            registry = SessionRegistry(EventBus(), store=ConfigStore(config_path))
        self.registry = registry
        self.bus = registry.bus
        self.sink = CsvSink(data_dir)
        self.ws_server = DashboardServer(self.registry, self.bus)
        self.api_server = None

    async def start(self) -> None:
        """
        :raises BootError: when the device file is malformed and
            ``allow_empty`` is not set
        """
        self.sink.start(self.bus)
        try:
            await self.registry.boot()
        except BootError as ex:
            if not self.allow_empty:
                await self.sink.stop()
                raise
            self.logger.error('%s; starting with no devices', ex)

        if not len(self.registry):
            self.logger.warning(
                'No devices configured. Please add devices to the device file '
                'or set the TUYA_DEVICE_* environment variables.')

        await self.ws_server.start(self.host, self.ws_port)
        app = create_app(self.registry, asyncio.get_running_loop(), self.sink)
        self.api_server = ApiServer(app, self.host, self.port)
        self.api_server.start()

    async def stop(self) -> None:
        if self.api_server is not None:
            self.api_server.stop()
            self.api_server = None
        await self.ws_server.stop()
        await self.registry.shutdown()
        await self.sink.stop()
        self.logger.info('Dashboard stopped')

    async def run(self) -> None:
        """Start, then serve until SIGINT or SIGTERM."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, stop_event.set)
            except NotImplementedError:
                # no signal handlers on this platform's loop; rely on KeyboardInterrupt
                pass
        try:
            await stop_event.wait()
        finally:
            await self.stop()
