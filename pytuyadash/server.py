"""
Live WebSocket feed for browser clients.

Every client first receives ``{"type": "initial_data", "data": [...]}`` and
then every bus event as ``{"type": ..., "deviceId": ..., "data": ...}``.
Clients may send ``{"type": "toggle", "deviceId": ...}`` and
``{"type": "refresh"}``.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websockets

from .bus import EventBus, Subscription
from .registry import SessionRegistry

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_CLIENT_QUEUE = 100


def error_message(error: str, device_id: str = None) -> Dict[str, Any]:
    message = {"type": "error", "data": {"error": error}}
    if device_id is not None:
        message["deviceId"] = device_id
    return message


class DashboardServer(object):

    def __init__(self,
                 registry: SessionRegistry,
                 bus: EventBus = None,
                 client_queue: int = DEFAULT_CLIENT_QUEUE,
                 logger: logging.Logger = None) -> None:
        self.registry = registry
        self.bus = bus or registry.bus
        self.client_queue = client_queue
        self.logger = logger or logging.getLogger(__name__)
        self._server = None

    def initial_data(self) -> Dict[str, Any]:
        return {
            "type": "initial_data",
            "data": [reading.as_dict() for reading in self.registry.list_snapshots()],
        }

    async def handle_message(self, message) -> Optional[Dict[str, Any]]:
        """
        Act on one client message.

        :return: the reply for that client only, or None when the outcome
            reaches every client through the bus
        """
        try:
            data = json.loads(message)
        except ValueError as ex:
            return error_message("Invalid message: %s" % ex)
        if not isinstance(data, dict):
            return error_message("Invalid message: expected an object")

        self.logger.debug('Received WebSocket message: %s', data)
        message_type = data.get("type")

        if message_type == "toggle" and data.get("deviceId"):
            device_id = data["deviceId"]
            result = await self.registry.toggle(device_id)
            if not result.ok:
                return error_message("Failed to toggle device: %s" % result.error,
                                     device_id)
            return None

        if message_type == "refresh":
            return self.initial_data()

        return error_message("Unknown message type: %s" % message_type)

    async def _send(self, websocket, message: Dict[str, Any]) -> None:
        await websocket.send(json.dumps(message))

    async def _forward(self, websocket, subscription: Subscription) -> None:
        async for event in subscription:
            await self._send(websocket, event.as_message())

    async def handler(self, websocket) -> None:
        self.logger.info('Client connected to WebSocket')
        # subscribe before the snapshot so no event falls in between
        subscription = self.bus.subscribe(maxsize=self.client_queue)
        forward = asyncio.ensure_future(self._forward(websocket, subscription))
        try:
            await self._send(websocket, self.initial_data())
            async for message in websocket:
                reply = await self.handle_message(message)
                if reply is not None:
                    await self._send(websocket, reply)

        except websockets.exceptions.ConnectionClosed:
            self.logger.debug('WebSocket connection closed')

        finally:
            subscription.close()
            forward.cancel()
            await asyncio.gather(forward, return_exceptions=True)
            if subscription.dropped:
                self.logger.info('Slow client missed %i event(s)', subscription.dropped)
            self.logger.info('Client disconnected from WebSocket')

    async def start(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
        self._server = await websockets.serve(self.handler, host, port)
        self.logger.info('WebSocket server running on %s:%s', host, port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
