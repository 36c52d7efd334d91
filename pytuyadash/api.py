"""
REST API for control and device management.

Flask handlers run on werkzeug worker threads while the sessions live on the
asyncio loop, so every registry call is handed to the loop with
``asyncio.run_coroutine_threadsafe`` and awaited with a deadline.
"""
import asyncio
import concurrent.futures
import inspect
import logging
import os
import threading
from datetime import timedelta
from typing import Any, Callable

from flask import Flask, jsonify, request, send_file
from werkzeug.serving import make_server

from .models import Status, utcnow
from .registry import SessionRegistry
from .storage import CsvSink, parse_timestamp

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 5000
DEFAULT_CALL_TIMEOUT = 15

STATUS_CODES = {
    Status.NOT_FOUND: 404,
    Status.NOT_CONNECTED: 400,
    Status.BUSY: 409,
    Status.LINK_ERROR: 502,
    Status.TIMEOUT: 504,
    Status.DUPLICATE_ID: 400,
    Status.INVALID_CONFIG: 400,
}

_LOGGER = logging.getLogger(__name__)


async def _invoke(func: Callable, *args) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def err(message: str, status: int = 400):
    return jsonify({"error": message}), status


def create_app(registry: SessionRegistry,
               loop: asyncio.AbstractEventLoop,
               sink: CsvSink = None,
               call_timeout: float = DEFAULT_CALL_TIMEOUT) -> Flask:
    """
    :param registry: the running registry
    :param loop: the event loop the registry's sessions run on
    :param sink: enables the CSV download and history endpoints
    """
    app = Flask(__name__)
    app.json.sort_keys = False

    def call(func, *args):
        future = asyncio.run_coroutine_threadsafe(_invoke(func, *args), loop)
        return future.result(call_timeout)

    @app.errorhandler(concurrent.futures.TimeoutError)
    def handle_timeout(ex):
        _LOGGER.warning('Request %s timed out waiting for the event loop', request.path)
        return err("Request timed out", 504)

    @app.get("/api/devices")
    def list_devices():
        return jsonify([reading.as_dict() for reading in call(registry.list_snapshots)])

    @app.get("/api/devices/<device_id>")
    def get_device(device_id):
        reading = call(registry.snapshot, device_id)
        if reading is None:
            return err("Device not found", 404)
        return jsonify(reading.as_dict())

    @app.post("/api/devices/<device_id>/toggle")
    def toggle_device(device_id):
        result = call(registry.toggle, device_id)
        if not result.ok:
            return err(result.error, STATUS_CODES.get(result.status, 500))
        return jsonify({"success": True, "deviceId": device_id, "new_state": result.value})

    @app.post("/api/devices")
    def add_device():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return err("Expected a JSON object")
        result = call(registry.add, data)
        if not result.ok:
            return err(result.error, STATUS_CODES.get(result.status, 500))
        device = result.value.as_dict()
        device.pop("device_key", None)
        return jsonify({"success": True, "device": device})

    @app.delete("/api/devices/<device_id>")
    def remove_device(device_id):
        result = call(registry.remove, device_id)
        if not result.ok:
            return err(result.error, STATUS_CODES.get(result.status, 500))
        return jsonify({"success": True})

    @app.get("/api/devices/<device_id>/csv")
    def download_csv(device_id):
        path = sink.csv_path(device_id) if sink is not None else None
        if path is None or not os.path.exists(path):
            return err("CSV file not found for this device", 404)
        return send_file(os.path.abspath(path), mimetype="text/csv",
                         as_attachment=True,
                         download_name=os.path.basename(path))

    @app.get("/api/devices/<device_id>/history")
    def device_history(device_id):
        if sink is None:
            return err("History is not recorded", 404)
        end = parse_timestamp(request.args.get("endDate", "")) or utcnow()
        start = (parse_timestamp(request.args.get("startDate", ""))
                 or end - timedelta(hours=24))
        if start > end:
            return err("startDate must not be after endDate")
        return jsonify({
            "deviceId": device_id,
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "data": sink.history(device_id, start, end),
        })

    return app


class ApiServer(object):
    """Serve the Flask app from a daemon thread."""

    def __init__(self, app: Flask, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 logger: logging.Logger = None) -> None:
        self.logger = logger or _LOGGER
        self.host = host
        self.port = port
        self._server = make_server(host, port, app, threaded=True)
        self._thread = threading.Thread(target=self._server.serve_forever,
                                        name="pytuyadash-api", daemon=True)

    def start(self) -> None:
        self._thread.start()
        self.logger.info('REST API running on http://%s:%s', self.host, self.port)

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=5)
