#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""Tests for the process wiring, with the network servers mocked out."""
import json
import os
import tempfile
import unittest
from unittest import mock

from pytuyadash.bus import EventBus
from pytuyadash.config import ConfigStore
from pytuyadash.dashboard import Dashboard
from pytuyadash.exceptions import BootError
from pytuyadash.registry import SessionRegistry
from pytuyadash.server import DashboardServer
from tests.fake_link import FakeLinkFactory, make_config, wait_until


class TestDashboard(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.dir = tmp.name
        self.config_path = os.path.join(tmp.name, "devices.json")

        self.addCleanup(mock.patch.stopall)
        self.ApiServer = mock.patch("pytuyadash.dashboard.ApiServer").start()
        mock.patch.object(DashboardServer, "start").start()
        mock.patch.object(DashboardServer, "stop").start()

    def make_dashboard(self, allow_empty=False):
        factory = FakeLinkFactory(initial={"1": True})
        registry = SessionRegistry(EventBus(), store=ConfigStore(self.config_path,
                                                                 use_env_fallback=False),
                                   link_factory=factory, stagger=0)
        return Dashboard(self.config_path, data_dir=self.dir,
                         allow_empty=allow_empty, registry=registry)

    def test_keeps_an_injected_empty_registry(self):
        registry = SessionRegistry(EventBus(), link_factory=FakeLinkFactory())

        dashboard = Dashboard(self.config_path, data_dir=self.dir, registry=registry)

        self.assertEqual(len(registry), 0)
        self.assertIs(dashboard.registry, registry)
        self.assertIs(dashboard.bus, registry.bus)
        self.assertIs(dashboard.ws_server.registry, registry)

    async def test_start_boots_devices_and_servers(self):
        with open(self.config_path, "w") as f:
            json.dump([make_config().as_dict()], f)
        dashboard = self.make_dashboard()

        await dashboard.start()
        await wait_until(lambda: dashboard.sink.history("device_1"))
        await dashboard.stop()

        self.ApiServer.return_value.start.assert_called_once_with()
        self.ApiServer.return_value.stop.assert_called_once_with()
        self.assertTrue(os.path.exists(dashboard.sink.csv_path("device_1")))
        self.assertEqual(dashboard.bus.subscriber_count, 0)

    async def test_malformed_device_file_fails_boot(self):
        with open(self.config_path, "w") as f:
            f.write("not json")
        dashboard = self.make_dashboard()

        with self.assertRaises(BootError):
            await dashboard.start()
        self.ApiServer.assert_not_called()
        self.assertEqual(dashboard.bus.subscriber_count, 0)

    async def test_allow_empty_starts_without_devices(self):
        with open(self.config_path, "w") as f:
            f.write("not json")
        dashboard = self.make_dashboard(allow_empty=True)

        with self.assertLogs('pytuyadash.dashboard', level='WARNING'):
            await dashboard.start()
        await dashboard.stop()

        self.assertEqual(len(dashboard.registry), 0)
        self.ApiServer.return_value.start.assert_called_once_with()


if __name__ == '__main__':
    unittest.main()
