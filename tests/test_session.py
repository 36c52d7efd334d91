#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""Tests for the DeviceSession state machine."""
import asyncio
import unittest

from pytuyadash.bus import EventBus
from pytuyadash.link import RawPointUpdate
from pytuyadash.models import Event, SessionState, Status
from pytuyadash.session import DeviceSession, RetryPolicy
from tests.fake_link import HANG, FakeLink, FakeLinkFactory, make_config, wait_until

INITIAL = {"1": False, "18": 120, "19": 255, "20": 2301, "22": 1500}
FAST_RETRY = RetryPolicy(initial=0.01, maximum=0.04)


def drain(subscription):
    events = []
    while subscription.pending():
        events.append(subscription.get_nowait())
    return events


class LateConnectLink(FakeLink):
    """Finishes connecting in the same step its cancellation arrives."""

    async def connect(self, timeout):
        self.connects += 1
        try:
            await asyncio.sleep(HANG)
        except asyncio.CancelledError:
            pass
        self._events.put_nowait(RawPointUpdate(dict(self.initial)))


class TestRetryPolicy(unittest.TestCase):

    def test_default_sequence(self):
        self.assertEqual(RetryPolicy().delays(6), [5, 10, 20, 30, 30, 30])

    def test_sequence_is_non_decreasing_and_capped(self):
        policy = RetryPolicy(initial=1, maximum=45, factor=1.7)
        delays = policy.delays(50)

        self.assertEqual(delays, sorted(delays))
        self.assertEqual(max(delays), 45)
        self.assertEqual(delays[0], 1)

    def test_fixed_delay(self):
        self.assertEqual(RetryPolicy(initial=5, maximum=5, factor=1).delays(3), [5, 5, 5])

    def test_invalid_policies(self):
        with self.assertRaises(ValueError):
            RetryPolicy(initial=0)
        with self.assertRaises(ValueError):
            RetryPolicy(initial=10, maximum=5)
        with self.assertRaises(ValueError):
            RetryPolicy(factor=0.5)


class TestDeviceSession(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.bus = EventBus()
        self.events = self.bus.subscribe()
        self.factory = FakeLinkFactory(initial=INITIAL)
        self.sessions = []

    async def asyncTearDown(self):
        for session in self.sessions:
            await session.stop()

    def make_session(self, config=None, retry_policy=FAST_RETRY, **options):
        options.setdefault("connect_timeout", 0.5)
        options.setdefault("command_timeout", 0.5)
        options.setdefault("poll_interval", 5)
        options.setdefault("poll_timeout", 1)
        session = DeviceSession(config or make_config(), self.bus,
                                link_factory=self.factory,
                                retry_policy=retry_policy, **options)
        self.sessions.append(session)
        return session

    async def connected_session(self, **options):
        session = self.make_session(**options)
        session.start()
        await wait_until(lambda: session.snapshot().voltage == 230.1,
                         message="session never received its first reading")
        return session

    async def test_connects_and_publishes_first_reading(self):
        session = await self.connected_session()

        self.assertIs(session.state, SessionState.CONNECTED)
        reading = session.snapshot()
        self.assertTrue(reading.connected)
        self.assertEqual(reading.current, 120)
        self.assertAlmostEqual(reading.power, 25.5)
        self.assertAlmostEqual(reading.energy, 1.5)

        types = [event.type for event in drain(self.events)]
        self.assertEqual(types[0], Event.DEVICE_CONNECT)
        self.assertIn(Event.DEVICE_DATA, types)

    async def test_disabled_device_never_connects(self):
        session = self.make_session(make_config(enabled=False))
        session.start()
        await asyncio.sleep(0.05)

        self.assertIs(session.state, SessionState.DISCONNECTED)
        self.assertFalse(session.snapshot().connected)
        self.assertEqual(self.factory.links, [])
        self.assertFalse(session.running)

    async def test_updates_are_published_in_link_order(self):
        session = await self.connected_session()
        drain(self.events)
        link = self.factory.latest("device_1")

        for voltage in (2200, 2210, 2220, 2230):
            link.push({"20": voltage})
        await wait_until(lambda: self.events.pending() == 4)

        voltages = [event.data.voltage for event in drain(self.events)]
        self.assertEqual(voltages, [220.0, 221.0, 222.0, 223.0])
        self.assertEqual(session.snapshot().voltage, 223.0)

    async def test_published_readings_are_copies(self):
        session = await self.connected_session()
        drain(self.events)
        self.factory.latest("device_1").push({"18": 99})
        published = (await self.events.get()).data

        published.current = 12345
        self.assertEqual(session.snapshot().current, 99)

    async def test_disconnect_preserves_last_metrics(self):
        session = await self.connected_session(
            retry_policy=RetryPolicy(initial=10, maximum=10))
        link = self.factory.latest("device_1")
        link.push({"18": 431, "19": 987, "22": 2000})
        await wait_until(lambda: session.snapshot().current == 431)
        before = session.snapshot().metrics()

        link.drop()
        await wait_until(lambda: not session.snapshot().connected)

        self.assertIs(session.state, SessionState.DISCONNECTED)
        self.assertEqual(session.snapshot().metrics(), before)
        self.assertTrue(link.disconnected)
        disconnects = [event for event in drain(self.events)
                       if event.type == Event.DEVICE_DISCONNECT]
        self.assertEqual(len(disconnects), 1)
        self.assertFalse(disconnects[0].data.connected)
        self.assertEqual(disconnects[0].data.current, 431)

    async def test_link_error_enters_error_state(self):
        session = await self.connected_session(
            retry_policy=RetryPolicy(initial=10, maximum=10))
        drain(self.events)

        self.factory.latest("device_1").fail("bad frame")
        await wait_until(lambda: session.state is SessionState.ERROR)

        events = drain(self.events)
        self.assertEqual(events[0].type, Event.DEVICE_ERROR)
        self.assertEqual(events[0].data, {"error": "bad frame"})
        self.assertFalse(session.snapshot().connected)

    async def test_reconnects_after_connection_loss(self):
        session = await self.connected_session()
        self.factory.latest("device_1").drop()

        await wait_until(lambda: len(self.factory.links) == 2 and session.connected)

        self.assertTrue(session.snapshot().connected)

    async def test_connect_failures_retry_with_bounded_backoff(self):
        self.factory.fail_connects("device_1", 4)
        session = self.make_session()
        session.start()

        await wait_until(lambda: session.connected, timeout=3)

        self.assertEqual(session.retry_delays, [0.01, 0.02, 0.04, 0.04])
        self.assertEqual(len(self.factory.links), 5)
        errors = [event for event in drain(self.events)
                  if event.type == Event.DEVICE_ERROR]
        self.assertEqual(len(errors), 4)
        self.assertEqual(errors[0].data, {"error": "connection refused"})

    async def test_connect_timeout_counts_as_failure(self):
        self.factory.configure("device_1", hang_connect=True)
        session = self.make_session(connect_timeout=0.05,
                                    retry_policy=RetryPolicy(initial=10, maximum=10))
        session.start()

        await wait_until(lambda: session.retry_delays == [10])

        self.assertIs(session.state, SessionState.DISCONNECTED)
        self.assertTrue(self.factory.latest("device_1").disconnected)

    async def test_retry_delay_resets_after_successful_connection(self):
        self.factory.fail_connects("device_1", 2)
        session = self.make_session()
        session.start()
        await wait_until(lambda: session.connected)

        self.factory.latest("device_1").drop()
        await wait_until(lambda: len(session.retry_delays) == 3)

        self.assertEqual(session.retry_delays, [0.01, 0.02, 0.01])

    async def test_poll_applies_snapshot(self):
        session = await self.connected_session(poll_interval=0.05, poll_timeout=0.02)
        link = self.factory.latest("device_1")

        link.snapshot["20"] = 2400
        await wait_until(lambda: session.snapshot().voltage == 240.0)

        self.assertGreaterEqual(link.gets, 1)

    async def test_poll_timeout_is_not_a_disconnect(self):
        self.factory.configure("device_1", initial=INITIAL, hang_get=True)
        session = await self.connected_session(poll_interval=0.03, poll_timeout=0.01)
        link = self.factory.latest("device_1")

        await wait_until(lambda: link.gets >= 3)

        self.assertIs(session.state, SessionState.CONNECTED)
        self.assertEqual(len(self.factory.links), 1)

    async def test_poll_timeout_must_not_exceed_interval(self):
        with self.assertRaises(ValueError):
            DeviceSession(make_config(), self.bus, poll_interval=1, poll_timeout=2)

    async def test_submit_while_in_flight_is_busy(self):
        session = await self.connected_session()
        link = self.factory.latest("device_1")
        link.set_gate.clear()

        first = asyncio.ensure_future(session.submit("1", True))
        await wait_until(lambda: link.sets)
        second = await session.submit("1", False)

        self.assertIs(second.status, Status.BUSY)
        link.set_gate.set()
        result = await first

        self.assertTrue(result.ok)
        self.assertEqual(link.sets, [("1", True)])
        self.assertIsNone(session.in_flight)

    async def test_submit_accepts_again_after_completion(self):
        session = await self.connected_session()

        self.assertTrue((await session.submit("1", True)).ok)
        self.assertTrue((await session.submit("1", False)).ok)
        self.assertEqual(self.factory.latest("device_1").sets,
                         [("1", True), ("1", False)])

    async def test_submit_when_not_connected(self):
        session = self.make_session(make_config(enabled=False))

        result = await session.submit("1", True)

        self.assertIs(result.status, Status.NOT_CONNECTED)
        self.assertEqual(self.factory.links, [])

    async def test_optimistic_update_is_published_before_confirmation(self):
        session = await self.connected_session()
        drain(self.events)
        link = self.factory.latest("device_1")
        link.set_gate.clear()

        pending = asyncio.ensure_future(
            session.submit("1", True, optimistic={"power_state": True}))
        await wait_until(lambda: link.sets)

        self.assertTrue(session.snapshot().power_state)
        self.assertTrue(self.events.get_nowait().data.power_state)
        link.set_gate.set()
        self.assertTrue((await pending).ok)

    async def test_failed_command_reverts_optimistic_update(self):
        self.factory.configure("device_1", initial=INITIAL, set_error="device refused")
        session = await self.connected_session()
        drain(self.events)

        result = await session.submit("1", True, optimistic={"power_state": True})

        self.assertIs(result.status, Status.LINK_ERROR)
        self.assertEqual(result.error, "device refused")
        self.assertFalse(session.snapshot().power_state)
        states = [event.data.power_state for event in drain(self.events)]
        self.assertEqual(states, [True, False])

    async def test_timed_out_command_reverts_optimistic_update(self):
        self.factory.configure("device_1", initial=INITIAL, hang_set=True)
        session = await self.connected_session(command_timeout=0.05)

        result = await session.submit("1", True, optimistic={"power_state": True})

        self.assertIs(result.status, Status.TIMEOUT)
        self.assertFalse(session.snapshot().power_state)
        self.assertIs(session.state, SessionState.CONNECTED)

    async def test_stop_cancels_pending_retry(self):
        self.factory.fail_connects("device_1", 100)
        session = self.make_session(retry_policy=RetryPolicy(initial=10, maximum=30))
        session.start()
        await wait_until(lambda: session.retry_delays)

        await session.stop()
        await asyncio.sleep(0.05)

        self.assertFalse(session.running)
        self.assertEqual(len(self.factory.links), 1)

    async def test_stop_cancels_connect_attempt(self):
        self.factory.configure("device_1", hang_connect=True)
        session = self.make_session(connect_timeout=30)
        session.start()
        await wait_until(lambda: self.factory.links and self.factory.latest("device_1").connects)

        await session.stop()

        self.assertTrue(self.factory.latest("device_1").disconnected)
        self.assertIs(session.state, SessionState.DISCONNECTED)

    async def test_stop_closes_link_and_logs_close_failure(self):
        self.factory.configure("device_1", initial=INITIAL, disconnect_error="already gone")
        session = await self.connected_session()

        with self.assertLogs('pytuyadash.session', level='WARNING') as logs:
            await session.stop()

        self.assertTrue(self.factory.latest("device_1").disconnected)
        self.assertIn("already gone", "\n".join(logs.output))
        self.assertFalse(session.snapshot().connected)
        self.assertAlmostEqual(session.snapshot().voltage, 230.1)

    async def test_stop_wins_over_a_connect_finishing_late(self):
        links = []

        def link_factory(config):
            links.append(LateConnectLink(config, initial=INITIAL))
            return links[-1]

        session = DeviceSession(make_config(), self.bus, link_factory=link_factory,
                                retry_policy=FAST_RETRY, connect_timeout=30)
        self.sessions.append(session)
        session.start()
        await wait_until(lambda: links and links[0].connects)

        await asyncio.wait_for(session.stop(), 2)

        self.assertFalse(session.running)
        self.assertTrue(links[0].disconnected)
        self.assertEqual(len(links), 1)
        self.assertIs(session.state, SessionState.DISCONNECTED)
        self.assertFalse(session.snapshot().connected)
        types = [event.type for event in drain(self.events)]
        self.assertNotIn(Event.DEVICE_CONNECT, types)

    async def test_stop_right_after_start(self):
        session = self.make_session()
        session.start()
        await asyncio.sleep(0)

        await asyncio.wait_for(session.stop(), 2)

        self.assertFalse(session.running)
        self.assertTrue(all(link.disconnected for link in self.factory.links))


if __name__ == '__main__':
    unittest.main()
