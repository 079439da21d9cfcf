# Copyright 2020-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Test the monitor module."""
from __future__ import annotations

import threading
import time
from test import client_knobs, unittest
from test.mocks import DummyMonitor
from test.utils import DEFAULT_HELLO, HeartbeatEventListener, MockPool, wait_until

from bson.int64 import Int64
from bson.objectid import ObjectId

from mongo_topology import monitoring
from mongo_topology._csot import MovingMinimum
from mongo_topology.errors import (
    AutoReconnect,
    NetworkTimeout,
    OperationFailure,
    _OperationCancelled,
)
from mongo_topology.hello import HelloCompat
from mongo_topology.monitor import Monitor, _RttMonitor
from mongo_topology.pool import PoolOptions
from mongo_topology.read_preferences import MovingAverage
from mongo_topology.server_type import SERVER_TYPE
from mongo_topology.settings import TopologySettings
from mongo_topology.topology import Topology

A = ("a", 27017)


def streaming_hello(counter=1, process_id=None):
    reply = dict(DEFAULT_HELLO)
    reply["topologyVersion"] = {"processId": process_id or PROCESS_ID, "counter": Int64(counter)}
    return reply


PROCESS_ID = ObjectId()


class CancellingPool(MockPool):
    """Cancels the monitor's check while a hello is in flight."""

    monitor = None
    cancel_next = False

    def next_reply(self):
        if self.cancel_next:
            self.cancel_next = False
            self.monitor.cancel_check()
        return super().next_reply()


class BlockingPool(MockPool):
    """Counts hello calls and lets a test wait for them."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.checked = threading.Event()

    def next_reply(self):
        try:
            return super().next_reply()
        finally:
            self.checked.set()


class MonitorTest(unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.client_knobs = client_knobs(heartbeat_frequency=999999)
        self.client_knobs.enable()
        self.addCleanup(self.client_knobs.disable)

    def create_monitor(self, replies=(), pool_class=MockPool, **kwargs):
        """A Monitor driven by hand, checking a topology with one seed."""
        settings = TopologySettings(
            [A], pool_class=MockPool, monitor_class=DummyMonitor, **kwargs
        )
        topology = Topology(settings)
        topology.open()
        self.addCleanup(topology.close)

        sd = topology.description.server_descriptions()[A]
        pool = pool_class(A, PoolOptions(), is_sdam=True, replies=list(replies))
        monitor = Monitor(sd, topology, pool, settings)
        # Checks are driven by the test, not by the monitor thread.
        monitor._stopped = False
        self.addCleanup(monitor.close)
        return topology, monitor, pool

    def server_type(self, topology):
        return topology.description.server_descriptions()[A].server_type


class TestPolling(MonitorTest):
    def test_poll_mode_never_streams(self):
        topology, monitor, pool = self.create_monitor(
            [streaming_hello(1), streaming_hello(2)], server_monitoring_mode="poll"
        )
        self.assertFalse(monitor._check_and_apply())
        self.assertFalse(monitor._check_and_apply())

        self.assertEqual([(1, None, None), (1, None, None)], pool.hello_calls)
        self.assertEqual(SERVER_TYPE.Standalone, self.server_type(topology))
        self.assertIsNone(monitor._rtt_monitor._executor._thread)

    def test_server_without_topology_version_is_polled(self):
        topology, monitor, pool = self.create_monitor()
        self.assertFalse(monitor._check_and_apply())
        self.assertFalse(monitor._check_and_apply())

        self.assertEqual([(1, None, None), (1, None, None)], pool.hello_calls)
        self.assertIsNone(monitor._rtt_monitor._executor._thread)

    def test_round_trip_time_is_recorded(self):
        topology, monitor, pool = self.create_monitor()
        monitor._check_and_apply()

        sd = topology.description.server_descriptions()[A]
        self.assertIsNotNone(sd.round_trip_time)
        self.assertGreaterEqual(sd.round_trip_time, 0)


class TestStreaming(MonitorTest):
    def test_streaming_protocol(self):
        topology, monitor, pool = self.create_monitor(
            [streaming_hello(1), streaming_hello(2), streaming_hello(3)]
        )
        # Handshake. The server supports streaming: check again without
        # idling, and measure round trips on a separate connection.
        self.assertTrue(monitor._check_and_apply())
        self.assertEqual([(1, None, None)], pool.hello_calls)
        self.assertEqual(SERVER_TYPE.Standalone, self.server_type(topology))
        self.assertIsNotNone(monitor._rtt_monitor._executor._thread)

        # Awaitable hello.
        self.assertTrue(monitor._check_and_apply())
        self.assertEqual((1, streaming_hello(1)["topologyVersion"], 999999), pool.hello_calls[1])

        # Streamed reply on the same connection.
        self.assertTrue(monitor._check_and_apply())
        self.assertEqual((1, "moreToCome", None), pool.hello_calls[2])
        sd = topology.description.server_descriptions()[A]
        self.assertEqual(Int64(3), sd.topology_version["counter"])

    def test_stream_failure_resets_connection(self):
        topology, monitor, pool = self.create_monitor(
            [streaming_hello(1), AutoReconnect("stream closed"), streaming_hello(2)]
        )
        monitor._check_and_apply()
        monitor._check_and_apply()
        self.assertEqual(SERVER_TYPE.Unknown, self.server_type(topology))

        # A new connection performs a new handshake.
        monitor._check_and_apply()
        self.assertEqual((2, None, None), pool.hello_calls[2])
        self.assertEqual(SERVER_TYPE.Standalone, self.server_type(topology))


class TestCheckFailure(MonitorTest):
    def test_failure_marks_server_unknown(self):
        topology, monitor, pool = self.create_monitor([DEFAULT_HELLO, AutoReconnect("boom")])
        monitor._check_and_apply()
        server = topology.get_server_by_address(A)
        self.assertEqual(SERVER_TYPE.Standalone, self.server_type(topology))
        self.assertEqual(0, server.pool.reset_count)

        # A server that was known is checked again right away.
        self.assertTrue(monitor._check_and_apply())
        sd = topology.description.server_descriptions()[A]
        self.assertEqual(SERVER_TYPE.Unknown, sd.server_type)
        self.assertIsInstance(sd.error, AutoReconnect)
        self.assertIsNone(sd.round_trip_time)
        # Both the application pool and the monitoring connection are reset.
        self.assertEqual(1, server.pool.reset_count)
        self.assertGreaterEqual(pool.reset_count, 1)
        self.assertTrue(pool.conns == [] or all(c.closed for c in pool.conns))

    def test_failure_of_unknown_server_waits(self):
        topology, monitor, pool = self.create_monitor([AutoReconnect("boom")])
        self.assertFalse(monitor._check_and_apply())
        self.assertEqual(SERVER_TYPE.Unknown, self.server_type(topology))

    def test_error_reply(self):
        topology, monitor, pool = self.create_monitor(
            [{"ok": 0, "errmsg": "unauthorized", "code": 13}]
        )
        monitor._check_and_apply()
        sd = topology.description.server_descriptions()[A]
        self.assertEqual(SERVER_TYPE.Unknown, sd.server_type)
        self.assertIsInstance(sd.error, OperationFailure)

    def test_network_timeout_interrupts_connections(self):
        interrupted = []

        class RecordingPool(MockPool):
            def reset(self, service_id=None, interrupt_connections=False):
                interrupted.append(interrupt_connections)
                super().reset(service_id, interrupt_connections)

        topology, monitor, pool = self.create_monitor(
            [DEFAULT_HELLO, NetworkTimeout("timed out")]
        )
        server = topology.get_server_by_address(A)
        server._pool = RecordingPool(A, PoolOptions())
        monitor._check_and_apply()
        monitor._check_and_apply()
        self.assertEqual([True], interrupted)

    def test_cancelled_check_publishes_unknown(self):
        topology, monitor, pool = self.create_monitor(pool_class=CancellingPool)
        pool.monitor = monitor
        monitor._check_and_apply()
        self.assertEqual(SERVER_TYPE.Standalone, self.server_type(topology))
        server = topology.get_server_by_address(A)

        # An application error cancels the in-progress check.
        pool.cancel_next = True
        self.assertTrue(monitor._check_and_apply())
        sd = topology.description.server_descriptions()[A]
        self.assertEqual(SERVER_TYPE.Unknown, sd.server_type)
        self.assertIsInstance(sd.error, _OperationCancelled)
        # The application thread resets the pool itself.
        self.assertEqual(0, server.pool.reset_count)

        # The next check uses a new connection.
        monitor._check_and_apply()
        self.assertEqual(2, pool.hello_calls[-1][0])
        self.assertEqual(SERVER_TYPE.Standalone, self.server_type(topology))

    def test_cancel_check_without_check_in_progress(self):
        topology, monitor, pool = self.create_monitor()
        monitor.cancel_check()
        monitor._check_and_apply()
        self.assertEqual(SERVER_TYPE.Standalone, self.server_type(topology))

    def test_stopped_monitor_publishes_nothing(self):
        topology, monitor, pool = self.create_monitor()
        monitor.close()
        self.assertFalse(monitor._check_and_apply())
        self.assertEqual(SERVER_TYPE.Unknown, self.server_type(topology))


class TestIdle(MonitorTest):
    def test_request_check_ends_idle(self):
        topology, monitor, pool = self.create_monitor()
        monitor._check_started = time.monotonic() - 1
        monitor.request_check()
        start = time.monotonic()
        monitor._idle()
        self.assertLess(time.monotonic() - start, 1)
        self.assertFalse(monitor._check_requested)

    def test_requests_respect_min_heartbeat_interval(self):
        topology, monitor, pool = self.create_monitor()
        with client_knobs(min_heartbeat_interval=0.2):
            monitor._check_started = time.monotonic()
            monitor.request_check()
            start = time.monotonic()
            monitor._idle()
            self.assertGreaterEqual(time.monotonic() - start, 0.15)

    def test_heartbeat_interval_ends_idle(self):
        topology, monitor, pool = self.create_monitor(heartbeat_frequency=0.5)
        start = time.monotonic()
        monitor._idle()
        self.assertGreaterEqual(time.monotonic() - start, 0.45)

    def test_close_ends_idle(self):
        topology, monitor, pool = self.create_monitor()
        threading.Timer(0.1, monitor.close).start()
        start = time.monotonic()
        monitor._idle()
        self.assertLess(time.monotonic() - start, 5)


class TestHeartbeatEvents(MonitorTest):
    def test_succeeded(self):
        listener = HeartbeatEventListener()
        topology, monitor, pool = self.create_monitor(event_listeners=[listener])
        monitor._check_and_apply()

        self.assertEqual(2, len(listener.events))
        started, succeeded = listener.events
        self.assertIsInstance(started, monitoring.ServerHeartbeatStartedEvent)
        self.assertIsInstance(succeeded, monitoring.ServerHeartbeatSucceededEvent)
        self.assertEqual(A, succeeded.connection_id)
        self.assertFalse(succeeded.awaited)
        self.assertTrue(succeeded.reply.document[HelloCompat.PRIMARY])
        self.assertGreaterEqual(succeeded.duration, 0)

    def test_failed(self):
        listener = HeartbeatEventListener()
        error = AutoReconnect("boom")
        topology, monitor, pool = self.create_monitor([error], event_listeners=[listener])
        monitor._check_and_apply()

        started, failed = listener.events
        self.assertIsInstance(started, monitoring.ServerHeartbeatStartedEvent)
        self.assertIsInstance(failed, monitoring.ServerHeartbeatFailedEvent)
        self.assertIs(error, failed.reply)

    def test_awaited(self):
        listener = HeartbeatEventListener()
        topology, monitor, pool = self.create_monitor(
            [streaming_hello(1), streaming_hello(2)], event_listeners=[listener]
        )
        monitor._check_and_apply()
        monitor._check_and_apply()

        succeeded = listener.matching(
            lambda e: isinstance(e, monitoring.ServerHeartbeatSucceededEvent)
        )
        self.assertEqual([False, True], [e.awaited for e in succeeded])


class TestRttMonitor(MonitorTest):
    def test_ping(self):
        topology, monitor, pool = self.create_monitor()
        rtt_pool = MockPool(A, PoolOptions(), is_sdam=True)
        rtt_monitor = _RttMonitor(topology._settings, rtt_pool)
        self.addCleanup(rtt_monitor.close)

        self.assertEqual((None, 0.0), rtt_monitor.get())
        rtt_monitor._run()
        rtt_monitor._run()
        average, minimum = rtt_monitor.get()
        self.assertIsNotNone(average)
        self.assertGreaterEqual(minimum, 0)
        self.assertEqual(2, len(rtt_pool.hello_calls))

        rtt_monitor.reset()
        self.assertEqual((None, 0.0), rtt_monitor.get())

    def test_ping_failure_resets_pool(self):
        topology, monitor, pool = self.create_monitor()
        rtt_pool = MockPool(A, PoolOptions(), is_sdam=True, replies=[AutoReconnect("boom")])
        rtt_monitor = _RttMonitor(topology._settings, rtt_pool)
        self.addCleanup(rtt_monitor.close)

        rtt_monitor._run()
        self.assertEqual(1, rtt_pool.reset_count)
        self.assertEqual((None, 0.0), rtt_monitor.get())

    def test_stopped_ping_is_not_recorded(self):
        topology, monitor, pool = self.create_monitor()
        rtt_pool = MockPool(A, PoolOptions(), is_sdam=True)
        rtt_monitor = _RttMonitor(topology._settings, rtt_pool)
        rtt_monitor.close()

        rtt_monitor._run()
        self.assertEqual([], rtt_pool.hello_calls)
        self.assertEqual((None, 0.0), rtt_monitor.get())


class TestMovingStatistics(unittest.TestCase):
    def test_moving_average(self):
        avg = MovingAverage()
        self.assertIsNone(avg.get())
        avg.add_sample(10)
        self.assertEqual(10, avg.get())
        avg.add_sample(20)
        self.assertAlmostEqual(12, avg.get())
        # Negative samples are ignored.
        avg.add_sample(-1)
        self.assertAlmostEqual(12, avg.get())
        avg.reset()
        self.assertIsNone(avg.get())

    def test_moving_minimum(self):
        minimum = MovingMinimum()
        self.assertEqual(0.0, minimum.get())
        minimum.add_sample(5)
        # Not enough samples yet.
        self.assertEqual(0.0, minimum.get())
        minimum.add_sample(3)
        self.assertEqual(3, minimum.get())

        # Only the last 10 samples count.
        for _ in range(10):
            minimum.add_sample(7)
        self.assertEqual(7, minimum.get())

        with self.assertRaises(ValueError):
            minimum.add_sample(-1)

        minimum.reset()
        self.assertEqual(0.0, minimum.get())


class TestMonitorThread(MonitorTest):
    def test_monitor_discovers_server(self):
        settings = TopologySettings([A], pool_class=MockPool)
        topology = Topology(settings)
        self.addCleanup(topology.close)

        server = topology.select_server_by_address(A, "test", 10)
        self.assertEqual(SERVER_TYPE.Standalone, server.description.server_type)
        monitor = server._monitor
        self.assertIsInstance(monitor, Monitor)
        self.assertEqual("mongo_topology_server_monitor_thread", monitor._thread.name)

    def test_request_check_wakes_thread(self):
        settings = TopologySettings([A], pool_class=MockPool, monitor_class=DummyMonitor)
        topology = Topology(settings)
        topology.open()
        self.addCleanup(topology.close)

        sd = topology.description.server_descriptions()[A]
        pool = BlockingPool(A, PoolOptions(), is_sdam=True)
        monitor = Monitor(sd, topology, pool, settings)
        self.addCleanup(monitor.close)
        monitor.open()
        self.assertTrue(pool.checked.wait(5))
        self.assertEqual(1, len(pool.hello_calls))

        # The heartbeat interval is huge: only a request starts a new check.
        pool.checked.clear()
        monitor.request_check()
        self.assertTrue(pool.checked.wait(5))
        self.assertEqual(2, len(pool.hello_calls))

    def test_close_stops_thread(self):
        settings = TopologySettings([A], pool_class=MockPool, monitor_class=DummyMonitor)
        topology = Topology(settings)
        topology.open()
        self.addCleanup(topology.close)

        sd = topology.description.server_descriptions()[A]
        pool = MockPool(A, PoolOptions(), is_sdam=True)
        monitor = Monitor(sd, topology, pool, settings)
        monitor.open()
        wait_until(lambda: pool.hello_calls, "run the first check")
        thread = monitor._thread

        monitor.close()
        thread.join(5)
        self.assertFalse(thread.is_alive())
        calls = len(pool.hello_calls)
        monitor.request_check()
        time.sleep(0.1)
        self.assertEqual(calls, len(pool.hello_calls))


if __name__ == "__main__":
    unittest.main()
