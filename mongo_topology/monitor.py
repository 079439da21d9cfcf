# Copyright 2014-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you
# may not use this file except in compliance with the License.  You
# may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied.  See the License for the specific language governing
# permissions and limitations under the License.

"""Keep one server's description fresh from a background thread.

A :class:`Monitor` alternates between two phases:

- *idle*: wait for the heartbeat interval to pass, or less when
  :meth:`Monitor.request_check` asks for an immediate check;
- *checking*: run hello (or read the next streamed reply) and hand the
  resulting :class:`~mongo_topology.server_description.ServerDescription`
  to the topology, whether the check succeeded, failed or was cancelled.

Servers that report a ``topologyVersion`` are checked with the streaming
protocol: the next check starts without idling and the server holds the
reply until something changes. Round trip times are then measured by an
:class:`_RttMonitor` on a second connection.
"""

from __future__ import annotations

import atexit
import logging
import threading
import time
import weakref
from typing import TYPE_CHECKING, Any, Optional

from mongo_topology import common, periodic_executor
from mongo_topology._csot import MovingMinimum
from mongo_topology.errors import NetworkTimeout, _OperationCancelled
from mongo_topology.hello import Hello
from mongo_topology.helpers import _check_command_response
from mongo_topology.lock import _create_lock
from mongo_topology.logger import _SDAM_LOGGER, _debug_log, _SDAMStatusMessage
from mongo_topology.periodic_executor import _shutdown_executors
from mongo_topology.read_preferences import MovingAverage
from mongo_topology.server_description import ServerDescription

if TYPE_CHECKING:
    from mongo_topology.pool import Connection, Pool, _CancellationContext
    from mongo_topology.settings import TopologySettings
    from mongo_topology.topology import Topology


def _sanitize(error: Exception) -> None:
    """Drop the traceback so a stored error does not keep frames alive."""
    error.__traceback__ = None
    error.__context__ = None
    error.__cause__ = None


def _elapsed(start: float) -> float:
    # Clamp: some platforms' monotonic clocks step backwards.
    return max(0.0, time.monotonic() - start)


class Monitor:
    def __init__(
        self,
        server_description: ServerDescription,
        topology: Topology,
        pool: Pool,
        topology_settings: TopologySettings,
    ):
        """Monitor one server on a background thread.

        Pass the server's initial ServerDescription, the Topology that
        receives every new description, a Pool exclusive to this Monitor,
        and TopologySettings.

        The Topology is weakly referenced: when it is freed the monitor
        stops.
        """
        self._server_description = server_description
        self._address = server_description.address
        self._pool = pool
        self._settings = topology_settings
        self._topology_id = topology._topology_id
        self._listeners = topology_settings.event_listeners
        self._publish = self._listeners is not None and self._listeners.enabled_for_server_heartbeat
        # "auto" streams too: the server opts in by returning a topologyVersion.
        self._stream = topology_settings.server_monitoring_mode != "poll"

        self._lock = _create_lock()
        self._thread: Optional[threading.Thread] = None
        self._stopped = True
        self._check_requested = False
        self._wake = threading.Event()
        self._check_started = 0.0
        self._cancel_context: Optional[_CancellationContext] = None

        self._rtt_monitor = _RttMonitor(
            topology_settings, topology._create_pool_for_monitor(self._address)
        )

        self_ref = weakref.ref(self)

        def on_topology_gc(dummy: Any = None) -> None:
            monitor = self_ref()
            if monitor is not None:
                monitor._stop()

        self._topology = weakref.proxy(topology, on_topology_gc)
        _MONITORS.add(self)

    # Lifecycle.

    def open(self) -> None:
        """Start monitoring, or restart after close() or a fork.

        Multiple calls have no effect.
        """
        with self._lock:
            self._stopped = False
            if self._thread is not None and self._thread.is_alive():
                return
            thread = threading.Thread(
                target=self._run, name="mongo_topology_server_monitor_thread", daemon=True
            )
            self._thread = thread
        try:
            thread.start()
        except RuntimeError:
            # The interpreter is shutting down.
            with self._lock:
                self._thread = None
                self._stopped = True

    def close(self) -> None:
        """Stop monitoring and discard the monitoring connections."""
        self._stop()
        self._rtt_monitor.close()
        # A connection still checked out by the monitor thread is closed
        # when it is checked back in.
        self._pool.reset()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the monitor thread to exit."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _stop(self) -> None:
        # Called from a weakref callback, so it must not take self._lock.
        self._stopped = True
        self._wake.set()
        self._rtt_monitor.stop()
        self.cancel_check()

    def request_check(self) -> None:
        """End the idle phase early, subject to MIN_HEARTBEAT_INTERVAL."""
        self._check_requested = True
        self._wake.set()

    def cancel_check(self) -> None:
        """Abandon the hello in flight, if any.

        The connection is not closed here: closing a socket under a reader
        can hang on some platforms. The check notices the cancellation
        when hello returns, and the next check opens a new connection.
        """
        context = self._cancel_context
        if context is not None:
            context.cancel()

    # The monitor thread.

    def _keep_running(self) -> bool:
        with self._lock:
            if self._stopped:
                self._thread = None
                return False
            return True

    def _run(self) -> None:
        try:
            while self._keep_running():
                try:
                    check_now = self._check_and_apply()
                except ReferenceError:
                    # The topology was freed.
                    self.close()
                    continue
                if not check_now:
                    self._idle()
        except BaseException:
            with self._lock:
                self._stopped = True
                self._thread = None
            raise
        finally:
            self._rtt_monitor.stop()

    def _idle(self) -> None:
        """Wait until the next check is due.

        A check is due when the heartbeat interval has passed, or when one
        was requested and MIN_HEARTBEAT_INTERVAL has passed since the last
        check started.
        """
        deadline = time.monotonic() + self._settings.heartbeat_frequency
        earliest = self._check_started + common.MIN_HEARTBEAT_INTERVAL
        while not self._stopped:
            now = time.monotonic()
            if now >= deadline or (self._check_requested and now >= earliest):
                break
            self._wake.wait((earliest if self._check_requested else deadline) - now)
            # Flags are re-read after clearing, so no request is lost.
            self._wake.clear()
        self._check_requested = False

    def _check_and_apply(self) -> bool:
        """Run one check and hand its result to the topology.

        Returns True if the next check should start without idling.
        """
        previous = self._server_description
        sd = self._check()
        self._server_description = sd
        if self._stopped:
            # Removed from the topology, or closed: publish nothing more.
            return False

        cancelled = isinstance(sd.error, _OperationCancelled)
        if cancelled:
            # The application thread that cancelled the check has already
            # reset the pool.
            self._topology.on_change(sd)
        else:
            self._topology.on_change(
                sd,
                reset_pool=sd.error is not None,
                interrupt_connections=isinstance(sd.error, NetworkTimeout),
            )

        if sd.error is not None:
            # Check a server that just went away once more right away.
            return previous.is_server_type_known
        if self._stream and sd.is_server_type_known and sd.topology_version:
            self._start_rtt_monitor()
            return True
        return False

    def _start_rtt_monitor(self) -> None:
        self._rtt_monitor.open()
        # close() may have run concurrently with open().
        if self._stopped:
            self._rtt_monitor.stop()

    # Checking.

    def _awaited(self) -> bool:
        sd = self._server_description
        # May be wrong if checkout replaces a dead idle connection.
        return bool(
            self._pool.conns and self._stream and sd.is_server_type_known and sd.topology_version
        )

    def _log(self, message: _SDAMStatusMessage, awaited: bool, **fields: Any) -> None:
        if _SDAM_LOGGER.isEnabledFor(logging.DEBUG):
            _debug_log(
                _SDAM_LOGGER,
                message=message,
                topologyId=self._topology_id,
                serverHost=self._address[0],
                serverPort=self._address[1],
                awaited=awaited,
                **fields,
            )

    def _check(self) -> ServerDescription:
        """Call hello once. Failures become an Unknown ServerDescription."""
        awaited = self._awaited()
        if self._publish:
            assert self._listeners is not None
            self._listeners.publish_server_heartbeat_started(self._address, awaited)

        start = time.monotonic()
        self._check_started = start
        conn_id = None
        try:
            if self._cancel_context is not None and self._cancel_context.cancelled:
                # The last check was cancelled on this connection.
                self._pool.reset()
            with self._pool.checkout() as conn:
                conn_id = conn.id
                self._cancel_context = conn.cancel_context
                self._log(
                    _SDAMStatusMessage.HEARTBEAT_START,
                    awaited,
                    driverConnectionId=conn.id,
                    serverConnectionId=conn.server_connection_id,
                )
                response, round_trip_time = self._call_hello(conn)
                if conn.cancel_context.cancelled:
                    raise _OperationCancelled("hello cancelled")
                server_connection_id = conn.server_connection_id
        except Exception as error:
            _sanitize(error)
            duration = _elapsed(start)
            if self._publish:
                assert self._listeners is not None
                self._listeners.publish_server_heartbeat_failed(
                    self._address, duration, error, awaited
                )
            self._log(
                _SDAMStatusMessage.HEARTBEAT_FAIL,
                awaited,
                durationMS=duration,
                failure=error,
                driverConnectionId=conn_id,
            )
            self._pool.reset()
            if not isinstance(error, _OperationCancelled):
                self._rtt_monitor.reset()
            return ServerDescription(self._address, error=error)

        if not response.awaitable:
            self._rtt_monitor.add_sample(round_trip_time)
        avg_rtt, min_rtt = self._rtt_monitor.get()
        if self._publish:
            assert self._listeners is not None
            self._listeners.publish_server_heartbeat_succeeded(
                self._address, round_trip_time, response, response.awaitable
            )
        self._log(
            _SDAMStatusMessage.HEARTBEAT_SUCCESS,
            awaited,
            durationMS=round_trip_time,
            reply=response.document,
            driverConnectionId=conn_id,
            serverConnectionId=server_connection_id,
        )
        return ServerDescription(self._address, response, avg_rtt, min_round_trip_time=min_rtt)

    def _call_hello(self, conn: Connection) -> tuple[Hello, float]:
        """Return the reply and its round trip time.

        Reads a streamed reply when one is pending, starts streaming when
        the server supports it, and polls otherwise. Can raise
        ConnectionFailure or OperationFailure.
        """
        topology_version = self._server_description.topology_version
        start = time.monotonic()
        if conn.more_to_come:
            reply, awaitable = conn.next_reply(), True
        elif self._stream and conn.performed_handshake and topology_version:
            reply = conn.hello(topology_version, self._settings.heartbeat_frequency)
            awaitable = True
        else:
            reply, awaitable = conn.hello(), False
        round_trip_time = _elapsed(start)
        _check_command_response(reply, reply.get("maxWireVersion"))
        return Hello(reply, awaitable=awaitable), round_trip_time


class _RttMonitor:
    """Ping a server on a dedicated connection to measure round trip times.

    Used while the monitor streams, since an awaited hello reply says
    nothing about latency.
    """

    def __init__(self, topology_settings: TopologySettings, pool: Pool):
        self._pool = pool
        self._lock = _create_lock()
        self._moving_average = MovingAverage()
        self._moving_min = MovingMinimum()

        def target() -> bool:
            rtt_monitor = self_ref()
            if rtt_monitor is None:
                return False
            rtt_monitor._run()
            return True

        self._executor = periodic_executor.PeriodicExecutor(
            interval=topology_settings.heartbeat_frequency,
            min_interval=common.MIN_HEARTBEAT_INTERVAL,
            target=target,
            name="mongo_topology_server_rtt_thread",
        )
        self_ref = weakref.ref(self, self._executor.close)

    def open(self) -> None:
        self._executor.open()

    def stop(self) -> None:
        """Stop pinging. Safe to call from a weakref callback."""
        self._executor.close()

    def close(self) -> None:
        self.stop()
        self._pool.reset()

    def add_sample(self, sample: float) -> None:
        with self._lock:
            self._moving_average.add_sample(sample)
            self._moving_min.add_sample(sample)

    def get(self) -> tuple[Optional[float], float]:
        """The average RTT, None until the first sample, and the minimum."""
        with self._lock:
            return self._moving_average.get(), self._moving_min.get()

    def reset(self) -> None:
        with self._lock:
            self._moving_average.reset()
            self._moving_min.reset()

    def _run(self) -> None:
        try:
            self.add_sample(self._ping())
        except Exception:
            self._pool.reset()

    def _ping(self) -> float:
        with self._pool.checkout() as conn:
            if self._executor._stopped:
                raise _OperationCancelled("round trip time monitor stopped")
            start = time.monotonic()
            conn.hello()
            return _elapsed(start)


# Every live Monitor, so that interpreter shutdown can cancel in-progress
# streaming checks before the executor threads are joined.
_MONITORS: weakref.WeakSet[Monitor] = weakref.WeakSet()


def _shutdown_monitors() -> None:
    monitors = list(_MONITORS)
    for monitor in monitors:
        monitor._stop()
    for monitor in monitors:
        monitor.join(1)


def _shutdown_resources() -> None:
    # Module globals may already be cleared at interpreter exit.
    shutdown: Any = _shutdown_monitors
    if shutdown:
        shutdown()
    shutdown = _shutdown_executors
    if shutdown:
        shutdown()


atexit.register(_shutdown_resources)
