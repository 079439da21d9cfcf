# Copyright 2012-present MongoDB, Inc.
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

"""Utilities for testing mongo_topology."""
from __future__ import annotations

import contextlib
import time
from collections import deque

from mongo_topology import monitoring
from mongo_topology.hello import HelloCompat
from mongo_topology.lock import _create_lock
from mongo_topology.pool import Connection, Pool

# The reply a MockPool serves once its scripted replies run out: a standalone.
DEFAULT_HELLO = {"ok": 1, HelloCompat.PRIMARY: True, "maxWireVersion": 17}


def wait_until(predicate, success_description, timeout=10):
    """Wait up to 10 seconds (by default) for predicate to be true.

    E.g.:

        wait_until(lambda: topology.get_primary() == ('a', 27017),
                   'discover the primary')

    If the lambda-expression isn't true after 10 seconds, we raise
    AssertionError("Didn't ever discover the primary").

    Returns the predicate's first true value.
    """
    start = time.time()
    interval = min(float(timeout) / 100, 0.1)
    while True:
        retval = predicate()
        if retval:
            return retval

        if time.time() - start > timeout:
            raise AssertionError("Didn't ever %s" % success_description)

        time.sleep(interval)


class MockConnection(Connection):
    """A connection that answers hello with its pool's scripted replies."""

    def __init__(self, pool, id):
        super().__init__(pool.address, id)
        self.pool = pool
        self.server_connection_id = id
        self.close_reason = None

    def hello(self, topology_version=None, heartbeat_frequency=None):
        self.pool.hello_calls.append((self.id, topology_version, heartbeat_frequency))
        reply = self.pool.next_reply()
        self.performed_handshake = True
        if topology_version is not None:
            # An awaitable hello keeps streaming replies.
            self.more_to_come = True
        return reply

    def next_reply(self):
        self.pool.hello_calls.append((self.id, "moreToCome", None))
        return self.pool.next_reply()

    def close_conn(self, reason):
        self.closed = True
        self.more_to_come = False
        self.close_reason = reason


class MockPool(Pool):
    """A pool of MockConnections.

    :param replies: hello replies served in order, documents or exceptions
        to raise. DEFAULT_HELLO is served once they run out.
    """

    def __init__(self, address, options, is_sdam=False, topology_id=None, replies=None):
        super().__init__(address, options, is_sdam=is_sdam, topology_id=topology_id)
        self._lock = _create_lock()
        self.replies = deque(replies or [])
        self.default_reply = DEFAULT_HELLO
        self.hello_calls = []
        self.checkout_count = 0
        self.reset_count = 0
        self.ready_count = 0
        self.writable = None
        self.closed = False
        self._next_id = 0

    def next_reply(self):
        with self._lock:
            reply = self.replies.popleft() if self.replies else self.default_reply
        if isinstance(reply, BaseException):
            raise reply
        return reply

    @contextlib.contextmanager
    def checkout(self):
        with self._lock:
            self.checkout_count += 1
            if self.conns:
                conn = self.conns.pop()
            else:
                self._next_id += 1
                conn = MockConnection(self, self._next_id)
        try:
            yield conn
        finally:
            if not conn.closed:
                with self._lock:
                    self.conns.append(conn)

    def ready(self):
        self.ready_count += 1

    def reset(self, service_id=None, interrupt_connections=False):
        with self._lock:
            self.reset_count += 1
            conns, self.conns = self.conns, []
        for conn in conns:
            conn.close_conn("stale")

    def update_is_writable(self, is_writable):
        self.writable = is_writable

    def close(self):
        self.closed = True
        self.reset()


class _ServerEventListener:
    """Listens to all events."""

    def __init__(self):
        self.results = []

    def opened(self, event):
        self.results.append(event)

    def description_changed(self, event):
        self.results.append(event)

    def closed(self, event):
        self.results.append(event)

    def matching(self, matcher):
        """Return the matching events."""
        results = self.results[:]
        return [event for event in results if matcher(event)]

    def reset(self):
        self.results = []


class ServerEventListener(_ServerEventListener, monitoring.ServerListener):
    """Listens to Server events."""


class ServerAndTopologyEventListener(  # type: ignore[misc]
    ServerEventListener, monitoring.TopologyListener
):
    """Listens to Server and Topology events."""


class HeartbeatEventListener(monitoring.ServerHeartbeatListener):
    """Listens to only server heartbeat events."""

    def __init__(self):
        self.events = []

    def started(self, event):
        self.events.append(event)

    def succeeded(self, event):
        self.events.append(event)

    def failed(self, event):
        self.events.append(event)

    def matching(self, matcher):
        return [event for event in self.events[:] if matcher(event)]
