# Copyright 2011-present MongoDB, Inc.
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

"""The connection pool contract used by servers and monitors.

Connection establishment, authentication, and wire encoding are owned by a
pool implementation supplied through
:class:`~mongo_topology.settings.TopologySettings`. This module defines the
interface the cluster layer relies on and the options it hands to pools.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ContextManager, Mapping, Optional

from mongo_topology import common
from mongo_topology.common import _Address

if TYPE_CHECKING:
    from bson.objectid import ObjectId

    from mongo_topology.monitoring import _EventListeners


class PoolOptions:
    """Read only connection pool options for a Topology.

    Should not be instantiated directly by application developers. Access
    a topology's pool options via
    :attr:`~mongo_topology.settings.TopologySettings.pool_options`.
    """

    __slots__ = (
        "__max_pool_size",
        "__connect_timeout",
        "__socket_timeout",
        "__event_listeners",
        "__appname",
        "__load_balanced",
    )

    def __init__(
        self,
        max_pool_size: int = 100,
        connect_timeout: Optional[float] = common.CONNECT_TIMEOUT,
        socket_timeout: Optional[float] = None,
        event_listeners: Optional[_EventListeners] = None,
        appname: Optional[str] = None,
        load_balanced: Optional[bool] = None,
    ):
        self.__max_pool_size = max_pool_size
        self.__connect_timeout = connect_timeout
        self.__socket_timeout = socket_timeout
        self.__event_listeners = event_listeners
        self.__appname = appname
        self.__load_balanced = load_balanced

    @property
    def non_default_options(self) -> dict[str, Any]:
        """The non-default options this pool was created with.

        Added for CMAP's :class:`PoolCreatedEvent`.
        """
        opts = {}
        if self.__max_pool_size != 100:
            opts["maxPoolSize"] = self.__max_pool_size
        if self.__connect_timeout != common.CONNECT_TIMEOUT:
            opts["connectTimeoutMS"] = self.__connect_timeout * 1000  # type: ignore[operator]
        return opts

    @property
    def max_pool_size(self) -> int:
        """The maximum allowable number of concurrent connections to each
        connected server.
        """
        return self.__max_pool_size

    @property
    def connect_timeout(self) -> Optional[float]:
        """How long a connection can take to be opened before timing out."""
        return self.__connect_timeout

    @property
    def socket_timeout(self) -> Optional[float]:
        """How long a send or receive on a socket can take before timing out."""
        return self.__socket_timeout

    @property
    def _event_listeners(self) -> Optional[_EventListeners]:
        """An instance of mongo_topology.monitoring._EventListeners."""
        return self.__event_listeners

    @property
    def appname(self) -> Optional[str]:
        """The application name, for sending with hello in server handshake."""
        return self.__appname

    @property
    def load_balanced(self) -> Optional[bool]:
        """True if this Pool is configured in load balanced mode."""
        return self.__load_balanced


class _CancellationContext:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        """Cancel this context."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        """Was cancel called?"""
        return self._cancelled


class Connection(ABC):
    """A connection checked out of a :class:`Pool`.

    :param address: the server's (host, port)
    :param id: the id of this connection in its pool
    """

    def __init__(self, address: _Address, id: int):
        self.address = address
        self.id = id
        self.server_connection_id: Optional[int] = None
        # Set by load balanced deployments: the backend this connection reaches.
        self.service_id: Optional[ObjectId] = None
        self.cancel_context = _CancellationContext()
        # True while the server has more streamed hello replies to send.
        self.more_to_come = False
        self.performed_handshake = False
        self.closed = False

    @abstractmethod
    def hello(
        self,
        topology_version: Optional[Mapping[str, Any]] = None,
        heartbeat_frequency: Optional[float] = None,
    ) -> Mapping[str, Any]:
        """Run hello and return the decoded reply document.

        When ``topology_version`` and ``heartbeat_frequency`` are given the
        command is sent as an awaitable hello: the server holds the reply
        until its topology changes or ``heartbeat_frequency`` elapses, and
        keeps streaming replies afterwards (``more_to_come`` is set).

        Raises :exc:`~mongo_topology.errors.ConnectionFailure` on network
        errors.
        """
        ...

    @abstractmethod
    def next_reply(self) -> Mapping[str, Any]:
        """Read the next streamed hello reply on this connection."""
        ...

    @abstractmethod
    def close_conn(self, reason: Optional[str]) -> None:
        """Close this connection with a reason."""
        ...

    def __repr__(self) -> str:
        return "Connection({}){} at {}".format(
            repr(self.address),
            self.closed and " CLOSED" or "",
            id(self),
        )


class Pool(ABC):
    """A pool of connections to one server.

    Subclasses own connection establishment. Every Server and Monitor gets
    its own instance, built by ``TopologySettings.pool_class``.

    :param address: a (hostname, port) tuple
    :param options: a PoolOptions instance
    :param is_sdam: whether to call hello for each new Connection
    :param topology_id: the id of the Topology that owns this pool
    """

    def __init__(
        self,
        address: _Address,
        options: PoolOptions,
        is_sdam: bool = False,
        topology_id: Optional[ObjectId] = None,
    ):
        self.address = address
        self.opts = options
        self.is_sdam = is_sdam
        self._topology_id = topology_id
        # Idle connections, most recently used last.
        self.conns: list[Connection] = []

    @abstractmethod
    def checkout(self) -> ContextManager[Connection]:
        """Get a connection from the pool. Use with a "with" statement.

        Returns a :class:`Connection` object wrapping a connected socket.

        This method should always be used in a with-statement::

            with pool.checkout() as connection:
                connection.hello()

        Can raise ConnectionFailure or OperationFailure.
        """
        ...

    @abstractmethod
    def ready(self) -> None:
        """Allow checkouts again after a reset."""
        ...

    @abstractmethod
    def reset(self, service_id: Optional[ObjectId] = None, interrupt_connections: bool = False) -> None:
        """Clear the pool. Idle and checked out connections are discarded.

        With ``interrupt_connections`` in-use connections are closed as
        well, interrupting any operation running on them.
        """
        ...

    def update_is_writable(self, is_writable: Optional[bool]) -> None:
        """Update the is_writable attribute of all connections."""

    @abstractmethod
    def close(self) -> None:
        ...
