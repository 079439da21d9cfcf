# Copyright 2015-present MongoDB, Inc.
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

"""Operation requests executed by :class:`~mongo_topology.retryable.RetryableExecutor`.

An operation pairs a callable that talks to a server with the capabilities
that decide how a server is chosen for it and whether it may be retried::

    def insert(session, server, conn, retryable):
        return conn.command({"insert": "coll", "documents": [doc]})

    operation = Operation("insert", insert, RETRYABLE_WRITE)
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, NamedTuple, Optional

from mongo_topology.common import _Address
from mongo_topology.read_preferences import ReadPreference, _ServerMode

if TYPE_CHECKING:
    from bson.int64 import Int64

    from mongo_topology.client_session import ClientSession
    from mongo_topology.pool import Connection
    from mongo_topology.server import Server

_OperationFunc = Callable[
    [Optional["ClientSession"], "Server", "Connection", bool], Any
]


class Capabilities(NamedTuple):
    """What an operation does and how it may be executed."""

    readable: bool = False
    """The operation reads; servers are chosen by its read preference."""
    writable: bool = False
    """The operation writes; only a writable server is chosen."""
    retryable: bool = False
    """The operation may be attempted once more after a transient error."""
    cursor_iterating: bool = False
    """The operation continues a cursor and is pinned to the cursor's server."""


READ = Capabilities(readable=True)
RETRYABLE_READ = Capabilities(readable=True, retryable=True)
WRITE = Capabilities(writable=True)
RETRYABLE_WRITE = Capabilities(writable=True, retryable=True)
GET_MORE = Capabilities(readable=True, retryable=True, cursor_iterating=True)


class Operation:
    """A single operation request.

    :param name: the command name, used in log messages and errors.
    :param func: called as ``func(session, server, conn, retryable)`` for
        each attempt. ``retryable`` is False once the operation can no
        longer be retried, for example when the selected server does not
        support retryable writes.
    :param capabilities: a :class:`Capabilities`.
    :param read_preference: the read preference for readable operations.
    :param address: the (host, port) a cursor-iterating operation is pinned
        to.
    :param timeout: seconds allowed for the whole operation, retries
        included, when no :func:`~mongo_topology.timeout` block is active.
    """

    __slots__ = (
        "name",
        "func",
        "capabilities",
        "read_preference",
        "address",
        "timeout",
        "operation_id",
        "txn_number",
    )

    def __init__(
        self,
        name: str,
        func: _OperationFunc,
        capabilities: Capabilities,
        read_preference: _ServerMode = ReadPreference.PRIMARY,
        address: Optional[_Address] = None,
        timeout: Optional[float] = None,
        operation_id: Optional[int] = None,
    ):
        if not isinstance(capabilities, Capabilities):
            raise TypeError(
                f"capabilities must be an instance of Capabilities, not {type(capabilities)}"
            )
        if capabilities.readable == capabilities.writable:
            raise ValueError(f"{name} must be exactly one of readable or writable")
        if capabilities.cursor_iterating:
            if not capabilities.readable:
                raise ValueError(f"{name}: cursor-iterating operations are reads")
            if address is None:
                raise ValueError(f"{name}: cursor-iterating operations require an address")
        if not isinstance(read_preference, _ServerMode):
            raise TypeError(f"{read_preference!r} is not a read preference.")
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be None or positive, not {timeout!r}")
        self.name = name
        self.func = func
        self.capabilities = capabilities
        self.read_preference = read_preference
        self.address = address
        self.timeout = timeout
        self.operation_id = operation_id
        # The transaction number a retryable write was sent with.
        self.txn_number: Optional[Int64] = None

    @property
    def is_read(self) -> bool:
        return self.capabilities.readable

    @property
    def is_write(self) -> bool:
        return self.capabilities.writable

    @property
    def retryable(self) -> bool:
        return self.capabilities.retryable

    @property
    def cursor_iterating(self) -> bool:
        return self.capabilities.cursor_iterating

    def __repr__(self) -> str:
        return "{}({!r}, {!r}, read_preference={!r}, address={!r})".format(
            self.__class__.__name__,
            self.name,
            self.capabilities,
            self.read_preference,
            self.address,
        )
