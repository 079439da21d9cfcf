# Copyright 2009-present MongoDB, Inc.
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

"""Execute operations against a selected server with at most one retry.

.. testsetup::

  from mongo_topology.operations import Operation, RETRYABLE_WRITE
  from mongo_topology.retryable import RetryableExecutor

A :class:`RetryableExecutor` selects a server for an
:class:`~mongo_topology.operations.Operation`, checks out a connection and
runs the operation. Errors are reported to the topology, so a network error
or a "not primary" error marks the server Unknown at once. A retryable
operation that fails with such an error is attempted exactly once more
against a freshly selected server::

    executor = RetryableExecutor(topology)
    with ClientSession() as session:
        result = executor.execute(Operation("insert", insert, RETRYABLE_WRITE), session)
"""

from __future__ import annotations

import contextlib
import logging
from types import TracebackType
from typing import TYPE_CHECKING, Any, Callable, Generator, Optional, Type

from mongo_topology import _csot
from mongo_topology.errors import (
    ConnectionFailure,
    MongoTopologyError,
    OperationFailure,
    ServerSelectionTimeoutError,
)
from mongo_topology.helpers import _RETRYABLE_WRITE_ERROR, _add_retryable_write_error
from mongo_topology.helpers_constants import _RETRYABLE_ERROR_CODES
from mongo_topology.logger import _RETRY_LOGGER, _debug_log, _RetryStatusMessage
from mongo_topology.server_selectors import writable_server_selector

if TYPE_CHECKING:
    from bson.objectid import ObjectId

    from mongo_topology.client_session import ClientSession
    from mongo_topology.operations import Operation
    from mongo_topology.pool import Connection
    from mongo_topology.server import Server
    from mongo_topology.server_selectors import Selection
    from mongo_topology.topology import Topology


class _ErrorHandler:
    """Report errors raised while executing an operation to the topology."""

    __slots__ = (
        "topology",
        "server_address",
        "session",
        "max_wire_version",
        "completed_handshake",
        "service_id",
        "handled",
    )

    def __init__(self, topology: Topology, server: Server, session: Optional[ClientSession]):
        self.topology = topology
        self.server_address = server.description.address
        self.session = session
        self.max_wire_version = server.description.max_wire_version
        self.completed_handshake = False
        self.service_id: Optional[ObjectId] = None
        self.handled = False

    def contribute_socket(self, conn: Connection, completed_handshake: bool = True) -> None:
        """Provide connection information to the error handler."""
        self.service_id = conn.service_id
        self.completed_handshake = completed_handshake

    def handle(
        self, exc_type: Optional[Type[BaseException]], exc_val: Optional[BaseException]
    ) -> None:
        if self.handled or exc_val is None:
            return
        self.handled = True
        if self.session and self.session.in_transaction:
            if isinstance(exc_val, ConnectionFailure):
                exc_val._add_error_label("TransientTransactionError")
        self.topology.handle_error(
            self.server_address,
            exc_val,
            self.max_wire_version,
            self.completed_handshake,
            self.service_id,
        )

    def __enter__(self) -> _ErrorHandler:
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        return self.handle(exc_type, exc_val)


class _OperationRetryable:
    """Run one operation, retrying it at most once."""

    def __init__(
        self,
        topology: Topology,
        operation: Operation,
        session: Optional[ClientSession] = None,
    ):
        self._last_error: Optional[Exception] = None
        self._retrying = False
        self._topology = topology
        self._operation = operation
        self._session = session
        self._is_read = operation.is_read
        self._retryable = operation.retryable and self._is_session_state_retryable()
        self._server_selector: Callable[[Selection], Selection] = (
            operation.read_preference if self._is_read else writable_server_selector  # type: ignore[assignment]
        )
        self._server: Optional[Server] = None
        self.attempts = 0

    def run(self) -> Any:
        """Run the operation's function and retry it once if allowed.

        :raises: the first error when selecting a server for the retry times
            out, otherwise the error of the last attempt.

        :return: the result of the operation's function.
        """
        # Increment the transaction number up front so a retry sends the same
        # txnNumber, even if server selection or checkout fails first.
        if self._retryable and not self._is_read:
            assert self._session is not None
            self._session._start_retryable_write()

        while True:
            self._check_last_error(check_csot=True)
            try:
                return self._read() if self._is_read else self._write()
            except ServerSelectionTimeoutError:
                # The caller may conclude a write was never attempted if the
                # retry's selection timeout is raised. Raise the original
                # error instead.
                self._check_last_error()
                raise
            except MongoTopologyError as exc:
                if self._retrying or not self._is_retryable_error(exc):
                    self._log(_RetryStatusMessage.NOT_RETRYING, exc)
                    raise
                self._retrying = True
                self._last_error = exc
                self._log(_RetryStatusMessage.RETRYING, exc)

    def _is_retryable_error(self, exc: MongoTopologyError) -> bool:
        if not self._retryable:
            return False
        if self._is_read:
            if isinstance(exc, ConnectionFailure):
                return True
            return isinstance(exc, OperationFailure) and exc.code in _RETRYABLE_ERROR_CODES
        return exc.has_error_label(_RETRYABLE_WRITE_ERROR)

    def _is_session_state_retryable(self) -> bool:
        """Check the session allows a retry.

        reads: no transaction in progress, if a session is given
        writes: a session without a transaction in progress
        """
        if self._is_read:
            return not (self._session and self._session.in_transaction)
        return bool(self._session and not self._session.in_transaction)

    def _check_last_error(self, check_csot: bool = False) -> None:
        """Raise the first attempt's error while retrying.

        :param check_csot: only raise when the operation's deadline has
            passed.
        """
        if self._retrying:
            remaining = _csot.remaining()
            if not check_csot or (remaining is not None and remaining <= 0):
                assert self._last_error is not None
                raise self._last_error

    def _get_server(self) -> Server:
        operation = self._operation
        if operation.address is not None:
            return self._topology.select_server_by_address(
                operation.address, operation.name, operation_id=operation.operation_id
            )
        return self._topology.select_server(
            self._server_selector, operation.name, operation_id=operation.operation_id
        )

    @contextlib.contextmanager
    def _checkout(self, server: Server) -> Generator[Connection, None]:
        with _ErrorHandler(self._topology, server, self._session) as err_handler:
            with server.checkout() as conn:
                err_handler.contribute_socket(conn)
                yield conn

    def _write(self) -> Any:
        try:
            self._server = self._get_server()
            if not (self._session and self._server.description.retryable_writes_supported):
                # This server cannot accept a retried write: raise the first
                # error when retrying.
                self._check_last_error()
                self._retryable = False
            with self._checkout(self._server) as conn:
                self.attempts += 1
                result = self._operation.func(self._session, self._server, conn, self._retryable)
                if self._retryable:
                    assert self._session is not None
                    self._operation.txn_number = self._session.txn_number
                return result
        except MongoTopologyError as exc:
            if not self._retryable or isinstance(exc, ServerSelectionTimeoutError):
                raise
            # Add the RetryableWriteError label, if applicable.
            _add_retryable_write_error(exc)
            raise

    def _read(self) -> Any:
        self._server = self._get_server()
        if not self._server.description.retryable_reads_supported:
            self._check_last_error()
            self._retryable = False
        with self._checkout(self._server) as conn:
            self.attempts += 1
            return self._operation.func(self._session, self._server, conn, self._retryable)

    def _log(self, message: _RetryStatusMessage, exc: MongoTopologyError) -> None:
        if _RETRY_LOGGER.isEnabledFor(logging.DEBUG):
            _debug_log(
                _RETRY_LOGGER,
                message=message,
                operation=self._operation.name,
                operationId=self._operation.operation_id,
                serverHost=self._server.description.address[0] if self._server else None,
                serverPort=self._server.description.address[1] if self._server else None,
                failure=exc,
            )


class RetryableExecutor:
    """Execute :class:`~mongo_topology.operations.Operation` requests
    against servers of a :class:`~mongo_topology.topology.Topology`.

    :param topology: the topology servers are selected from.
    """

    def __init__(self, topology: Topology):
        self._topology = topology

    @property
    def topology(self) -> Topology:
        return self._topology

    @_csot.apply
    def execute(self, operation: Operation, session: Optional[ClientSession] = None) -> Any:
        """Execute an operation, retrying it at most once.

        The operation's function is called with a connection checked out
        of the selected server. A retryable read is attempted again after
        a network error or a retryable server error. A retryable write is
        attempted again when the error carries the ``RetryableWriteError``
        label, using the same transaction number; retryable writes need a
        session that is not in a transaction.

        Cursor-iterating operations are pinned to ``operation.address``, so
        a retry repeats only the iteration against the same server.

        :param operation: an :class:`~mongo_topology.operations.Operation`.
        :param session: an optional
            :class:`~mongo_topology.client_session.ClientSession`.

        :return: the result of the operation's function.
        """
        if session is not None:
            session._check_ended()
        return _OperationRetryable(self._topology, operation, session).run()
