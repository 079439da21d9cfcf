# Copyright 2017 MongoDB, Inc.
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

"""Logical sessions for retryable operations.

A :class:`ClientSession` carries the logical session id sent with every
command of the session and the transaction number that identifies a
retryable write. The number is incremented once per write, before the
first attempt, so that a retry of the same write reuses it and the server
can recognize the duplicate::

    session = ClientSession()
    executor.execute(insert_operation, session)
    session.txn_number  # 1, for both attempts if the insert was retried

Sessions are not thread safe. Use a session from one thread at a time.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Mapping, Optional

from bson.binary import Binary
from bson.int64 import Int64

from mongo_topology.errors import InvalidOperation


class _ServerSession:
    def __init__(self) -> None:
        # Ensure id is type 4, regardless of CodecOptions.uuid_representation.
        self.session_id = {"id": Binary(uuid.uuid4().bytes, 4)}
        self.last_use = time.monotonic()
        self._transaction_id = 0

    def timed_out(self, session_timeout_minutes: Optional[int]) -> bool:
        if session_timeout_minutes is None:
            return False

        idle_seconds = time.monotonic() - self.last_use

        # Timed out if we have less than a minute to live.
        return idle_seconds > (session_timeout_minutes - 1) * 60

    @property
    def transaction_id(self) -> Int64:
        """Positive 64-bit integer."""
        return Int64(self._transaction_id)

    def inc_transaction_id(self) -> None:
        self._transaction_id += 1


class ClientSession:
    """A logical session, identified by its :attr:`session_id`.

    :param implicit: True when the session was created on behalf of a single
        operation rather than by the application.
    """

    def __init__(self, implicit: bool = False) -> None:
        self._server_session: Optional[_ServerSession] = _ServerSession()
        self._implicit = implicit
        self._in_transaction = False

    def end_session(self) -> None:
        """Finish this session. Ending an ended session has no effect."""
        self._server_session = None
        self._in_transaction = False

    def _check_ended(self) -> None:
        if self._server_session is None:
            raise InvalidOperation("Cannot use ended session")

    def __enter__(self) -> ClientSession:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.end_session()

    @property
    def has_ended(self) -> bool:
        """True if this session is finished."""
        return self._server_session is None

    @property
    def session_id(self) -> Mapping[str, Any]:
        """A BSON document, the opaque server session identifier."""
        self._check_ended()
        assert self._server_session is not None
        return self._server_session.session_id

    @property
    def txn_number(self) -> Int64:
        """The number of the most recent retryable write or transaction."""
        self._check_ended()
        assert self._server_session is not None
        return self._server_session.transaction_id

    @property
    def in_transaction(self) -> bool:
        """True if this session has an active multi-statement transaction."""
        return self._in_transaction

    def start_transaction(self) -> None:
        """Mark the start of a multi-statement transaction.

        Operations inside a transaction are never retried individually.
        Committing or aborting is the command layer's job; call
        :meth:`end_transaction` once it is done.
        """
        self._check_ended()
        if self._in_transaction:
            raise InvalidOperation("Transaction already in progress")
        assert self._server_session is not None
        self._server_session.inc_transaction_id()
        self._in_transaction = True

    def end_transaction(self) -> None:
        """Mark the end of the current transaction."""
        self._check_ended()
        if not self._in_transaction:
            raise InvalidOperation("No transaction started")
        self._in_transaction = False

    def _start_retryable_write(self) -> None:
        self._check_ended()
        assert self._server_session is not None
        self._server_session.inc_transaction_id()

    def _apply_to(self, command: dict[str, Any], is_retryable: bool) -> None:
        """Add this session's fields to a command document."""
        self._check_ended()
        assert self._server_session is not None
        self._server_session.last_use = time.monotonic()
        command["lsid"] = self._server_session.session_id
        if is_retryable:
            command["txnNumber"] = self._server_session.transaction_id
        elif self._in_transaction:
            command["txnNumber"] = self._server_session.transaction_id
            command["autocommit"] = False

    def __repr__(self) -> str:
        state = "ended" if self.has_ended else "active"
        return f"<{self.__class__.__name__} {state} in_transaction={self._in_transaction}>"
