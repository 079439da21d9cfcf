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

"""Bits and pieces used by the cluster layer that don't really fit elsewhere."""
from __future__ import annotations

from typing import Any, Container, Mapping, Optional

from mongo_topology.errors import (
    ConnectionFailure,
    MongoTopologyError,
    NotPrimaryError,
    OperationFailure,
)
from mongo_topology.helpers_constants import (
    _NOT_PRIMARY_CODES,
    _RETRYABLE_ERROR_CODES,
)

_RETRYABLE_WRITE_ERROR = "RetryableWriteError"


def _check_command_response(
    response: Mapping[str, Any],
    max_wire_version: Optional[int],
    allowable_errors: Optional[Container[int | str]] = None,
) -> None:
    """Check the response to a command for errors."""
    if "ok" not in response:
        # Server didn't recognize our message as a command.
        raise OperationFailure(
            response.get("$err"),  # type: ignore[arg-type]
            response.get("code"),
            response,
            max_wire_version,
        )

    if response["ok"]:
        return

    details = response
    # Mongos returns the error details in a 'raw' object
    # for some errors.
    if "raw" in response:
        for shard in response["raw"].values():
            # Grab the first non-empty raw error from a shard.
            if shard.get("errmsg") and not shard.get("ok"):
                details = shard
                break

    errmsg = details["errmsg"]
    code = details.get("code")

    # For allowable errors, only check for error messages when the code is not
    # included.
    if allowable_errors:
        if code is not None:
            if code in allowable_errors:
                return
        elif errmsg in allowable_errors:
            return

    # Server is "not primary" or "recovering"
    if code is not None:
        if code in _NOT_PRIMARY_CODES:
            raise NotPrimaryError(errmsg, response)
    elif "not master" in errmsg or "node is recovering" in errmsg:
        raise NotPrimaryError(errmsg, response)

    raise OperationFailure(errmsg, code, response, max_wire_version)


def _add_retryable_write_error(exc: MongoTopologyError) -> None:
    """Label a failed write that may be attempted once more.

    Network errors and "not primary", "node is recovering" or other
    retryable server codes qualify. Labels sent by the server are kept.
    """
    if isinstance(exc, ConnectionFailure):
        exc._add_error_label(_RETRYABLE_WRITE_ERROR)
    elif isinstance(exc, OperationFailure) and exc.code in _RETRYABLE_ERROR_CODES:
        exc._add_error_label(_RETRYABLE_WRITE_ERROR)
