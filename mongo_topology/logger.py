# Copyright 2023-present MongoDB, Inc.
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
from __future__ import annotations

import enum
import logging
import os
from typing import Any

from bson import UuidRepresentation, json_util
from bson.json_util import JSONOptions, _truncate_documents


class _SDAMStatusMessage(str, enum.Enum):
    START_TOPOLOGY = "Starting topology monitoring"
    STOP_TOPOLOGY = "Stopped topology monitoring"
    START_SERVER = "Starting server monitoring"
    STOP_SERVER = "Stopped server monitoring"
    TOPOLOGY_CHANGE = "Topology description changed"
    HEARTBEAT_START = "Server heartbeat started"
    HEARTBEAT_SUCCESS = "Server heartbeat succeeded"
    HEARTBEAT_FAIL = "Server heartbeat failed"


class _ServerSelectionStatusMessage(str, enum.Enum):
    STARTED = "Server selection started"
    SUCCEEDED = "Server selection succeeded"
    FAILED = "Server selection failed"
    WAITING = "Waiting for suitable server to become available"


class _RetryStatusMessage(str, enum.Enum):
    RETRYING = "Retrying operation"
    NOT_RETRYING = "Operation failed, not retrying"


_DEFAULT_DOCUMENT_LENGTH = 1000
_DOCUMENT_NAMES = ["reply", "failure"]
_JSON_OPTIONS = JSONOptions(uuid_representation=UuidRepresentation.STANDARD)
_SDAM_LOGGER = logging.getLogger("mongo_topology.topology")
_SERVER_SELECTION_LOGGER = logging.getLogger("mongo_topology.serverSelection")
_RETRY_LOGGER = logging.getLogger("mongo_topology.retry")


def _debug_log(logger: logging.Logger, **fields: Any) -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(LogMessage(**fields))


class LogMessage:
    __slots__ = ("_kwargs", "_redacted")

    def __init__(self, **kwargs: Any):
        self._kwargs = kwargs
        self._redacted = False

    def __str__(self) -> str:
        self._redact()
        return "%s" % (
            json_util.dumps(
                self._kwargs, json_options=_JSON_OPTIONS, default=lambda o: o.__repr__()
            )
        )

    def _redact(self) -> None:
        if self._redacted:
            return
        self._redacted = True

        if "durationMS" in self._kwargs:
            self._kwargs["durationMS"] = self._kwargs["durationMS"] * 1000
        if "serviceId" in self._kwargs and self._kwargs["serviceId"] is None:
            del self._kwargs["serviceId"]

        document_length = int(os.getenv("MONGO_TOPOLOGY_LOG_MAX_DOCUMENT_LENGTH", _DEFAULT_DOCUMENT_LENGTH))
        if document_length < 0:
            document_length = _DEFAULT_DOCUMENT_LENGTH

        for doc_name in _DOCUMENT_NAMES:
            doc = self._kwargs.get(doc_name)
            if doc:
                if isinstance(doc, BaseException):
                    doc = repr(doc)
                else:
                    truncated_doc = _truncate_documents(doc, document_length)[0]
                    doc = json_util.dumps(
                        truncated_doc,
                        json_options=_JSON_OPTIONS,
                        default=lambda o: o.__repr__(),
                    )
                if len(doc) > document_length:
                    doc = (
                        doc.encode()[:document_length].decode("unicode-escape", "ignore")
                    ) + "..."
                self._kwargs[doc_name] = doc
