# Copyright 2009-present MongoDB, Inc.
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

"""Server discovery, monitoring and selection for MongoDB deployments."""
from __future__ import annotations

from typing import ContextManager, Optional

__all__ = [
    "version_tuple",
    "get_version_string",
    "__version__",
    "version",
    "MAX_SUPPORTED_WIRE_VERSION",
    "MIN_SUPPORTED_WIRE_VERSION",
    "ClientSession",
    "Capabilities",
    "Operation",
    "ReadPreference",
    "RetryableExecutor",
    "Topology",
    "TopologySettings",
    "timeout",
]

from mongo_topology import _csot
from mongo_topology._version import __version__, get_version_string, version_tuple
from mongo_topology.client_session import ClientSession
from mongo_topology.common import MAX_SUPPORTED_WIRE_VERSION, MIN_SUPPORTED_WIRE_VERSION
from mongo_topology.operations import Capabilities, Operation
from mongo_topology.read_preferences import ReadPreference
from mongo_topology.retryable import RetryableExecutor
from mongo_topology.settings import TopologySettings
from mongo_topology.topology import Topology

version = __version__
"""Current version of mongo_topology."""


def timeout(seconds: Optional[float]) -> ContextManager[None]:
    """Apply the given timeout for a block of operations.

    Use :func:`~mongo_topology.timeout` in a with-statement::

      with mongo_topology.timeout(5):
          executor.execute(find_operation)
          executor.execute(insert_operation)

    When the with-statement is entered, a deadline is set for the entire
    block. Server selection waits at most until the deadline, and a failed
    retryable operation is not retried once the deadline has passed.

    When nesting :func:`~mongo_topology.timeout`, the nested deadline is
    capped by the outer deadline. The deadline can only be shortened, not
    extended. When exiting the block, the previous deadline is restored::

      with mongo_topology.timeout(5):
          executor.execute(op)  # Uses the 5 second deadline.
          with mongo_topology.timeout(3):
              executor.execute(op)  # Uses the 3 second deadline.
          with mongo_topology.timeout(10):
              executor.execute(op)  # Still uses the original 5 second deadline.

    :param seconds: A non-negative floating point number expressing seconds, or None.

    :raises: :py:class:`ValueError`: When `seconds` is negative.
    """
    if not isinstance(seconds, (int, float, type(None))):
        raise TypeError("timeout must be None, an int, or a float")
    if seconds and seconds < 0:
        raise ValueError("timeout cannot be negative")
    if seconds is not None:
        seconds = float(seconds)
    return _csot._TimeoutContext(seconds)
