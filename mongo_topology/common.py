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


"""Functions and classes common to multiple mongo_topology modules."""
from __future__ import annotations

from typing import Any, Optional, Tuple

from mongo_topology.errors import ConfigurationError

# Defaults until we connect to a server and get updated limits.
MIN_WIRE_VERSION = 0
MAX_WIRE_VERSION = 0

# What this version of mongo_topology supports.
MIN_SUPPORTED_SERVER_VERSION = "4.0"
MIN_SUPPORTED_WIRE_VERSION = 7
MAX_SUPPORTED_WIRE_VERSION = 25

# Frequency to call hello on servers, in seconds.
HEARTBEAT_FREQUENCY: int = 10

# How long to wait, in seconds, for a suitable server to be found before
# aborting an operation. For example, if the client attempts an insert
# during a replica set election, SERVER_SELECTION_TIMEOUT governs the
# longest it is willing to wait for a new primary to be found.
SERVER_SELECTION_TIMEOUT: int = 30

# Servers are never checked more often than every 500ms.
MIN_HEARTBEAT_INTERVAL = 0.5

# Seconds between deliveries of queued topology and server events.
EVENTS_QUEUE_FREQUENCY = 1

# Default connectTimeout in seconds.
CONNECT_TIMEOUT: float = 20.0

# Default value for localThresholdMS.
LOCAL_THRESHOLD_MS: int = 15

# Default server monitoring mode.
SERVER_MONITORING_MODE = "auto"

# The smallest maxStalenessSeconds a read preference may use.
SMALLEST_MAX_STALENESS = 90

# The default port of a mongod or mongos.
DEFAULT_PORT = 27017

_Address = Tuple[str, Optional[int]]


def partition_node(node: str) -> _Address:
    """Split a host:port string into (host, int(port)) pair."""
    host = node
    port = DEFAULT_PORT
    idx = node.rfind(":")
    if idx != -1:
        host, port = node[:idx], int(node[idx + 1 :])
    if host.startswith("["):
        host = host[1:-1]
    return host, port


def clean_node(node: str) -> _Address:
    """Split and normalize a node name from a hello response."""
    host, port = partition_node(node)

    # Normalize hostname to lowercase, since DNS is case-insensitive:
    # http://tools.ietf.org/html/rfc4343
    # This prevents useless rediscovery if "foo.com" is in the seed list but
    # "FOO.com" is in the hello response.
    return host.lower(), port


def format_address(address: _Address) -> str:
    """The canonical "host:port" string for an address."""
    host, port = address
    if ":" in host:
        host = "[%s]" % host
    return "%s:%s" % (host, port)


def validate_boolean(option: str, value: Any) -> bool:
    """Validates that 'value' is True or False."""
    if isinstance(value, bool):
        return value
    raise TypeError(f"{option} must be True or False, was: {option}={value!r}")


def validate_boolean_or_none(option: str, value: Any) -> Optional[bool]:
    """Validates that 'value' is True, False, or None."""
    if value is None:
        return value
    return validate_boolean(option, value)


def validate_positive_float(option: str, value: Any) -> float:
    """Validates that 'value' is a float, or can be converted to one, and is
    positive.
    """
    errmsg = f"{option} must be an integer or float"
    try:
        value = float(value)
    except ValueError:
        raise ValueError(errmsg) from None
    except TypeError:
        raise TypeError(errmsg) from None

    # float('inf') doesn't work in 2.4 or 2.5 on Windows, so just cap floats at
    # one billion - this is a reasonable approximation for infinity
    if not 0 < value < 1e9:
        raise ValueError(f"{option} must be greater than 0 and less than one billion")
    return value


def validate_timeout_or_zero(option: str, value: Any) -> float:
    """Validates a timeout specified in seconds.

    Accepts zero, which means "do not wait".
    """
    if value is None:
        raise ConfigurationError(f"{option} cannot be None")
    if value == 0 or value == "0":
        return 0
    return validate_positive_float(option, value)


def validate_non_negative_integer(option: str, value: Any) -> int:
    """Validate that 'value' is a positive integer or 0."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"Wrong type for {option}, value must be an integer, not {type(value)}")
    if value < 0:
        raise ValueError(f"The value of {option} must be a non negative integer")
    return value


def validate_string_or_none(option: str, value: Any) -> Optional[str]:
    """Validates that 'value' is an instance of `str` or None."""
    if value is None or isinstance(value, str):
        return value
    raise TypeError(f"Wrong type for {option}, value must be an instance of str")


def validate_server_monitoring_mode(option: str, value: str) -> str:
    """Validate the serverMonitoringMode option."""
    if value not in {"auto", "stream", "poll"}:
        raise ValueError(
            f'{option}={value!r} is invalid. Must be one of "auto", "stream", or "poll"'
        )
    return value


def validate_heartbeat_frequency(option: str, value: Any) -> float:
    """Validate heartbeatFrequencyMS, given here in seconds."""
    value = validate_positive_float(option, value)
    if value < MIN_HEARTBEAT_INTERVAL:
        raise ConfigurationError(
            "%s cannot be less than %d ms" % (option, MIN_HEARTBEAT_INTERVAL * 1000)
        )
    return value
