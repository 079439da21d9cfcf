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

"""Represent a Topology's configuration."""
from __future__ import annotations

import threading
import traceback
from typing import Any, Collection, Optional, Sequence, Type, Union

from bson.objectid import ObjectId

from mongo_topology import common, monitor
from mongo_topology.common import LOCAL_THRESHOLD_MS, SERVER_SELECTION_TIMEOUT
from mongo_topology.errors import ConfigurationError
from mongo_topology.monitoring import _EventListener, _EventListeners, _validate_event_listeners
from mongo_topology.pool import Pool, PoolOptions
from mongo_topology.server_description import ServerDescription
from mongo_topology.topology_description import TOPOLOGY_TYPE, _ServerSelector


class TopologySettings:
    def __init__(
        self,
        seeds: Optional[Collection[Union[str, tuple[str, int]]]] = None,
        replica_set_name: Optional[str] = None,
        pool_class: Optional[Type[Pool]] = None,
        pool_options: Optional[PoolOptions] = None,
        monitor_class: Optional[Type[monitor.Monitor]] = None,
        condition_class: Optional[Type[threading.Condition]] = None,
        local_threshold_ms: int = LOCAL_THRESHOLD_MS,
        server_selection_timeout: float = SERVER_SELECTION_TIMEOUT,
        heartbeat_frequency: Optional[float] = None,
        connect_timeout: float = common.CONNECT_TIMEOUT,
        server_selector: Optional[_ServerSelector] = None,
        direct_connection: Optional[bool] = None,
        load_balanced: Optional[bool] = None,
        server_monitoring_mode: str = common.SERVER_MONITORING_MODE,
        event_listeners: Optional[Sequence[_EventListener]] = None,
        topology_id: Optional[ObjectId] = None,
    ):
        """Represent a Topology's configuration.

        Take a list of (host, port) pairs, optional replica set name, and the
        Pool subclass that connects to servers.
        """
        if heartbeat_frequency is None:
            heartbeat_frequency = common.HEARTBEAT_FREQUENCY
        heartbeat_frequency = common.validate_heartbeat_frequency(
            "heartbeatFrequencyMS", heartbeat_frequency
        )
        self._seeds: Collection[tuple[str, int]] = [
            _normalize_seed(seed) for seed in seeds or [("localhost", common.DEFAULT_PORT)]
        ]
        self._replica_set_name = common.validate_string_or_none(
            "replicaSet", replica_set_name
        )
        if pool_class is None:
            raise ConfigurationError("pool_class is required: a Pool subclass that opens connections")
        self._pool_class: Type[Pool] = pool_class
        self._monitor_class: Type[monitor.Monitor] = monitor_class or monitor.Monitor
        self._condition_class: Type[threading.Condition] = condition_class or threading.Condition
        self._local_threshold_ms = common.validate_non_negative_integer(
            "localThresholdMS", local_threshold_ms
        )
        self._server_selection_timeout = common.validate_timeout_or_zero(
            "serverSelectionTimeoutMS", server_selection_timeout
        )
        self._connect_timeout = common.validate_positive_float(
            "connectTimeoutMS", connect_timeout
        )
        self._server_selector = server_selector
        self._heartbeat_frequency = heartbeat_frequency
        self._direct_connection = common.validate_boolean_or_none(
            "directConnection", direct_connection
        )
        self._load_balanced = common.validate_boolean_or_none("loadBalanced", load_balanced)
        self._server_monitoring_mode = common.validate_server_monitoring_mode(
            "serverMonitoringMode", server_monitoring_mode
        )
        self._event_listeners = _EventListeners(
            _validate_event_listeners("event_listeners", event_listeners or [])
        )
        self._pool_options = pool_options or PoolOptions(
            connect_timeout=self._connect_timeout,
            event_listeners=self._event_listeners,
            load_balanced=self._load_balanced,
        )

        self._validate_modes()

        if self._direct_connection is None:
            self._direct = len(self._seeds) == 1 and not self.replica_set_name
        else:
            self._direct = self._direct_connection

        self._topology_id = topology_id or ObjectId()
        # Store the allocation traceback to catch unclosed clients in the
        # test suite.
        self._stack = "".join(traceback.format_stack()[:-2])

    def _validate_modes(self) -> None:
        if self._direct_connection and len(self._seeds) > 1:
            raise ConfigurationError("Cannot specify multiple hosts with directConnection=true")
        if self._load_balanced:
            if len(self._seeds) > 1:
                raise ConfigurationError("Cannot specify multiple hosts with loadBalanced=true")
            if self._direct_connection:
                raise ConfigurationError("Cannot specify directConnection=true with loadBalanced=true")
            if self._replica_set_name:
                raise ConfigurationError("Cannot specify replicaSet with loadBalanced=true")

    @property
    def seeds(self) -> Collection[tuple[str, int]]:
        """List of server addresses."""
        return self._seeds

    @property
    def replica_set_name(self) -> Optional[str]:
        return self._replica_set_name

    @property
    def pool_class(self) -> Type[Pool]:
        return self._pool_class

    @property
    def pool_options(self) -> PoolOptions:
        return self._pool_options

    @property
    def monitor_class(self) -> Type[monitor.Monitor]:
        return self._monitor_class

    @property
    def condition_class(self) -> Type[threading.Condition]:
        return self._condition_class

    @property
    def local_threshold_ms(self) -> int:
        return self._local_threshold_ms

    @property
    def server_selection_timeout(self) -> float:
        return self._server_selection_timeout

    @property
    def server_selector(self) -> Optional[_ServerSelector]:
        return self._server_selector

    @property
    def heartbeat_frequency(self) -> float:
        return self._heartbeat_frequency

    @property
    def connect_timeout(self) -> float:
        return self._connect_timeout

    @property
    def direct(self) -> bool:
        """Connect directly to a single server, or use a set of servers?

        True if there is one seed and no replica_set_name, unless
        directConnection says otherwise.
        """
        return self._direct

    @property
    def load_balanced(self) -> Optional[bool]:
        """True if the client was configured to connect to a load balancer."""
        return self._load_balanced

    @property
    def server_monitoring_mode(self) -> str:
        return self._server_monitoring_mode

    @property
    def event_listeners(self) -> _EventListeners:
        return self._event_listeners

    def get_topology_type(self) -> int:
        if self.load_balanced:
            return TOPOLOGY_TYPE.LoadBalanced
        elif self.direct:
            return TOPOLOGY_TYPE.Single
        elif self.replica_set_name is not None:
            return TOPOLOGY_TYPE.ReplicaSetNoPrimary
        else:
            return TOPOLOGY_TYPE.Unknown

    def get_server_descriptions(self) -> dict[Union[tuple[str, int], Any], ServerDescription]:
        """Initial dict of (address, ServerDescription) for all seeds."""
        return {address: ServerDescription(address) for address in self.seeds}


def _normalize_seed(seed: Union[str, tuple[str, int]]) -> tuple[str, int]:
    """A seed as a (host, port) pair with a lowercase host."""
    if isinstance(seed, str):
        return common.clean_node(seed)  # type: ignore[return-value]
    host, port = seed
    return host.lower(), port
