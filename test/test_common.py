# Copyright 2011-present MongoDB, Inc.
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

"""Test the mongo_topology common module and topology settings."""
from __future__ import annotations

from test import client_knobs, unittest
from test.mocks import DummyMonitor
from test.utils import MockPool

from mongo_topology import common
from mongo_topology.common import (
    clean_node,
    format_address,
    partition_node,
    validate_boolean_or_none,
    validate_heartbeat_frequency,
    validate_non_negative_integer,
    validate_positive_float,
    validate_server_monitoring_mode,
    validate_timeout_or_zero,
)
from mongo_topology.errors import ConfigurationError
from mongo_topology.pool import Connection, Pool, PoolOptions
from mongo_topology.settings import TopologySettings
from mongo_topology.topology_description import TOPOLOGY_TYPE


class TestCommon(unittest.TestCase):
    def test_partition_node(self):
        self.assertEqual(("localhost", 27017), partition_node("localhost"))
        self.assertEqual(("a", 27018), partition_node("a:27018"))
        self.assertEqual(("::1", 27017), partition_node("[::1]"))
        self.assertEqual(("::1", 27019), partition_node("[::1]:27019"))

    def test_clean_node(self):
        self.assertEqual(("host.example.com", 27017), clean_node("HOST.Example.com:27017"))

    def test_format_address(self):
        self.assertEqual("a:27017", format_address(("a", 27017)))
        self.assertEqual("[::1]:27017", format_address(("::1", 27017)))

    def test_validate_boolean_or_none(self):
        self.assertIsNone(validate_boolean_or_none("directConnection", None))
        self.assertTrue(validate_boolean_or_none("directConnection", True))
        self.assertRaises(TypeError, validate_boolean_or_none, "directConnection", "true")
        self.assertRaises(TypeError, validate_boolean_or_none, "directConnection", 1)

    def test_validate_positive_float(self):
        self.assertEqual(1.5, validate_positive_float("connectTimeoutMS", 1.5))
        self.assertEqual(2.0, validate_positive_float("connectTimeoutMS", "2"))
        self.assertRaises(ValueError, validate_positive_float, "connectTimeoutMS", 0)
        self.assertRaises(ValueError, validate_positive_float, "connectTimeoutMS", -1)
        self.assertRaises(ValueError, validate_positive_float, "connectTimeoutMS", 1e10)
        self.assertRaises(ValueError, validate_positive_float, "connectTimeoutMS", "foo")
        self.assertRaises(TypeError, validate_positive_float, "connectTimeoutMS", [])

    def test_validate_timeout_or_zero(self):
        self.assertEqual(0, validate_timeout_or_zero("serverSelectionTimeoutMS", 0))
        self.assertEqual(0.5, validate_timeout_or_zero("serverSelectionTimeoutMS", 0.5))
        self.assertRaises(
            ConfigurationError, validate_timeout_or_zero, "serverSelectionTimeoutMS", None
        )
        self.assertRaises(ValueError, validate_timeout_or_zero, "serverSelectionTimeoutMS", -1)

    def test_validate_non_negative_integer(self):
        self.assertEqual(0, validate_non_negative_integer("localThresholdMS", 0))
        self.assertRaises(ValueError, validate_non_negative_integer, "localThresholdMS", -1)
        self.assertRaises(TypeError, validate_non_negative_integer, "localThresholdMS", 1.5)
        self.assertRaises(TypeError, validate_non_negative_integer, "localThresholdMS", True)

    def test_validate_server_monitoring_mode(self):
        for mode in ("auto", "stream", "poll"):
            self.assertEqual(mode, validate_server_monitoring_mode("serverMonitoringMode", mode))
        with self.assertRaisesRegex(ValueError, "serverMonitoringMode='push' is invalid"):
            validate_server_monitoring_mode("serverMonitoringMode", "push")

    def test_validate_heartbeat_frequency(self):
        self.assertEqual(0.5, validate_heartbeat_frequency("heartbeatFrequencyMS", 0.5))
        with self.assertRaisesRegex(ConfigurationError, "cannot be less than 500 ms"):
            validate_heartbeat_frequency("heartbeatFrequencyMS", 0.499)


def make_settings(*args, **kwargs):
    return TopologySettings(*args, pool_class=MockPool, **kwargs)


class TestTopologySettings(unittest.TestCase):
    def test_defaults(self):
        settings = make_settings()
        self.assertEqual([("localhost", 27017)], list(settings.seeds))
        self.assertIsNone(settings.replica_set_name)
        self.assertEqual(common.LOCAL_THRESHOLD_MS, settings.local_threshold_ms)
        self.assertEqual(common.SERVER_SELECTION_TIMEOUT, settings.server_selection_timeout)
        self.assertEqual(common.HEARTBEAT_FREQUENCY, settings.heartbeat_frequency)
        self.assertEqual("auto", settings.server_monitoring_mode)
        self.assertIsNone(settings.server_selector)
        self.assertTrue(settings.direct)
        self.assertEqual(TOPOLOGY_TYPE.Single, settings.get_topology_type())

    def test_heartbeat_frequency_from_knobs(self):
        with client_knobs(heartbeat_frequency=1):
            self.assertEqual(1, make_settings().heartbeat_frequency)
        self.assertEqual(common.HEARTBEAT_FREQUENCY, make_settings().heartbeat_frequency)

    def test_seeds_are_normalized(self):
        settings = make_settings(["A:27018", ("B", 27017), "c"])
        self.assertEqual([("a", 27018), ("b", 27017), ("c", 27017)], list(settings.seeds))
        self.assertEqual(
            ["a", "b", "c"], [address[0] for address in settings.get_server_descriptions()]
        )

    def test_initial_topology_type(self):
        self.assertEqual(
            TOPOLOGY_TYPE.Unknown, make_settings(["a", "b"]).get_topology_type()
        )
        self.assertEqual(
            TOPOLOGY_TYPE.ReplicaSetNoPrimary,
            make_settings(["a"], replica_set_name="rs").get_topology_type(),
        )
        self.assertEqual(
            TOPOLOGY_TYPE.Unknown,
            make_settings(["a"], direct_connection=False).get_topology_type(),
        )
        self.assertEqual(
            TOPOLOGY_TYPE.Single,
            make_settings(
                ["a"], replica_set_name="rs", direct_connection=True
            ).get_topology_type(),
        )
        self.assertEqual(
            TOPOLOGY_TYPE.LoadBalanced,
            make_settings(["a"], load_balanced=True).get_topology_type(),
        )

    def test_contradictory_options(self):
        with self.assertRaisesRegex(ConfigurationError, "multiple hosts with directConnection"):
            make_settings(["a", "b"], direct_connection=True)
        with self.assertRaisesRegex(ConfigurationError, "multiple hosts with loadBalanced"):
            make_settings(["a", "b"], load_balanced=True)
        with self.assertRaisesRegex(ConfigurationError, "directConnection=true with loadBalanced"):
            make_settings(["a"], direct_connection=True, load_balanced=True)
        with self.assertRaisesRegex(ConfigurationError, "replicaSet with loadBalanced"):
            make_settings(["a"], replica_set_name="rs", load_balanced=True)

    def test_invalid_options(self):
        self.assertRaises(TypeError, make_settings, replica_set_name=1)
        self.assertRaises(ValueError, make_settings, local_threshold_ms=-1)
        self.assertRaises(ValueError, make_settings, server_selection_timeout=-1)
        self.assertRaises(ConfigurationError, make_settings, server_selection_timeout=None)
        self.assertRaises(ConfigurationError, make_settings, heartbeat_frequency=0.1)
        self.assertRaises(ValueError, make_settings, server_monitoring_mode="push")
        self.assertRaises(TypeError, make_settings, direct_connection="yes")
        self.assertRaises(TypeError, make_settings, event_listeners=[object()])

    def test_pool_options(self):
        settings = TopologySettings(
            ["a"], pool_class=MockPool, monitor_class=DummyMonitor, connect_timeout=3
        )
        self.assertIs(MockPool, settings.pool_class)
        self.assertIs(DummyMonitor, settings.monitor_class)
        self.assertEqual(3, settings.pool_options.connect_timeout)
        self.assertFalse(settings.pool_options.load_balanced)

    def test_pool_class_is_required(self):
        with self.assertRaisesRegex(ConfigurationError, "pool_class is required"):
            TopologySettings(["a"])
        with self.assertRaisesRegex(ConfigurationError, "pool_class is required"):
            TopologySettings(["a"], pool_class=None, monitor_class=DummyMonitor)

    def test_pool_and_connection_are_abstract(self):
        self.assertRaises(TypeError, Pool, ("a", 27017), PoolOptions())
        self.assertRaises(TypeError, Connection, ("a", 27017), 1)

        class PartialPool(Pool):
            def checkout(self):
                raise AssertionError("unused")

        # reset, ready and close are still missing.
        self.assertRaises(TypeError, PartialPool, ("a", 27017), PoolOptions())
        pool = MockPool(("a", 27017), PoolOptions())
        self.assertIsInstance(pool, Pool)

    def test_topology_id(self):
        first, second = make_settings(), make_settings()
        self.assertNotEqual(first._topology_id, second._topology_id)


if __name__ == "__main__":
    unittest.main()
