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

import os
from test import client_knobs, unittest
from test.mocks import DummyMonitor
from test.utils import MockPool
from unittest.mock import patch

from bson import json_util

from mongo_topology.errors import OperationFailure, ServerSelectionTimeoutError
from mongo_topology.hello import Hello, HelloCompat
from mongo_topology.logger import _DEFAULT_DOCUMENT_LENGTH, LogMessage
from mongo_topology.server_description import ServerDescription
from mongo_topology.server_selectors import writable_server_selector
from mongo_topology.settings import TopologySettings
from mongo_topology.topology import Topology


def messages(cm):
    return [json_util.loads(record.getMessage()) for record in cm.records]


class TestLogger(unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.client_knobs = client_knobs(heartbeat_frequency=999999)
        self.client_knobs.enable()
        self.addCleanup(self.client_knobs.disable)

    def create_topology(self, seeds=("a",), **kwargs):
        settings = TopologySettings(
            list(seeds), pool_class=MockPool, monitor_class=DummyMonitor, **kwargs
        )
        return Topology(settings)

    def test_topology_lifecycle(self):
        with self.assertLogs("mongo_topology.topology", level="DEBUG") as cm:
            topology = self.create_topology()
            topology.open()
            topology.close()

        logs = messages(cm)
        self.assertEqual(
            [
                "Starting topology monitoring",
                "Topology description changed",
                "Starting server monitoring",
                "Stopped server monitoring",
                "Topology description changed",
                "Stopped topology monitoring",
            ],
            [log["message"] for log in logs],
        )
        topology_id = logs[0]["topologyId"]
        self.assertTrue(all(log["topologyId"] == topology_id for log in logs))
        self.assertEqual("a", logs[2]["serverHost"])
        self.assertEqual(27017, logs[2]["serverPort"])
        self.assertIn("topology_type: Single", logs[1]["newDescription"])

    def test_description_changed(self):
        topology = self.create_topology()
        topology.open()
        self.addCleanup(topology.close)
        hello = Hello({"ok": 1, HelloCompat.PRIMARY: True, "maxWireVersion": 17})

        with self.assertLogs("mongo_topology.topology", level="DEBUG") as cm:
            topology.on_change(ServerDescription(("a", 27017), hello, 0.01))

        (log,) = messages(cm)
        self.assertEqual("Topology description changed", log["message"])
        self.assertIn("server_type: Unknown", log["previousDescription"])
        self.assertIn("server_type: Standalone", log["newDescription"])

    def test_server_selection_succeeded(self):
        topology = self.create_topology()
        topology.open()
        self.addCleanup(topology.close)
        hello = Hello({"ok": 1, HelloCompat.PRIMARY: True, "maxWireVersion": 17})
        topology.on_change(ServerDescription(("a", 27017), hello, 0.01))

        with self.assertLogs("mongo_topology.serverSelection", level="DEBUG") as cm:
            topology.select_server(writable_server_selector, "insert", operation_id=5)

        started, succeeded = messages(cm)
        self.assertEqual("Server selection started", started["message"])
        self.assertEqual("insert", started["operation"])
        self.assertEqual(5, started["operationId"])
        self.assertEqual("Server selection succeeded", succeeded["message"])
        self.assertEqual("a", succeeded["serverHost"])
        self.assertEqual(27017, succeeded["serverPort"])

    def test_server_selection_failed(self):
        topology = self.create_topology(server_selection_timeout=0.1)
        self.addCleanup(topology.close)

        with self.assertLogs("mongo_topology.serverSelection", level="DEBUG") as cm:
            with self.assertRaises(ServerSelectionTimeoutError):
                topology.select_server(writable_server_selector, "insert")

        started, waiting, failed = messages(cm)
        self.assertEqual("Server selection started", started["message"])
        self.assertEqual("Waiting for suitable server to become available", waiting["message"])
        self.assertLessEqual(waiting["remainingTimeMS"], 100)
        self.assertEqual("Server selection failed", failed["message"])
        self.assertIn("No servers found yet", failed["failure"])

    def test_server_selection_no_wait(self):
        topology = self.create_topology(server_selection_timeout=0)
        self.addCleanup(topology.close)

        with self.assertLogs("mongo_topology.serverSelection", level="DEBUG") as cm:
            with self.assertRaises(ServerSelectionTimeoutError):
                topology.select_server(writable_server_selector, "insert")

        self.assertEqual(
            ["Server selection started", "Server selection failed"],
            [log["message"] for log in messages(cm)],
        )

    def test_default_truncation_limit(self):
        failure = OperationFailure("failed", 1, {"errmsg": "x" * 5000})
        with patch.dict("os.environ"):
            os.environ.pop("MONGO_TOPOLOGY_LOG_MAX_DOCUMENT_LENGTH", None)
            log = json_util.loads(str(LogMessage(message="failed", failure=failure)))
        self.assertEqual(_DEFAULT_DOCUMENT_LENGTH + 3, len(log["failure"]))
        self.assertTrue(log["failure"].endswith("..."))

    def test_configured_truncation_limit(self):
        with patch.dict("os.environ", {"MONGO_TOPOLOGY_LOG_MAX_DOCUMENT_LENGTH": "5"}):
            log = json_util.loads(str(LogMessage(message="reply", reply={"ok": 1, "x": "y"})))
        self.assertLessEqual(len(log["reply"]), 5 + 3)

    def test_duration_in_milliseconds(self):
        log = json_util.loads(str(LogMessage(message="done", durationMS=0.25, serviceId=None)))
        self.assertEqual(250, log["durationMS"])
        self.assertNotIn("serviceId", log)


if __name__ == "__main__":
    unittest.main()
