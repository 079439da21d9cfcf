# Copyright 2013-present MongoDB, Inc.
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

"""Tools for mocking parts of mongo_topology to test other parts."""
from __future__ import annotations


class DummyMonitor:
    """A monitor that never checks its server.

    Tests feed server descriptions to the topology through on_change.
    """

    def __init__(self, server_description, topology, pool, topology_settings):
        self._server_description = server_description
        self.opened = False
        self.check_requests = 0
        self.cancel_requests = 0

    def cancel_check(self):
        self.cancel_requests += 1

    def join(self):
        pass

    def open(self):
        self.opened = True

    def request_check(self):
        self.check_requests += 1

    def close(self):
        self.opened = False
