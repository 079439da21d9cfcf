from __future__ import annotations

import pytest

from mongo_topology import monitor


@pytest.fixture(scope="session", autouse=True)
def test_setup_and_teardown():
    yield
    # Stop monitor and event threads left behind by tests that leak a Topology.
    monitor._shutdown_resources()
