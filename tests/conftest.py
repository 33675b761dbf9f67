"""Pytest configuration and shared fixtures."""

import pytest

from docker_ipam.ipam import IpamPlugin
from docker_ipam.server import create_app
from docker_ipam.storage import StateStore


@pytest.fixture
def state_file(tmp_path):
    """State file path inside a directory that does not exist yet."""
    return tmp_path / "ipam" / "state.yaml"


@pytest.fixture
def store(state_file):
    return StateStore.open(state_file)


@pytest.fixture
def plugin(store):
    return IpamPlugin(store, "10.0.0.0/24")


@pytest.fixture
def client(plugin):
    app = create_app(plugin)
    app.config["TESTING"] = True
    return app.test_client()
