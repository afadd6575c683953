import socket

import pytest

from devregistry.registry import DevRegistryClient, stop_worker_registry


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port() -> int:
    """A loopback port nothing is listening on."""
    return _free_port()


@pytest.fixture(autouse=True)
def _stop_registry():
    """Never leak a registry server between tests."""
    yield
    stop_worker_registry()


@pytest.fixture(autouse=True)
def _no_registry_env(monkeypatch):
    monkeypatch.delenv("DEV_REGISTRY_HOST", raising=False)
    monkeypatch.delenv("DEV_REGISTRY_PORT", raising=False)


@pytest.fixture
def client(free_port) -> DevRegistryClient:
    """Client pointed at a private port; the registry is not started yet."""
    return DevRegistryClient(port=free_port, timeout=5)


@pytest.fixture
def other_free_port(free_port) -> int:
    """A second free loopback port, distinct from ``free_port``."""
    port = _free_port()
    while port == free_port:
        port = _free_port()
    return port
