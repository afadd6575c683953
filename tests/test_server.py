"""Tests for the registry server: store, endpoints, startup and shutdown."""

import errno
import json
import socket
import threading
import time
import urllib.error
import urllib.request
from unittest.mock import patch

import pytest

from devregistry.definitions import WorkerDefinition
from devregistry.registry import server as registry_server
from devregistry.registry.server import (
    InMemoryWorkerRegistry,
    is_worker_registry_running,
    start_worker_registry,
    stop_worker_registry,
    worker_registry_address,
)


def _call(port: int, method: str, path: str, body: bytes | None = None):
    """Raw HTTP call returning (status, decoded JSON body)."""
    req = urllib.request.Request(f"http://127.0.0.1:{port}{path}", data=body, method=method)
    if body is not None:
        req.add_header("Content-Type", "application/json")
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    try:
        with opener.open(req, timeout=5) as resp:
            return resp.status, json.loads(resp.read().decode())
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read().decode())


class TestInMemoryWorkerRegistry:

    def test_upsert_replaces(self) -> None:
        registry = InMemoryWorkerRegistry()
        registry.upsert("w1", WorkerDefinition(port=8787))
        registry.upsert("w1", WorkerDefinition(port=8788))
        assert len(registry) == 1
        assert registry.snapshot()["w1"].port == 8788

    def test_remove_missing_is_noop(self) -> None:
        registry = InMemoryWorkerRegistry()
        assert registry.remove("ghost") is False
        assert registry.snapshot() == {}

    def test_snapshot_is_a_copy(self) -> None:
        registry = InMemoryWorkerRegistry()
        registry.upsert("w1", WorkerDefinition())
        snap = registry.snapshot()
        registry.clear()
        assert "w1" in snap
        assert len(registry) == 0


class TestStartup:

    def test_start_and_stop(self, free_port: int) -> None:
        assert not is_worker_registry_running()
        assert start_worker_registry(port=free_port) is True
        assert is_worker_registry_running()
        assert worker_registry_address() == ("127.0.0.1", free_port)

        stop_worker_registry()
        assert not is_worker_registry_running()
        assert worker_registry_address() is None

    def test_second_start_in_process_is_noop(self, free_port: int) -> None:
        assert start_worker_registry(port=free_port) is True
        first = registry_server._handle.server
        assert start_worker_registry(port=free_port) is True
        assert registry_server._handle.server is first

    def test_port_held_elsewhere_makes_start_a_client(self, free_port: int) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as other:
            other.bind(("127.0.0.1", free_port))
            other.listen()
            assert start_worker_registry(port=free_port) is False
            assert not is_worker_registry_running()

    def test_other_bind_errors_propagate(self, free_port: int) -> None:
        error = OSError(errno.EACCES, "Permission denied")
        with patch.object(registry_server, "_RegistryHTTPServer", side_effect=error):
            with pytest.raises(OSError) as excinfo:
                start_worker_registry(port=free_port)
        assert excinfo.value.errno == errno.EACCES
        assert not is_worker_registry_running()

    def test_restart_after_stop_gets_fresh_registry(self, free_port: int) -> None:
        start_worker_registry(port=free_port)
        _call(free_port, "POST", "/workers/w1", b'{"mode": "local"}')
        stop_worker_registry()

        assert start_worker_registry(port=free_port) is True
        assert _call(free_port, "GET", "/workers") == (200, {})

    def test_closing_socket_clears_handle(self, free_port: int) -> None:
        start_worker_registry(port=free_port)
        server = registry_server._handle.server
        server.shutdown()
        server.server_close()
        assert not is_worker_registry_running()

    def test_stop_without_server_is_noop(self) -> None:
        stop_worker_registry()
        assert not is_worker_registry_running()


class TestShutdown:

    STALLED_POST = (
        b"POST /workers/w1 HTTP/1.1\r\n"
        b"Host: 127.0.0.1\r\n"
        b"Content-Type: application/json\r\n"
        b"Content-Length: 100\r\n\r\n{"
    )

    def _stop_within(self, seconds: float) -> None:
        stopper = threading.Thread(target=stop_worker_registry, daemon=True)
        stopper.start()
        stopper.join(timeout=seconds)
        assert not stopper.is_alive(), f"stop_worker_registry still running after {seconds}s"

    def test_half_sent_body_does_not_block_stop(self, free_port: int) -> None:
        start_worker_registry(port=free_port)
        with socket.create_connection(("127.0.0.1", free_port), timeout=5) as stalled:
            stalled.sendall(self.STALLED_POST)
            # Give the handler time to block on the missing body
            time.sleep(0.2)
            self._stop_within(4)

        assert not is_worker_registry_running()
        assert start_worker_registry(port=free_port) is True
        assert _call(free_port, "GET", "/workers") == (200, {})

    def test_silent_connection_does_not_block_stop(self, free_port: int) -> None:
        start_worker_registry(port=free_port)
        with socket.create_connection(("127.0.0.1", free_port), timeout=5):
            time.sleep(0.2)
            self._stop_within(4)
        assert not is_worker_registry_running()

    def test_stalled_request_does_not_block_other_requests(self, free_port: int) -> None:
        start_worker_registry(port=free_port)
        with socket.create_connection(("127.0.0.1", free_port), timeout=5) as stalled:
            stalled.sendall(self.STALLED_POST)
            assert _call(free_port, "POST", "/workers/w2", b'{"mode": "local"}') == (200, None)
            status, workers = _call(free_port, "GET", "/workers")
            assert list(workers) == ["w2"]
            self._stop_within(4)


class TestEndpoints:

    @pytest.fixture
    def port(self, free_port: int) -> int:
        start_worker_registry(port=free_port)
        return free_port

    def test_get_empty(self, port: int) -> None:
        assert _call(port, "GET", "/workers") == (200, {})

    def test_post_then_get(self, port: int) -> None:
        body = {"mode": "local", "port": 8787, "durableObjects": []}
        assert _call(port, "POST", "/workers/w1", json.dumps(body).encode()) == (200, None)
        assert _call(port, "GET", "/workers") == (200, {"w1": body})

    def test_name_is_percent_decoded(self, port: int) -> None:
        _call(port, "POST", "/workers/my%2Fworker", b'{"mode": "local"}')
        status, workers = _call(port, "GET", "/workers")
        assert list(workers) == ["my/worker"]

    def test_delete_missing_is_idempotent(self, port: int) -> None:
        assert _call(port, "DELETE", "/workers/ghost") == (200, None)
        assert _call(port, "DELETE", "/workers/ghost") == (200, None)
        assert _call(port, "GET", "/workers") == (200, {})

    def test_delete_all(self, port: int) -> None:
        _call(port, "POST", "/workers/a", b'{"mode": "local"}')
        _call(port, "POST", "/workers/b", b'{"mode": "remote"}')
        assert _call(port, "DELETE", "/workers") == (200, None)
        assert _call(port, "GET", "/workers") == (200, {})

    @pytest.mark.parametrize("body", [b"{not json", b'"a string"', b'{"mode": "bogus"}', b"\xff\xfe"])
    def test_malformed_body_is_rejected(self, port: int, body: bytes) -> None:
        _call(port, "POST", "/workers/keep", b'{"mode": "local", "port": 1}')

        status, payload = _call(port, "POST", "/workers/keep", body)
        assert status == 400
        assert "error" in payload

        # Registry untouched and still serving
        assert _call(port, "GET", "/workers") == (
            200, {"keep": {"mode": "local", "port": 1, "durableObjects": []}},
        )

    def test_unknown_path(self, port: int) -> None:
        assert _call(port, "GET", "/nope")[0] == 404
        assert _call(port, "GET", "/workers/w1")[0] == 404
        assert _call(port, "POST", "/workers", b'{"mode": "local"}')[0] == 404
