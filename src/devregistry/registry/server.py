"""
Local dev registry server

This module provides:
- InMemoryWorkerRegistry: the dict-backed name -> WorkerDefinition store
- the HTTP handler exposing the /workers endpoints
- start_worker_registry / stop_worker_registry: the process-wide server handle

Only one registry serves a machine at a time. Whichever process wins the bind
on the well-known port owns it; every other process acts as a pure client.
"""

import errno
import json
import logging
import socket
import threading
import time
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

from ..definitions import WorkerDefinition


logger = logging.getLogger(__name__)

DEV_REGISTRY_HOST = "127.0.0.1"
DEV_REGISTRY_PORT = 6284

# Seconds a connection may sit idle mid-request before its handler gives up
REQUEST_TIMEOUT = 5.0
# Seconds stop_worker_registry() waits for in-flight requests before cutting them off
DRAIN_TIMEOUT = 1.0


# ---------------------------------------------------------------------------
# In-memory registry (lives inside the server-owning process)
# ---------------------------------------------------------------------------

class InMemoryWorkerRegistry:
    """Thread-safe, dict-backed worker registry.

    A later upsert for a name replaces the earlier definition wholesale.
    Entries never expire.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._workers: Dict[str, WorkerDefinition] = {}

    def upsert(self, name: str, definition: WorkerDefinition) -> None:
        with self._lock:
            self._workers[name] = definition

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._workers.pop(name, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._workers = {}

    def snapshot(self) -> Dict[str, WorkerDefinition]:
        with self._lock:
            return dict(self._workers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)


# ---------------------------------------------------------------------------
# HTTP handler
# ---------------------------------------------------------------------------

WORKERS_PATH = "/workers"


def _make_handler(registry: InMemoryWorkerRegistry):
    """Create a handler class bound to the given registry instance."""

    class WorkerRegistryHTTPHandler(BaseHTTPRequestHandler):

        timeout = REQUEST_TIMEOUT

        def log_message(self, format, *args):
            logger.debug("registry %s - %s", self.address_string(), format % args)

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _not_found(self):
            self._json_response({"error": "not found"}, status=404)

        def _route(self) -> Tuple[bool, Optional[str]]:
            """Return (matched, worker name) for the request path.

            ``/workers`` matches with no name, ``/workers/<name>`` with the
            percent-decoded name.
            """
            path = urllib.parse.urlparse(self.path).path.rstrip("/")
            if path == WORKERS_PATH:
                return True, None
            prefix = WORKERS_PATH + "/"
            if path.startswith(prefix):
                return True, urllib.parse.unquote(path[len(prefix):])
            return False, None

        def _read_json(self) -> Any:
            length = int(self.headers.get("Content-Length") or 0)
            raw = self.rfile.read(length) if length > 0 else b""
            return json.loads(raw.decode() or "null")

        def do_GET(self):
            matched, name = self._route()
            if not matched or name is not None:
                self._not_found()
                return
            workers = registry.snapshot()
            self._json_response({n: d.to_dict() for n, d in workers.items()})

        def do_POST(self):
            matched, name = self._route()
            if not matched or name is None:
                self._not_found()
                return
            try:
                definition = WorkerDefinition.from_dict(self._read_json())
            except (ValueError, UnicodeDecodeError) as e:
                # json.JSONDecodeError is a ValueError
                logger.debug("Rejected definition for worker %r: %s", name, e)
                self._json_response({"error": f"invalid worker definition: {e}"}, status=400)
                return
            registry.upsert(name, definition)
            self._json_response(None)

        def do_DELETE(self):
            matched, name = self._route()
            if not matched:
                self._not_found()
                return
            if name is None:
                registry.clear()
            else:
                registry.remove(name)
            self._json_response(None)

    return WorkerRegistryHTTPHandler


class _RegistryHTTPServer(ThreadingHTTPServer):
    """ThreadingHTTPServer that joins handler threads on close and reports it."""

    # Non-daemon handler threads are joined by server_close(); drain() bounds
    # how long that can take.
    daemon_threads = False
    # SO_REUSEPORT would let a second process bind the same port
    allow_reuse_port = False

    def __init__(self, address, handler_class, registry: InMemoryWorkerRegistry,
                 on_close: Callable[['_RegistryHTTPServer'], None]):
        self.registry = registry
        self._on_close = on_close
        self._active_lock = threading.Lock()
        self._active: set[socket.socket] = set()
        super().__init__(address, handler_class)

    def process_request(self, request, client_address):
        with self._active_lock:
            self._active.add(request)
        super().process_request(request, client_address)

    def shutdown_request(self, request):
        with self._active_lock:
            self._active.discard(request)
        super().shutdown_request(request)

    def handle_error(self, request, client_address):
        # Connections cut off by drain() end up here; keep them off stderr
        logger.debug("Registry request from %s failed", client_address, exc_info=True)

    def drain(self, timeout: float) -> None:
        """Wait up to *timeout* seconds for in-flight requests, then cut off the rest."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._active_lock:
                if not self._active:
                    return
            time.sleep(0.05)

        with self._active_lock:
            lingering = list(self._active)
        for request in lingering:
            try:
                request.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        if lingering:
            logger.debug("Cut off %d lingering registry connection(s)", len(lingering))

    def server_close(self):
        try:
            super().server_close()
        finally:
            self._on_close(self)


# ---------------------------------------------------------------------------
# Process-wide server handle
# ---------------------------------------------------------------------------

class _ServerHandle:
    """The one registry server this process may own.

    Set when a bind succeeds, cleared once the listening socket is closed.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.server: Optional[_RegistryHTTPServer] = None
        self.thread: Optional[threading.Thread] = None


_handle = _ServerHandle()


def _on_server_closed(server: _RegistryHTTPServer) -> None:
    with _handle.lock:
        if _handle.server is server:
            _handle.server = None
            _handle.thread = None


def start_worker_registry(
    host: str = DEV_REGISTRY_HOST,
    port: int = DEV_REGISTRY_PORT,
) -> bool:
    """Start the registry server unless one is already serving the port.

    Returns True when this process owns the running server and False when
    another process holds the port. Bind errors other than "address in use"
    propagate.
    """
    with _handle.lock:
        if _handle.server is not None:
            return True

        registry = InMemoryWorkerRegistry()
        try:
            server = _RegistryHTTPServer(
                (host, port), _make_handler(registry), registry, on_close=_on_server_closed,
            )
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                logger.debug("Dev registry port %s:%d already in use, acting as client", host, port)
                return False
            raise

        thread = threading.Thread(
            target=server.serve_forever, name="devregistry-server", daemon=True,
        )
        _handle.server = server
        _handle.thread = thread
        thread.start()

    logger.info("Dev registry listening on %s:%d", *server.server_address[:2])
    return True


def stop_worker_registry(drain_timeout: float = DRAIN_TIMEOUT) -> None:
    """Drain in-flight requests, close the listener and forget the server.

    Requests still running after *drain_timeout* seconds have their
    connections shut down so a stalled client cannot hold up the stop.
    """
    with _handle.lock:
        server, thread = _handle.server, _handle.thread
        if server is None:
            return
        server.shutdown()
        server.drain(drain_timeout)
        server.server_close()
        if thread is not None:
            thread.join()
        _handle.server = None
        _handle.thread = None
    logger.info("Dev registry stopped")


def is_worker_registry_running() -> bool:
    """Whether this process currently owns a live registry server."""
    return _handle.server is not None


def worker_registry_address() -> Optional[Tuple[str, int]]:
    """(host, port) of the server this process owns, if any."""
    server = _handle.server
    if server is None:
        return None
    return server.server_address[0], server.server_address[1]
