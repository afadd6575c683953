"""HTTP client for the local dev registry.

Every operation tolerates the registry not running: connection refused and
connection reset mean "no registry, carry on without discovery". What happens
to other failures differs per operation and is documented on each method.
"""

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Iterable, List, Optional, Union

from ..definitions import WorkerDefinition, WorkerMode
from .server import (
    DEV_REGISTRY_HOST,
    DEV_REGISTRY_PORT,
    WORKERS_PATH,
    start_worker_registry,
    worker_registry_address,
)


logger = logging.getLogger(__name__)

_UNAVAILABLE = (ConnectionRefusedError, ConnectionResetError)

_LOOPBACK_NAMES = {"localhost", "127.0.0.1"}


def is_registry_unavailable(exc: BaseException) -> bool:
    """True if *exc* means nothing is listening on (or answering at) the registry port.

    urllib wraps socket errors raised while connecting in URLError; errors
    raised while reading the response (e.g. RemoteDisconnected, a
    ConnectionResetError) arrive unwrapped.
    """
    if isinstance(exc, urllib.error.HTTPError):
        return False
    if isinstance(exc, urllib.error.URLError):
        return isinstance(exc.reason, _UNAVAILABLE)
    return isinstance(exc, _UNAVAILABLE)


def _is_reachable(host: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except ConnectionRefusedError:
        return False
    except OSError:
        # A timeout or routing error says nothing about whether the worker is gone
        return True


class DevRegistryClient:
    """Thin HTTP client for the /workers API.

    ``timeout`` is passed to each request; ``None`` leaves sockets blocking,
    so callers that cannot afford a hang should set one.
    """

    def __init__(self, host: str = DEV_REGISTRY_HOST, port: int = DEV_REGISTRY_PORT,
                 timeout: Optional[float] = None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._base = f"http://{host}:{port}"
        # Bypass http_proxy env vars; the registry is always on loopback
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    @classmethod
    def from_config(cls, config) -> 'DevRegistryClient':
        return cls(host=config.host, port=config.port, timeout=config.timeout)

    def _warn_if_owned_elsewhere(self) -> None:
        """Warn when this process already serves a registry on a different address.

        start_worker_registry() does not rebind in that case, so requests to
        our own address will most likely be refused.
        """
        address = worker_registry_address()
        if address is None:
            return
        host, port = address
        same_host = host == self.host or {host, self.host} <= _LOOPBACK_NAMES
        if port != self.port or not same_host:
            logger.warning(
                "This process already serves the dev registry on %s:%d, not %s:%d; "
                "registrations sent to %s:%d may be lost",
                host, port, self.host, self.port, self.host, self.port,
            )

    def _worker_path(self, name: str) -> str:
        return f"{WORKERS_PATH}/{urllib.parse.quote(name, safe='')}"

    def _request(self, method: str, path: str, payload: Any = None) -> Any:
        data = None
        headers = {}
        if payload is not None:
            data = json.dumps(payload).encode()
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(f"{self._base}{path}", data=data, headers=headers, method=method)
        kwargs = {} if self.timeout is None else {"timeout": self.timeout}
        with self._opener.open(req, **kwargs) as resp:
            body = resp.read().decode()
        return json.loads(body) if body else None

    # -- operations --------------------------------------------------------

    def register(self, name: str, definition: Union[WorkerDefinition, Dict[str, Any]]) -> None:
        """Publish *definition* under *name*, starting the registry if needed.

        A failure to bind the registry port for any reason other than it
        already being in use propagates. Request failures never do: an absent
        registry is logged at debug, anything else at error.
        """
        if isinstance(definition, dict):
            definition = WorkerDefinition.from_dict(definition)

        start_worker_registry(self.host, self.port)
        self._warn_if_owned_elsewhere()
        try:
            self._request("POST", self._worker_path(name), definition.to_dict())
        except Exception as e:
            if is_registry_unavailable(e):
                logger.debug("Failed to register worker %r in local service registry: %s", name, e)
            else:
                logger.error("Failed to register worker %r in local service registry: %s",
                             name, e, exc_info=True)

    def unregister(self, name: str) -> None:
        """Remove *name* from the registry.

        Succeeds whether or not the name was registered. An absent registry is
        ignored; every other failure propagates so stale entries do not pile
        up unnoticed.
        """
        try:
            self._request("DELETE", self._worker_path(name))
        except Exception as e:
            if not is_registry_unavailable(e):
                raise
            logger.debug("Local service registry not running, nothing to unregister for %r", name)

    def list_workers(self) -> Optional[Dict[str, WorkerDefinition]]:
        """Return every registered worker, or None if the registry is not running."""
        try:
            data = self._request("GET", WORKERS_PATH)
        except Exception as e:
            if not is_registry_unavailable(e):
                raise
            logger.debug("Local service registry not running: %s", e)
            return None
        return {name: WorkerDefinition.from_dict(d) for name, d in (data or {}).items()}

    def clear(self) -> None:
        """Drop every registration. A registry that is not running is already empty."""
        try:
            self._request("DELETE", WORKERS_PATH)
        except Exception as e:
            if not is_registry_unavailable(e):
                raise
            logger.debug("Local service registry not running, nothing to clear")

    def query_bound(
        self,
        service_names: Optional[Iterable[str]] = None,
        durable_object_script_names: Optional[Iterable[str]] = None,
    ) -> Dict[str, WorkerDefinition]:
        """Return the registered workers this worker is bound to.

        A worker is bound if its name is the target of a service binding or
        the script name of a durable-object binding.
        """
        wanted = set(service_names or ()) | set(durable_object_script_names or ())
        workers = self.list_workers() or {}
        return {name: d for name, d in workers.items() if name in wanted}

    def prune_unreachable(self, probe_timeout: float = 1.0) -> List[str]:
        """Unregister local workers whose address refuses connections.

        Remote entries and workers that have not published a host and port
        yet are left alone. Returns the names that were removed.
        """
        workers = self.list_workers()
        if not workers:
            return []
        pruned = []
        for name, d in workers.items():
            if d.mode is not WorkerMode.LOCAL or d.host is None or d.port is None:
                continue
            if _is_reachable(d.host, d.port, probe_timeout):
                continue
            logger.info("Pruning unreachable worker %r (%s:%d)", name, d.host, d.port)
            self.unregister(name)
            pruned.append(name)
        return pruned


# ---------------------------------------------------------------------------
# Module-level helpers on the default address
# ---------------------------------------------------------------------------

def register_worker(name: str, definition: Union[WorkerDefinition, Dict[str, Any]]) -> None:
    DevRegistryClient().register(name, definition)


def unregister_worker(name: str) -> None:
    DevRegistryClient().unregister(name)


def get_registered_workers() -> Optional[Dict[str, WorkerDefinition]]:
    return DevRegistryClient().list_workers()


def clear_registered_workers() -> None:
    DevRegistryClient().clear()


def get_bound_registered_workers(bindings) -> Dict[str, WorkerDefinition]:
    """Resolve the workers named by a BindingConfig's service and durable-object bindings."""
    return DevRegistryClient().query_bound(
        bindings.service_names, bindings.durable_object_script_names,
    )
