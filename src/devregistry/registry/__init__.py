"""
Local dev service registry

This package provides:
1. InMemoryWorkerRegistry: dict-backed store owned by the server process
2. start_worker_registry / stop_worker_registry: the process-wide HTTP server
3. DevRegistryClient: HTTP client for register/unregister/list/clear/query-bound
"""

from .client import (
    DevRegistryClient,
    clear_registered_workers,
    get_bound_registered_workers,
    get_registered_workers,
    is_registry_unavailable,
    register_worker,
    unregister_worker,
)
from .server import (
    DEV_REGISTRY_HOST,
    DEV_REGISTRY_PORT,
    InMemoryWorkerRegistry,
    is_worker_registry_running,
    start_worker_registry,
    stop_worker_registry,
    worker_registry_address,
)

__all__ = [
    'DEV_REGISTRY_HOST',
    'DEV_REGISTRY_PORT',
    'DevRegistryClient',
    'InMemoryWorkerRegistry',
    'clear_registered_workers',
    'get_bound_registered_workers',
    'get_registered_workers',
    'is_registry_unavailable',
    'is_worker_registry_running',
    'register_worker',
    'start_worker_registry',
    'stop_worker_registry',
    'unregister_worker',
    'worker_registry_address',
]
