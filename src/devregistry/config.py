"""Configuration loading and merging for devregistry."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from .registry.server import DEV_REGISTRY_HOST, DEV_REGISTRY_PORT


@dataclass
class RegistryConfig:
    """Where the registry listens and how long clients wait on it."""
    host: str = DEV_REGISTRY_HOST
    port: int = DEV_REGISTRY_PORT
    # None means no timeout beyond the transport default
    timeout: Optional[float] = None


@dataclass
class ServiceBinding:
    binding: str
    service: str


@dataclass
class DurableObjectBinding:
    name: str
    class_name: str
    script_name: Optional[str] = None


@dataclass
class BindingConfig:
    """The bindings a worker declares on other workers."""
    services: list[ServiceBinding] = field(default_factory=list)
    durable_objects: list[DurableObjectBinding] = field(default_factory=list)

    @property
    def service_names(self) -> list[str]:
        return [s.service for s in self.services]

    @property
    def durable_object_script_names(self) -> list[str]:
        """Script names of durable-object bindings hosted by other workers."""
        return [d.script_name for d in self.durable_objects if d.script_name]


@dataclass
class ProjectConfig:
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    bindings: BindingConfig = field(default_factory=BindingConfig)


def _expect(value, kind: type, where: str):
    if not isinstance(value, kind):
        expected = "a mapping" if kind is dict else "a list"
        raise ValueError(f"'{where}' must be {expected}, got {value!r}")
    return value


def _required_str(entry: dict, key: str, where: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{where}' entry needs a string '{key}', got {entry!r}")
    return value


def _parse_registry(data: dict) -> RegistryConfig:
    raw = _expect(data.get("registry") or {}, dict, "registry")
    valid_fields = {f.name for f in fields(RegistryConfig)}
    config = RegistryConfig(**{k: v for k, v in raw.items() if k in valid_fields})

    if not isinstance(config.host, str):
        raise ValueError(f"'registry.host' must be a string, got {config.host!r}")
    if isinstance(config.port, bool) or not isinstance(config.port, int):
        raise ValueError(f"'registry.port' must be an integer, got {config.port!r}")
    if config.timeout is not None and (
        isinstance(config.timeout, bool) or not isinstance(config.timeout, (int, float))
    ):
        raise ValueError(f"'registry.timeout' must be a number, got {config.timeout!r}")
    return config


def _parse_bindings(data: dict) -> BindingConfig:
    services = []
    for entry in _expect(data.get("services") or [], list, "services"):
        _expect(entry, dict, "services[]")
        binding = entry.get("binding", "")
        if not isinstance(binding, str):
            raise ValueError(f"'services' entry has a non-string 'binding': {entry!r}")
        services.append(
            ServiceBinding(binding=binding, service=_required_str(entry, "service", "services"))
        )

    durable_objects = []
    section = _expect(data.get("durable_objects") or {}, dict, "durable_objects")
    for entry in _expect(section.get("bindings") or [], list, "durable_objects.bindings"):
        _expect(entry, dict, "durable_objects.bindings[]")
        class_name = entry.get("class_name", "")
        script_name = entry.get("script_name")
        if not isinstance(class_name, str) or not (script_name is None or isinstance(script_name, str)):
            raise ValueError(f"'durable_objects.bindings' entry has non-string names: {entry!r}")
        durable_objects.append(
            DurableObjectBinding(
                name=_required_str(entry, "name", "durable_objects.bindings"),
                class_name=class_name,
                script_name=script_name,
            )
        )
    return BindingConfig(services=services, durable_objects=durable_objects)


def apply_env(config: RegistryConfig) -> RegistryConfig:
    """Overlay DEV_REGISTRY_HOST / DEV_REGISTRY_PORT from the environment."""
    host = os.environ.get("DEV_REGISTRY_HOST")
    if host:
        config.host = host
    port = os.environ.get("DEV_REGISTRY_PORT")
    if port:
        try:
            config.port = int(port)
        except ValueError:
            raise ValueError(f"DEV_REGISTRY_PORT must be an integer, got {port!r}") from None
    return config


def load_config(path: str | Path) -> ProjectConfig:
    """Load a ProjectConfig from a YAML file.

    The file looks like::

        registry:
          port: 6284
        services:
          - binding: AUTH
            service: auth-worker
        durable_objects:
          bindings:
            - name: COUNTER
              class_name: Counter
              script_name: counter-worker
    """
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")

    try:
        return ProjectConfig(registry=_parse_registry(data), bindings=_parse_bindings(data))
    except ValueError as e:
        raise ValueError(f"{path}: {e}") from None


def merge_cli_args(config: RegistryConfig, args) -> RegistryConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(RegistryConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config
