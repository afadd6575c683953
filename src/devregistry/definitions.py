"""Worker definitions shared between the registry server and its clients."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class WorkerMode(Enum):
    """Whether a worker runs on this machine or is a remote-bound reference"""
    LOCAL = "local"
    REMOTE = "remote"


PROTOCOLS = ("http", "https")


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    # bool is an int subclass; a port of `true` is a client bug
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' must be an integer, got {value!r}")
    return value


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string, got {value!r}")
    return value


@dataclass
class DurableObjectRef:
    """A durable-object class hosted by a worker."""
    name: str
    class_name: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "className": self.class_name}

    @classmethod
    def from_dict(cls, data: Any) -> 'DurableObjectRef':
        if not isinstance(data, dict):
            raise ValueError(f"durable object entry must be an object, got {data!r}")
        name = data.get("name")
        class_name = data.get("className")
        if not isinstance(name, str) or not isinstance(class_name, str):
            raise ValueError("durable object entry needs string 'name' and 'className'")
        return cls(name=name, class_name=class_name)


@dataclass
class WorkerDefinition:
    """How to reach one local worker and what it exposes.

    ``port``, ``protocol`` and ``host`` stay ``None`` while the worker is
    still starting up. ``durable_objects_host``/``durable_objects_port``
    override the main address for durable-object traffic only.
    """
    mode: WorkerMode = WorkerMode.LOCAL
    port: Optional[int] = None
    protocol: Optional[str] = None
    host: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    durable_objects: List[DurableObjectRef] = field(default_factory=list)
    durable_objects_host: Optional[str] = None
    durable_objects_port: Optional[int] = None

    def __post_init__(self):
        if isinstance(self.mode, str):
            self.mode = WorkerMode(self.mode)
        if self.protocol is not None and self.protocol not in PROTOCOLS:
            raise ValueError(f"protocol must be one of {PROTOCOLS}, got {self.protocol!r}")

    @property
    def url(self) -> Optional[str]:
        """Base URL of the worker, or None until its address is known."""
        if self.host is None or self.port is None:
            return None
        return f"{self.protocol or 'http'}://{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase JSON shape used on the wire.

        Unset optional fields are left out rather than sent as null.
        """
        data: Dict[str, Any] = {
            "mode": self.mode.value,
            "durableObjects": [d.to_dict() for d in self.durable_objects],
        }
        optional = {
            "port": self.port,
            "protocol": self.protocol,
            "host": self.host,
            "headers": dict(self.headers) if self.headers is not None else None,
            "durableObjectsHost": self.durable_objects_host,
            "durableObjectsPort": self.durable_objects_port,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: Any) -> 'WorkerDefinition':
        """Create from a decoded JSON body, raising ValueError if it does not fit."""
        if not isinstance(data, dict):
            raise ValueError(f"worker definition must be a JSON object, got {type(data).__name__}")

        mode = data.get("mode")
        try:
            mode = WorkerMode(mode)
        except ValueError:
            raise ValueError(f"'mode' must be 'local' or 'remote', got {mode!r}") from None

        headers = data.get("headers")
        if headers is not None:
            if not isinstance(headers, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
            ):
                raise ValueError("'headers' must map strings to strings")

        raw_objects = data.get("durableObjects") or []
        if not isinstance(raw_objects, list):
            raise ValueError("'durableObjects' must be a list")

        return cls(
            mode=mode,
            port=_optional_int(data, "port"),
            protocol=_optional_str(data, "protocol"),
            host=_optional_str(data, "host"),
            headers=dict(headers) if headers is not None else None,
            durable_objects=[DurableObjectRef.from_dict(d) for d in raw_objects],
            durable_objects_host=_optional_str(data, "durableObjectsHost"),
            durable_objects_port=_optional_int(data, "durableObjectsPort"),
        )


WorkerRegistryMapping = Dict[str, WorkerDefinition]
