"""RPC client data model, metadata/config setting parsing and discovery interfaces."""

from __future__ import annotations

import abc
import enum
import math
import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from .net import config_snapshot, parse_bool

_U64_MAX = (1 << 64) - 1
_UINT_PATTERN = re.compile(r"\+?\d+")
_FLOAT_PATTERN = re.compile(
    r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf(?:inity)?|nan)",
    re.IGNORECASE,
)


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


@dataclass
class ServiceNode:
    """A service instance; negative metrics mean "not reported"."""

    id: str = ""
    host: str = ""
    port: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    cpu_utilization: float = -1.0
    memory_utilization: float = -1.0
    qps: float = -1.0
    latency_ms: float = -1.0

    def key(self) -> str:
        """Identity used for per-node state: the id, or the endpoint if it has none."""
        return self.id or self.endpoint()

    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def lane(self) -> str:
        """Traffic lane from the ``lane`` or ``tag`` label, defaulting to stable."""
        return self.labels.get("lane") or self.labels.get("tag") or "stable"


@dataclass
class RpcRequest:
    service: str = ""
    method: str = ""
    payload: bytes = b""
    metadata: dict[str, str] = field(default_factory=dict)
    timeout_ms: int = 0
    max_retries: int = 0

    def __post_init__(self) -> None:
        self.payload = _as_bytes(self.payload)


@dataclass
class RpcResponse:
    code: int = 0
    message: str = ""
    payload: bytes = b""
    attempts: int = 0
    effective_timeout_ms: int = 0
    cancelled: bool = False
    cancel_reason: str = ""
    degraded: bool = False
    degrade_strategy: str = ""
    selected_endpoint: str = ""
    traffic_lane: str = ""
    circuit_state: str = ""
    retry_budget_request_count: int = 0
    retry_budget_retry_count: int = 0
    retry_budget_max_tokens: int = 0
    retry_budget_available_tokens: int = 0

    def __post_init__(self) -> None:
        self.payload = _as_bytes(self.payload)


class CircuitBreakerState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


# --------------------------------------------------------------------------
# Setting lookup
# --------------------------------------------------------------------------


def _parse_uint(text: str) -> int | None:
    if not _UINT_PATTERN.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _U64_MAX else None


def _parse_float(text: str) -> float | None:
    if not _FLOAT_PATTERN.fullmatch(text):
        return None
    value = float(text)
    return value if math.isfinite(value) or not text[-1].isdigit() else None


def config_value(key: str) -> str | None:
    """Return a non-empty configuration value, or None."""
    return config_snapshot().values.get(key) or None


def _metadata_text(request: RpcRequest | None, key: str | None) -> str | None:
    if request is None or key is None:
        return None
    return request.metadata.get(key) or None


def metadata_int(request: RpcRequest | None, key: str | None, default: int) -> int:
    """Unsigned integer from request metadata, or ``default`` if absent or invalid."""
    text = _metadata_text(request, key)
    if text is None:
        return default
    parsed = _parse_uint(text)
    return default if parsed is None else parsed


def metadata_float(request: RpcRequest | None, key: str | None, default: float) -> float:
    """Number from request metadata, or ``default`` if absent or invalid."""
    text = _metadata_text(request, key)
    if text is None:
        return default
    parsed = _parse_float(text)
    return default if parsed is None else parsed


def metadata_bool(request: RpcRequest | None, key: str | None, default: bool) -> bool:
    """Boolean word from request metadata, or ``default`` if absent or unrecognised."""
    text = _metadata_text(request, key)
    return default if text is None else parse_bool(text, default)


def setting_int(
    request: RpcRequest | None, metadata_key: str | None, config_key: str, default: int
) -> int:
    """Unsigned integer from metadata, else configuration, else ``default``.

    Pass ``None`` for ``request`` to consult the configuration only.
    """
    configured = default
    text = config_value(config_key)
    if text is not None:
        parsed = _parse_uint(text)
        if parsed is not None:
            configured = parsed
    return metadata_int(request, metadata_key, configured)


def setting_float(
    request: RpcRequest | None, metadata_key: str | None, config_key: str, default: float
) -> float:
    """Number from metadata, else configuration, else ``default``.

    Pass ``None`` for ``request`` to consult the configuration only.
    """
    configured = default
    text = config_value(config_key)
    if text is not None:
        parsed = _parse_float(text)
        if parsed is not None:
            configured = parsed
    return metadata_float(request, metadata_key, configured)


# --------------------------------------------------------------------------
# Discovery and balancing interfaces
# --------------------------------------------------------------------------


class ServiceDiscovery(abc.ABC):
    @abc.abstractmethod
    def list_nodes(self, service_name: str) -> list[ServiceNode]:
        """Return the nodes serving ``service_name``; empty if unknown."""


def _default_services() -> dict[str, list[ServiceNode]]:
    return {
        "gateway.backend": [
            ServiceNode("node-a", "127.0.0.1", 9000, {"lane": "stable", "az": "a"}, 0.28, 0.34, 120.0, 24.0),
            ServiceNode("node-b", "127.0.0.1", 9001, {"lane": "gray", "az": "b"}, 0.72, 0.75, 280.0, 110.0),
        ],
        "svc.echo": [
            ServiceNode("a", "10.0.0.1", 8080, {"lane": "stable"}, 0.25, 0.23, 90.0, 18.0),
            ServiceNode("b", "10.0.0.2", 8081, {"lane": "gray"}, 0.63, 0.60, 210.0, 84.0),
        ],
    }


class InMemoryServiceDiscovery(ServiceDiscovery):
    """Discovery from a fixed table; defaults to a small built-in set of services."""

    def __init__(self, services: Mapping[str, Sequence[ServiceNode]] | None = None) -> None:
        source = _default_services() if services is None else services
        self._services = {name: list(nodes) for name, nodes in source.items()}

    def list_nodes(self, service_name: str) -> list[ServiceNode]:
        return list(self._services.get(service_name, ()))


class LoadBalancer(abc.ABC):
    @abc.abstractmethod
    def select_node(self, nodes: Sequence[ServiceNode], request: RpcRequest) -> int:
        """Return the index of the chosen node; ``len(nodes)`` or more means none."""