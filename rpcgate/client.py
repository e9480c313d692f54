"""RPC client: discovery, adaptive balancing, retry budget, degradation and call auditing."""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Sequence

from .balancer import AdaptiveLoadBalancer, LoadBalancerDecision, LoadBalancerRuntimeStats
from .krpc import KrpcChannel, KrpcCodec, KrpcRequestFrame, KrpcTransportRequest
from .model import (
    InMemoryServiceDiscovery,
    LoadBalancer,
    RpcRequest,
    RpcResponse,
    ServiceDiscovery,
    ServiceNode,
    metadata_bool,
    metadata_int,
    setting_float,
    setting_int,
)

_logger = logging.getLogger("rpcgate.rpc")

_DEFAULT_WINDOW_MS = 1000
_DEFAULT_RETRY_RATIO = 0.1
_DEFAULT_MIN_RETRY_TOKENS = 10
_DEFAULT_CACHE_TTL_MS = 10_000
_PROTOBUF_CODEC_NAMES = frozenset({"protobuf", "proto", "pb"})


# --------------------------------------------------------------------------
# Retry budget
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryBudgetSnapshot:
    request_count: int = 0
    retry_count: int = 0
    max_retry_tokens: int = 0
    available_retry_tokens: int = 0


class RetryBudget:
    """Caps retries per time window to a floor plus a share of the requests seen.

    Within each window the number of retries allowed is
    ``min_retry_tokens + floor(request_count * retry_ratio)``.
    """

    def __init__(
        self,
        window_ms: int = _DEFAULT_WINDOW_MS,
        retry_ratio: float = _DEFAULT_RETRY_RATIO,
        min_retry_tokens: int = _DEFAULT_MIN_RETRY_TOKENS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_ms = max(1, int(window_ms))
        self.retry_ratio = retry_ratio if retry_ratio > 0.0 and math.isfinite(retry_ratio) else 0.0
        self.min_retry_tokens = max(0, int(min_retry_tokens))
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start = clock()
        self._requests = 0
        self._retries = 0

    def _roll(self) -> None:
        now = self._clock()
        if (now - self._window_start) * 1000.0 >= self.window_ms:
            self._window_start = now
            self._requests = 0
            self._retries = 0

    def _max_tokens(self) -> int:
        return self.min_retry_tokens + int(self._requests * self.retry_ratio)

    def record_request(self) -> None:
        """Count one original (non-retry) request in the current window."""
        with self._lock:
            self._roll()
            self._requests += 1

    def try_acquire_retry_token(self) -> bool:
        """Take one retry token; return False when the window's budget is spent."""
        with self._lock:
            self._roll()
            if self._retries >= self._max_tokens():
                return False
            self._retries += 1
            return True

    def snapshot(self) -> RetryBudgetSnapshot:
        with self._lock:
            self._roll()
            maximum = self._max_tokens()
            return RetryBudgetSnapshot(
                request_count=self._requests,
                retry_count=self._retries,
                max_retry_tokens=maximum,
                available_retry_tokens=max(0, maximum - self._retries),
            )


# --------------------------------------------------------------------------
# Audit
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class RpcInvokeAudit:
    """A record of the outcome of the most recent client call."""

    trace_id: str = ""
    span_id: str = ""
    service: str = ""
    method: str = ""
    endpoint: str = ""
    code: int = 0
    message: str = ""
    attempts: int = 0
    degraded: bool = False
    degrade_strategy: str = ""
    traffic_lane: str = ""
    circuit_state: str = ""


_globals_lock = threading.Lock()
_default: RpcClient | None = None
_last_audit = RpcInvokeAudit()
_last_decision = LoadBalancerDecision()


# --------------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------------


def _first_metadata(request: RpcRequest, *keys: str) -> str:
    for key in keys:
        value = request.metadata.get(key)
        if value:
            return value
    return ""


def _parse_codec(request: RpcRequest) -> KrpcCodec:
    name = request.metadata.get("x-krpc-codec", "").lower()
    return KrpcCodec.PROTOBUF if name in _PROTOBUF_CODEC_NAMES else KrpcCodec.RAW


def _is_degradable(code: int) -> bool:
    return code == 429 or 500 <= code < 600


def _runtime_feedback(load_balancer: LoadBalancer):
    if callable(getattr(load_balancer, "on_invoke_result", None)) and callable(
        getattr(load_balancer, "last_decision", None)
    ):
        return load_balancer
    return None


def _log_level(code: int) -> int:
    if code == 0:
        return logging.INFO
    return logging.ERROR if code >= 500 else logging.WARNING


# --------------------------------------------------------------------------
# Client
# --------------------------------------------------------------------------


class RpcClient:
    """Discovers nodes, balances between them, retries within budget and degrades on failure."""

    def __init__(
        self,
        discovery: ServiceDiscovery,
        load_balancer: LoadBalancer,
        retry_budget: RetryBudget | None = None,
        channel: KrpcChannel | None = None,
    ) -> None:
        if discovery is None or load_balancer is None:
            raise ValueError("rpc dependencies cannot be None")
        self._discovery = discovery
        self._load_balancer = load_balancer
        self._feedback = _runtime_feedback(load_balancer)
        self._retry_budget = retry_budget or RetryBudget()
        self._channel = channel or KrpcChannel()
        self._cache_lock = threading.Lock()
        self._cache: dict[str, tuple[bytes, float]] = {}

    @property
    def load_balancer(self) -> LoadBalancer:
        return self._load_balancer

    def invoke(self, request: RpcRequest) -> RpcResponse:
        """Call the service named in ``request``; failures are reported in the response code."""
        started = time.monotonic()

        def finish(response: RpcResponse, endpoint: str) -> RpcResponse:
            return self._finalize(request, response, endpoint, started)

        if not request.service:
            return finish(RpcResponse(400, "service name is empty"), "")

        nodes = self._discovery.list_nodes(request.service)
        if not nodes:
            unavailable = RpcResponse(503, "no available service nodes")
            return finish(self._degrade(request, unavailable), "")

        codec = _parse_codec(request)
        max_retries = request.max_retries or setting_int(
            request, "x-max-retries", "rpc.retry.max_retries", 1
        )
        self._retry_budget.record_request()

        last = RpcResponse(503, "upstream_error")
        last_endpoint = ""
        attempt = 0
        while True:
            attempt += 1
            if attempt > 1:
                if attempt - 1 > max_retries:
                    if last.code == 0:
                        last = replace(last, code=503, message="retry_exhausted")
                    return finish(self._degrade(request, last), last_endpoint)
                if not self._retry_budget.try_acquire_retry_token():
                    exhausted = RpcResponse(
                        429,
                        "retry_budget_exhausted",
                        attempts=attempt - 1,
                        effective_timeout_ms=last.effective_timeout_ms,
                    )
                    return finish(self._degrade(request, exhausted), last_endpoint)

            selected = self._load_balancer.select_node(nodes, request)
            if not 0 <= selected < len(nodes):
                if self._feedback is None:
                    node = nodes[0]
                    response, _ = self._call_node(request, codec, node, attempt, request.max_retries)
                    if response.code == 0:
                        self._remember(request, response.payload)
                        return finish(response, node.endpoint())
                    return finish(self._degrade(request, response), node.endpoint())
                unavailable = RpcResponse(503, "no_healthy_service_nodes", attempts=attempt - 1)
                return finish(self._degrade(request, unavailable), last_endpoint)

            node = nodes[selected]
            endpoint = node.endpoint()
            last_endpoint = endpoint
            response, retryable = self._call_node(request, codec, node, attempt, max_retries)

            if response.code == 0:
                self._remember(request, response.payload)
                response.message = response.message or "ok"
                return finish(response, endpoint)

            last = response
            if not retryable:
                return finish(self._degrade(request, last), endpoint)

    def _call_node(
        self,
        request: RpcRequest,
        codec: KrpcCodec,
        node: ServiceNode,
        attempt: int,
        max_retries: int,
    ) -> tuple[RpcResponse, bool]:
        endpoint = node.endpoint()
        frame = KrpcRequestFrame(
            service=request.service,
            method=request.method,
            payload=request.payload,
            metadata=dict(request.metadata),
            timeout_ms=request.timeout_ms,
            max_retries=max_retries,
        )
        transport = KrpcTransportRequest(
            endpoint=endpoint,
            downstream_timeout_ms=request.timeout_ms,
            attempt=attempt,
        )
        call_started = time.monotonic()
        result = self._channel.invoke(transport, frame, codec)
        observed_ms = int((time.monotonic() - call_started) * 1000)

        response = RpcResponse(
            code=result.code,
            message=result.message,
            payload=result.payload,
            attempts=attempt,
            effective_timeout_ms=result.effective_timeout_ms,
            cancelled=result.cancelled,
            cancel_reason=result.cancel_reason,
            selected_endpoint=endpoint,
        )
        if self._feedback is not None:
            self._feedback.on_invoke_result(node, request, response, observed_ms)
            decision = self._feedback.last_decision()
            response.traffic_lane = decision.traffic_lane
            response.circuit_state = decision.circuit_state.value
        return response, result.retryable

    def _cache_key(self, request: RpcRequest) -> str:
        return request.metadata.get("x-fallback-cache-key") or f"{request.service}|{request.method}"

    def _remember(self, request: RpcRequest, payload: bytes) -> None:
        if not metadata_bool(request, "x-fallback-cache", True):
            return
        with self._cache_lock:
            self._cache[self._cache_key(request)] = (payload, time.monotonic())

    def _cached_payload(self, request: RpcRequest) -> bytes | None:
        with self._cache_lock:
            entry = self._cache.get(self._cache_key(request))
        if entry is None:
            return None
        payload, updated_at = entry
        ttl_ms = metadata_int(request, "x-fallback-cache-ttl-ms", _DEFAULT_CACHE_TTL_MS)
        if ttl_ms > 0 and (time.monotonic() - updated_at) * 1000.0 > ttl_ms:
            return None
        return payload

    def _degrade(self, request: RpcRequest, failure: RpcResponse) -> RpcResponse:
        if failure.code == 0 or not _is_degradable(failure.code):
            return failure
        if metadata_bool(request, "x-fallback-cache", True):
            cached = self._cached_payload(request)
            if cached is not None:
                return replace(
                    failure,
                    code=0,
                    message="degraded_cache_fallback",
                    payload=cached,
                    degraded=True,
                    degrade_strategy="cache",
                )
        static = request.metadata.get("x-fallback-static")
        if static:
            return replace(
                failure,
                code=0,
                message="degraded_static_fallback",
                payload=static,
                degraded=True,
                degrade_strategy="static",
            )
        return failure

    def _finalize(
        self, request: RpcRequest, response: RpcResponse, endpoint: str, started: float
    ) -> RpcResponse:
        global _last_audit, _last_decision
        budget = self._retry_budget.snapshot()
        response.retry_budget_request_count = budget.request_count
        response.retry_budget_retry_count = budget.retry_count
        response.retry_budget_max_tokens = budget.max_retry_tokens
        response.retry_budget_available_tokens = budget.available_retry_tokens

        if response.cancelled and not response.cancel_reason:
            response.cancel_reason = "cancelled"
        if not response.selected_endpoint:
            response.selected_endpoint = endpoint

        if self._feedback is not None:
            decision = self._feedback.last_decision()
            with _globals_lock:
                _last_decision = decision
            response.traffic_lane = response.traffic_lane or decision.traffic_lane
            response.circuit_state = response.circuit_state or decision.circuit_state.value

        audit = RpcInvokeAudit(
            trace_id=_first_metadata(request, "x-trace-id", "trace_id"),
            span_id=_first_metadata(request, "x-span-id", "span_id"),
            service=request.service,
            method=request.method,
            endpoint=response.selected_endpoint,
            code=response.code,
            message=response.message,
            attempts=response.attempts,
            degraded=response.degraded,
            degrade_strategy=response.degrade_strategy,
            traffic_lane=response.traffic_lane,
            circuit_state=response.circuit_state,
        )
        with _globals_lock:
            _last_audit = audit

        if _logger.isEnabledFor(_log_level(audit.code)):
            fields = {
                "event": "rpc.invoke",
                "trace_id": audit.trace_id,
                "span_id": audit.span_id,
                "service": audit.service,
                "method": audit.method,
                "endpoint": audit.endpoint,
                "code": audit.code,
                "message": audit.message,
                "attempts": audit.attempts,
                "degraded": audit.degraded,
                "degrade_strategy": audit.degrade_strategy,
                "traffic_lane": audit.traffic_lane,
                "circuit_state": audit.circuit_state,
                "latency_ms": int((time.monotonic() - started) * 1000),
                "slow_stage": "rpc.invoke",
            }
            _logger.log(_log_level(audit.code), "%s", json.dumps(fields, sort_keys=True))
        return response


# --------------------------------------------------------------------------
# Process-wide client
# --------------------------------------------------------------------------


def _budget_from_config() -> RetryBudget:
    window_ms = setting_int(None, None, "rpc.retry.window_ms", _DEFAULT_WINDOW_MS)
    ratio = setting_float(None, None, "rpc.retry.ratio", _DEFAULT_RETRY_RATIO)
    tokens = setting_int(None, None, "rpc.retry.min_tokens", _DEFAULT_MIN_RETRY_TOKENS)
    return RetryBudget(window_ms=window_ms or 1, retry_ratio=ratio, min_retry_tokens=tokens)


def init_client(
    discovery: ServiceDiscovery | None = None,
    load_balancer: LoadBalancer | None = None,
    retry_budget: RetryBudget | None = None,
) -> RpcClient:
    """Create and install the process-wide default client.

    Missing parts default to the built-in discovery table, an adaptive balancer
    and a retry budget configured from ``rpc.retry.*`` settings.
    """
    global _default
    client = RpcClient(
        discovery if discovery is not None else InMemoryServiceDiscovery(),
        load_balancer if load_balancer is not None else AdaptiveLoadBalancer(),
        retry_budget if retry_budget is not None else _budget_from_config(),
    )
    with _globals_lock:
        _default = client
    return client


def default_client() -> RpcClient:
    """Return the default client, creating one with defaults on first use."""
    with _globals_lock:
        if _default is not None:
            return _default
    return init_client()


def last_invoke_audit_snapshot() -> RpcInvokeAudit:
    with _globals_lock:
        return _last_audit


def last_load_balancer_decision_snapshot() -> LoadBalancerDecision:
    with _globals_lock:
        return _last_decision


def load_balancer_runtime_stats() -> LoadBalancerRuntimeStats:
    """Counters of the default client's balancer; empty if it keeps none."""
    with _globals_lock:
        client = _default
    if client is None:
        return LoadBalancerRuntimeStats()
    stats = getattr(client.load_balancer, "runtime_stats", None)
    return stats() if callable(stats) else LoadBalancerRuntimeStats()


def _nodes_sequence(nodes: Sequence[ServiceNode]) -> list[ServiceNode]:
    return list(nodes)