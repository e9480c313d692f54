"""Adaptive load balancing with circuit breaking and gray (canary) traffic routing."""

from __future__ import annotations

import copy
import math
import threading
import time
import zlib
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Sequence

from .model import (
    CircuitBreakerState,
    LoadBalancer,
    RpcRequest,
    RpcResponse,
    ServiceNode,
    setting_float,
    setting_int,
)

_DEFAULT_WEIGHTS = (0.30, 0.20, 0.20, 0.30)
_WEIGHT_KEYS = (
    ("x-lb-weight-cpu", "rpc.lb.weight.cpu"),
    ("x-lb-weight-mem", "rpc.lb.weight.mem"),
    ("x-lb-weight-qps", "rpc.lb.weight.qps"),
    ("x-lb-weight-latency", "rpc.lb.weight.latency"),
)
_LATENCY_WINDOW = 32


@dataclass(frozen=True)
class LoadBalancerDecision:
    """The outcome of the most recent node selection."""

    has_selection: bool = False
    blocked_by_circuit_breaker: bool = False
    gray_routed: bool = False
    selected_node_id: str = ""
    selected_endpoint: str = ""
    traffic_lane: str = ""
    circuit_state: CircuitBreakerState = CircuitBreakerState.CLOSED
    score: float = 0.0


@dataclass
class LoadBalancerRuntimeStats:
    """Counters accumulated by a balancer over its lifetime."""

    select_calls: int = 0
    feedback_calls: int = 0
    select_lock_wait_ns_total: int = 0
    feedback_lock_wait_ns_total: int = 0
    blocked_by_circuit_breaker: int = 0
    gray_routed: int = 0
    selected_endpoint_counts: dict[str, int] = field(default_factory=dict)


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


def _ewma(current: float, sample: float, alpha: float) -> float:
    if current < 0.0:
        return sample
    return alpha * sample + (1.0 - alpha) * current


def _metric(external: float, internal: float, fallback: float) -> float:
    if external >= 0.0:
        return external
    if internal >= 0.0:
        return internal
    return fallback


def _is_retryable_failure(code: int) -> bool:
    return code == 429 or 500 <= code < 600


@dataclass
class _NodeState:
    cpu_ewma: float = 0.45
    memory_ewma: float = 0.45
    qps_ewma: float = 0.0
    latency_ewma: float = 0.0
    failure_ewma: float = 0.0
    inflight: int = 0
    consecutive_failures: int = 0
    half_open_successes: int = 0
    half_open_inflight: int = 0
    circuit: CircuitBreakerState = CircuitBreakerState.CLOSED
    open_until: float = 0.0
    last_invoke_time: float | None = None
    latency_window: deque = field(default_factory=lambda: deque(maxlen=_LATENCY_WINDOW))

    def merge_external(self, node: ServiceNode) -> None:
        if node.cpu_utilization >= 0.0:
            self.cpu_ewma = _ewma(self.cpu_ewma, _clamp01(node.cpu_utilization), 0.35)
        if node.memory_utilization >= 0.0:
            self.memory_ewma = _ewma(self.memory_ewma, _clamp01(node.memory_utilization), 0.35)
        if node.qps >= 0.0:
            self.qps_ewma = _ewma(self.qps_ewma, node.qps, 0.25)
        if node.latency_ms >= 0.0:
            self.latency_ewma = _ewma(self.latency_ewma, node.latency_ms, 0.25)
            self.latency_window.append(node.latency_ms)

    def open_circuit(self, now: float, window_ms: int) -> None:
        self.circuit = CircuitBreakerState.OPEN
        self.open_until = now + window_ms / 1000.0
        self.half_open_successes = 0


def _metadata_text(request: RpcRequest, key: str) -> str:
    return request.metadata.get(key, "")


def _weights(request: RpcRequest) -> tuple[float, float, float, float]:
    raw = [
        max(0.0, setting_float(request, meta_key, config_key, default))
        for (meta_key, config_key), default in zip(_WEIGHT_KEYS, _DEFAULT_WEIGHTS)
    ]
    total = sum(raw)
    if not total > 0.0:
        return _DEFAULT_WEIGHTS
    return tuple(weight / total for weight in raw)  # type: ignore[return-value]


def _preferred_lane(request: RpcRequest) -> tuple[str, bool]:
    """Return the lane to route to (empty for none) and whether it is the gray lane."""
    gray_tag = _metadata_text(request, "x-gray-tag") or "gray"
    stable_tag = _metadata_text(request, "x-stable-tag") or "stable"

    lane = _metadata_text(request, "x-traffic-tag")
    if lane:
        return lane, lane == gray_tag

    percent = setting_float(request, "x-gray-percent", "rpc.gray.percent", 0.0)
    if math.isnan(percent) or percent <= 0.0:
        return "", False
    percent = min(percent, 100.0)

    source: bytes | str = (
        _metadata_text(request, "x-user-id")
        or _metadata_text(request, "x-request-id")
        or _metadata_text(request, "x-trace-id")
        or request.payload
    )
    if isinstance(source, str):
        source = source.encode("utf-8")
    bucket = zlib.crc32(source) % 100
    if bucket < percent:
        return gray_tag, True
    return stable_tag, False


class AdaptiveLoadBalancer(LoadBalancer):
    """Scores nodes by load, latency and failure history; isolates failing nodes.

    ``clock`` returns seconds on a monotonic scale and drives circuit timing.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, _NodeState] = {}
        self._last_decision = LoadBalancerDecision()
        self._stats = LoadBalancerRuntimeStats()

    def _acquire(self) -> int:
        started = time.perf_counter_ns()
        self._lock.acquire()
        return time.perf_counter_ns() - started

    def _state(self, node: ServiceNode) -> _NodeState:
        return self._states.setdefault(node.key(), _NodeState())

    def select_node(self, nodes: Sequence[ServiceNode], request: RpcRequest) -> int:
        """Return the chosen node's index, or ``len(nodes)`` if every circuit blocks."""
        if not nodes:
            return 0

        wait_ns = self._acquire()
        try:
            self._stats.select_lock_wait_ns_total += wait_ns
            self._stats.select_calls += 1
            now = self._clock()

            lane, gray_routed = _preferred_lane(request)
            candidates = [i for i, node in enumerate(nodes) if node.lane() == lane] if lane else []
            if not candidates:
                candidates = list(range(len(nodes)))
                lane = "mixed"

            cpu_w, mem_w, qps_w, latency_w = _weights(request)
            qps_target = max(1.0, setting_float(request, "x-lb-target-qps", "rpc.lb.target_qps", 220.0))
            latency_target = max(
                1.0,
                setting_float(request, "x-lb-target-latency-ms", "rpc.lb.target_latency_ms", 80.0),
            )
            max_probes = max(
                1,
                setting_int(
                    request, "x-cb-half-open-max-probes", "rpc.circuit.half_open_max_probes", 1
                ),
            )

            best: tuple[int, float, CircuitBreakerState] | None = None
            for index in candidates:
                node = nodes[index]
                state = self._state(node)
                state.merge_external(node)

                if state.circuit is CircuitBreakerState.OPEN:
                    if now < state.open_until:
                        continue
                    state.circuit = CircuitBreakerState.HALF_OPEN
                    state.half_open_successes = 0
                    state.half_open_inflight = 0
                if (
                    state.circuit is CircuitBreakerState.HALF_OPEN
                    and state.half_open_inflight >= max_probes
                ):
                    continue

                cpu = _metric(node.cpu_utilization, state.cpu_ewma, 0.45)
                mem = _metric(node.memory_utilization, state.memory_ewma, 0.45)
                qps = _metric(node.qps, state.qps_ewma, 0.0)
                latency = _metric(node.latency_ms, state.latency_ewma, 0.0)

                qps_penalty = 0.0 if qps <= 0.0 else qps / (qps + qps_target)
                latency_penalty = 0.0 if latency <= 0.0 else latency / (latency + latency_target)
                saturation = min(1.0, state.inflight / 32.0)
                risk = (
                    cpu_w * _clamp01(cpu)
                    + mem_w * _clamp01(mem)
                    + qps_w * qps_penalty
                    + latency_w * latency_penalty
                    + 0.35 * _clamp01(state.failure_ewma)
                    + 0.10 * saturation
                )
                score = max(0.0, 1.0 - risk)
                if best is None or score > best[1]:
                    best = (index, score, state.circuit)

            if gray_routed:
                self._stats.gray_routed += 1

            if best is None:
                self._last_decision = LoadBalancerDecision(
                    blocked_by_circuit_breaker=True,
                    gray_routed=gray_routed,
                    traffic_lane=lane,
                    circuit_state=CircuitBreakerState.OPEN,
                )
                self._stats.blocked_by_circuit_breaker += 1
                return len(nodes)

            index, score, circuit = best
            chosen = nodes[index]
            state = self._state(chosen)
            if state.circuit is CircuitBreakerState.HALF_OPEN:
                state.half_open_inflight += 1
            state.inflight += 1

            endpoint = chosen.endpoint()
            self._last_decision = LoadBalancerDecision(
                has_selection=True,
                gray_routed=gray_routed,
                selected_node_id=chosen.id,
                selected_endpoint=endpoint,
                traffic_lane=lane,
                circuit_state=circuit,
                score=score,
            )
            counts = self._stats.selected_endpoint_counts
            counts[endpoint] = counts.get(endpoint, 0) + 1
            return index
        finally:
            self._lock.release()

    def on_invoke_result(
        self,
        node: ServiceNode,
        request: RpcRequest,
        response: RpcResponse,
        observed_latency_ms: int,
    ) -> None:
        """Feed a call outcome back into the node's metrics and circuit breaker."""
        wait_ns = self._acquire()
        try:
            self._stats.feedback_lock_wait_ns_total += wait_ns
            self._stats.feedback_calls += 1
            now = self._clock()
            state = self._state(node)
            state.merge_external(node)

            if state.inflight > 0:
                state.inflight -= 1

            if observed_latency_ms > 0:
                sample = float(observed_latency_ms)
                state.latency_ewma = _ewma(state.latency_ewma, sample, 0.20)
                state.latency_window.append(sample)

            if state.last_invoke_time is not None:
                delta_ms = int((now - state.last_invoke_time) * 1000)
                if delta_ms > 0:
                    state.qps_ewma = _ewma(state.qps_ewma, 1000.0 / delta_ms, 0.18)
            state.last_invoke_time = now

            success = response.code == 0
            state.failure_ewma = _ewma(state.failure_ewma, 0.0 if success else 1.0, 0.28)

            failure_threshold = max(
                1,
                setting_int(request, "x-cb-failure-threshold", "rpc.circuit.failure_threshold", 3),
            )
            open_window_ms = max(50, setting_int(request, "x-cb-open-ms", "rpc.circuit.open_ms", 280))
            half_open_success_threshold = max(
                1,
                setting_int(
                    request, "x-cb-half-open-success", "rpc.circuit.half_open_success", 2
                ),
            )

            if success:
                state.consecutive_failures = 0
                if state.circuit is CircuitBreakerState.HALF_OPEN:
                    if state.half_open_inflight > 0:
                        state.half_open_inflight -= 1
                    state.half_open_successes += 1
                    if state.half_open_successes >= half_open_success_threshold:
                        state.circuit = CircuitBreakerState.CLOSED
                        state.half_open_successes = 0
                        state.half_open_inflight = 0
                return

            if state.circuit is CircuitBreakerState.HALF_OPEN:
                if state.half_open_inflight > 0:
                    state.half_open_inflight -= 1
                state.open_circuit(now, open_window_ms)
                state.consecutive_failures = failure_threshold
                return

            if _is_retryable_failure(response.code):
                state.consecutive_failures += 1
            if state.consecutive_failures >= failure_threshold:
                state.open_circuit(now, open_window_ms)
                state.half_open_inflight = 0
        finally:
            self._lock.release()

    def last_decision(self) -> LoadBalancerDecision:
        """Return the decision made by the most recent selection."""
        with self._lock:
            return self._last_decision

    def runtime_stats(self) -> LoadBalancerRuntimeStats:
        """Return a copy of the accumulated counters."""
        with self._lock:
            return copy.deepcopy(self._stats)