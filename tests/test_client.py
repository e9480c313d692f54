import socket
import threading
import time

import pytest

from rpcgate.balancer import AdaptiveLoadBalancer
from rpcgate.client import (
    RetryBudget,
    RpcClient,
    default_client,
    init_client,
    last_invoke_audit_snapshot,
    last_load_balancer_decision_snapshot,
    load_balancer_runtime_stats,
)
from rpcgate.krpc import KrpcChannel, KrpcResponseFrame, decode_request, encode_response
from rpcgate.model import InMemoryServiceDiscovery, LoadBalancer, RpcRequest, ServiceNode
from rpcgate.net import (
    NetCallResponse,
    RequestContext,
    config_snapshot,
    last_effective_timeout_ms,
    request_scope,
    update_config,
)


@pytest.fixture(autouse=True)
def clean_config():
    stale = {
        key: None
        for key in config_snapshot().values
        if key.startswith("rpc.") or key.startswith("net.tls.")
    }
    if stale:
        update_config(stale)
    yield


class EchoBackend:
    def __init__(self, prefix: bytes):
        self.prefix = prefix
        self.fail = threading.Event()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(64)
        self._sock.settimeout(0.05)
        self.port = self._sock.getsockname()[1]
        self._running = threading.Event()
        self._running.set()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    @property
    def endpoint(self) -> str:
        return f"127.0.0.1:{self.port}"

    def _loop(self):
        while self._running.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with conn:
                self._handle(conn)

    def _handle(self, conn):
        conn.settimeout(2.0)
        chunks = []
        try:
            while True:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                chunks.append(chunk)
                if len(chunk) < 4096:
                    break
            if self.fail.is_set():
                return
            conn.sendall(self.prefix + b"".join(chunks))
        except OSError:
            return

    def close(self):
        self._running.clear()
        self._thread.join(timeout=2)
        self._sock.close()


@pytest.fixture
def make_backend():
    backends = []

    def factory(prefix: bytes) -> EchoBackend:
        backend = EchoBackend(prefix)
        backends.append(backend)
        return backend

    yield factory
    for backend in backends:
        backend.close()


class FirstNodeBalancer(LoadBalancer):
    def select_node(self, nodes, request):
        return 0


class LastNodeBalancer(LoadBalancer):
    def select_node(self, nodes, request):
        return len(nodes) - 1 if nodes else 0


class NoneBalancer(LoadBalancer):
    def select_node(self, nodes, request):
        return len(nodes) + 5


class ScriptedInvoker:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def fake_client(invoker, balancer=None, budget=None, nodes=None):
    services = {"svc.fake": nodes or [ServiceNode("n1", "127.0.0.1", 7001)]}
    return RpcClient(
        InMemoryServiceDiscovery(services),
        balancer or FirstNodeBalancer(),
        retry_budget=budget or RetryBudget(min_retry_tokens=10),
        channel=KrpcChannel(invoker=invoker),
    )


# --------------------------------------------------------------------------
# Retry budget
# --------------------------------------------------------------------------


def test_retry_budget_floor_tokens_then_exhausted():
    budget = RetryBudget(retry_ratio=0.0, min_retry_tokens=3)
    budget.record_request()
    grants = [budget.try_acquire_retry_token() for _ in range(4)]
    assert grants == [True, True, True, False]
    snap = budget.snapshot()
    assert (snap.request_count, snap.retry_count, snap.max_retry_tokens, snap.available_retry_tokens) == (
        1,
        3,
        3,
        0,
    )


def test_retry_budget_ratio_adds_tokens():
    budget = RetryBudget(retry_ratio=0.5, min_retry_tokens=0)
    for _ in range(4):
        budget.record_request()
    assert budget.snapshot().max_retry_tokens == 2
    assert [budget.try_acquire_retry_token() for _ in range(3)] == [True, True, False]


def test_retry_budget_window_resets():
    now = [100.0]
    budget = RetryBudget(window_ms=500, retry_ratio=0.0, min_retry_tokens=1, clock=lambda: now[0])
    budget.record_request()
    assert budget.try_acquire_retry_token() is True
    assert budget.try_acquire_retry_token() is False
    now[0] += 0.6
    assert budget.snapshot().request_count == 0
    assert budget.try_acquire_retry_token() is True


# --------------------------------------------------------------------------
# Client with scripted transport
# --------------------------------------------------------------------------


def test_client_requires_dependencies():
    with pytest.raises(ValueError):
        RpcClient(None, FirstNodeBalancer())


def test_retryable_failure_is_retried_until_success():
    invoker = ScriptedInvoker(
        NetCallResponse(503, "connect_failed:111", retryable=True),
        NetCallResponse(0, "ok", b"done"),
    )
    client = fake_client(invoker)
    response = client.invoke(RpcRequest("svc.fake", "Call", b"x", max_retries=3))
    assert response.code == 0
    assert response.payload == b"done"
    assert response.attempts == 2
    assert [r.attempt for r in invoker.requests] == [1, 2]
    assert response.retry_budget_retry_count == 1
    assert response.selected_endpoint == "127.0.0.1:7001"


def test_retries_exhausted_reports_last_failure():
    invoker = ScriptedInvoker(NetCallResponse(504, "recv_timeout", retryable=True))
    client = fake_client(invoker)
    response = client.invoke(
        RpcRequest("svc.fake", "Call", b"x", max_retries=2, metadata={"x-fallback-cache": "0"})
    )
    assert response.code == 504
    assert response.attempts == 3
    assert len(invoker.requests) == 3


def test_non_retryable_failure_uses_static_fallback():
    invoker = ScriptedInvoker(NetCallResponse(502, "upstream_closed_without_payload"))
    client = fake_client(invoker)
    response = client.invoke(
        RpcRequest(
            "svc.fake",
            "Call",
            b"x",
            metadata={"x-fallback-cache": "0", "x-fallback-static": "static-body"},
        )
    )
    assert len(invoker.requests) == 1
    assert response.code == 0
    assert response.degraded is True
    assert response.degrade_strategy == "static"
    assert response.payload == b"static-body"
    assert response.message == "degraded_static_fallback"


def test_cache_fallback_after_success():
    invoker = ScriptedInvoker(
        NetCallResponse(0, "ok", b"fresh"),
        NetCallResponse(503, "down", retryable=True),
    )
    client = fake_client(invoker)
    first = client.invoke(RpcRequest("svc.fake", "Call", b"x"))
    second = client.invoke(RpcRequest("svc.fake", "Call", b"x", max_retries=1))
    assert first.degraded is False
    assert second.code == 0
    assert second.degraded is True
    assert second.degrade_strategy == "cache"
    assert second.payload == b"fresh"


def test_cancelled_call_is_not_degraded():
    invoker = ScriptedInvoker(NetCallResponse(499, "client_gone", cancelled=True))
    client = fake_client(invoker)
    response = client.invoke(
        RpcRequest("svc.fake", "Call", b"x", metadata={"x-fallback-static": "static-body"})
    )
    assert response.code == 499
    assert response.degraded is False
    assert response.cancelled is True
    assert response.cancel_reason == "cancelled"


def test_protobuf_codec_frames_request_and_response():
    seen = []

    def invoker(request):
        frame = decode_request(request.payload)
        seen.append(frame)
        reply = KrpcResponseFrame(code=0, message="done", payload=b"pb:" + frame.payload)
        return NetCallResponse(0, "ok", encode_response(reply), effective_timeout_ms=77)

    client = fake_client(invoker)
    response = client.invoke(
        RpcRequest("svc.fake", "Echo", b"hello", timeout_ms=250, metadata={"x-krpc-codec": "PB"})
    )
    assert response.code == 0
    assert response.payload == b"pb:hello"
    assert response.message == "done"
    assert response.effective_timeout_ms == 77
    assert (seen[0].service, seen[0].method, seen[0].timeout_ms, seen[0].max_retries) == (
        "svc.fake",
        "Echo",
        250,
        1,
    )
    assert seen[0].metadata["x-krpc-codec"] == "PB"


def test_out_of_range_selection_without_feedback_uses_first_node():
    invoker = ScriptedInvoker(NetCallResponse(0, "ok", b"pong"))
    nodes = [ServiceNode("a", "127.0.0.1", 7001), ServiceNode("b", "127.0.0.1", 7002)]
    client = fake_client(invoker, balancer=NoneBalancer(), nodes=nodes)
    response = client.invoke(RpcRequest("svc.fake", "Call", b"x"))
    assert response.code == 0
    assert invoker.requests[0].endpoint == "127.0.0.1:7001"
    assert response.selected_endpoint == "127.0.0.1:7001"


def test_audit_records_trace_and_span():
    invoker = ScriptedInvoker(NetCallResponse(0, "ok", b"pong"))
    client = fake_client(invoker)
    client.invoke(
        RpcRequest("svc.fake", "Audit", b"x", metadata={"trace_id": "t-1", "x-span-id": "s-9"})
    )
    audit = last_invoke_audit_snapshot()
    assert (audit.trace_id, audit.span_id, audit.service, audit.method) == ("t-1", "s-9", "svc.fake", "Audit")
    assert audit.code == 0
    assert audit.endpoint == "127.0.0.1:7001"


def test_adaptive_balancer_decision_is_published():
    invoker = ScriptedInvoker(NetCallResponse(0, "ok", b"pong"))
    client = fake_client(invoker, balancer=AdaptiveLoadBalancer())
    response = client.invoke(RpcRequest("svc.fake", "Call", b"x"))
    decision = last_load_balancer_decision_snapshot()
    assert decision.has_selection is True
    assert decision.selected_endpoint == "127.0.0.1:7001"
    assert response.circuit_state == "closed"
    assert response.traffic_lane == "mixed"


# --------------------------------------------------------------------------
# Process-wide client
# --------------------------------------------------------------------------


def test_default_client_is_the_initialised_one():
    installed = init_client(InMemoryServiceDiscovery({}), FirstNodeBalancer())
    assert default_client() is installed
    assert default_client().invoke(RpcRequest("svc.none")).code == 503


def test_runtime_stats_follow_default_balancer():
    client = init_client(InMemoryServiceDiscovery({}), AdaptiveLoadBalancer())
    assert load_balancer_runtime_stats().select_calls == 0
    client.load_balancer.select_node([ServiceNode("a", "127.0.0.1", 1)], RpcRequest("svc"))
    assert load_balancer_runtime_stats().select_calls == 1


def test_retry_budget_from_config():
    update_config({"rpc.retry.min_tokens": "2", "rpc.retry.ratio": "0"})
    client = init_client(
        InMemoryServiceDiscovery({"svc.bad": [ServiceNode("bad", "127.0.0.1", 1)]}),
        FirstNodeBalancer(),
    )
    response = client.invoke(RpcRequest("svc.bad", "Call", b"x", timeout_ms=300, max_retries=100))
    assert response.code == 429
    assert response.message == "retry_budget_exhausted"
    assert response.attempts == 3
    assert response.retry_budget_max_tokens == 2


# --------------------------------------------------------------------------
# Abstraction cases
# --------------------------------------------------------------------------


def test_invoke_hits_injected_last_node(make_backend):
    backend = make_backend(b"tcp-echo:")
    discovery = InMemoryServiceDiscovery(
        {
            "svc.echo": [
                ServiceNode("a", "127.0.0.1", 1),
                ServiceNode("b", "127.0.0.1", backend.port),
            ]
        }
    )
    client = init_client(discovery, LastNodeBalancer())
    response = client.invoke(RpcRequest("svc.echo", "Echo", b"ping", timeout_ms=100))
    assert response.code == 0, response.message
    assert response.payload == b"tcp-echo:ping"


def test_missing_service_is_bad_request():
    client = init_client(InMemoryServiceDiscovery({}), LastNodeBalancer())
    assert client.invoke(RpcRequest()).code == 400


def test_unknown_service_is_unavailable():
    client = init_client(InMemoryServiceDiscovery({}), LastNodeBalancer())
    assert client.invoke(RpcRequest("svc.unknown")).code == 503


# --------------------------------------------------------------------------
# Timeout layering and retry budget cases
# --------------------------------------------------------------------------


def test_upstream_deadline_limits_effective_timeout(make_backend):
    backend = make_backend(b"tcp-echo:")
    client = init_client(
        InMemoryServiceDiscovery({"gateway.backend": [ServiceNode("ok", "127.0.0.1", backend.port)]}),
        FirstNodeBalancer(),
    )
    request = RpcRequest("gateway.backend", "Echo", b"budget-check", timeout_ms=500)
    with request_scope(RequestContext(deadline=time.monotonic() + 0.120)):
        response = client.invoke(request)
    assert response.code == 0, response.message
    assert 0 < response.effective_timeout_ms <= 150
    assert response.effective_timeout_ms == last_effective_timeout_ms()
    assert response.payload.endswith(b"budget-check")


def test_retry_budget_stops_runaway_retries():
    client = init_client(
        InMemoryServiceDiscovery({"gateway.unreachable": [ServiceNode("bad", "127.0.0.1", 1)]}),
        FirstNodeBalancer(),
    )
    request = RpcRequest("gateway.unreachable", "RetryCase", b"force-fail", timeout_ms=400, max_retries=100000)
    codes = []
    attempts = []
    for _ in range(200):
        with request_scope(RequestContext(deadline=time.monotonic() + 1.0)):
            response = client.invoke(request)
        codes.append(response.code)
        attempts.append(response.attempts)
    assert set(codes) <= {429, 503, 504}
    assert codes.count(429) > 0
    assert max(attempts) <= 80


# --------------------------------------------------------------------------
# Adaptive balancing, circuit breaking and degradation cases
# --------------------------------------------------------------------------


def _adaptive_discovery(stable, gray, flaky, good):
    return InMemoryServiceDiscovery(
        {
            "svc.adaptive": [
                ServiceNode("stable-a", "127.0.0.1", stable.port, {"lane": "stable", "cluster": "prod"}, 0.16, 0.22, 58.0, 14.0),
                ServiceNode("gray-b", "127.0.0.1", gray.port, {"lane": "gray", "cluster": "prod"}, 0.86, 0.84, 420.0, 180.0),
            ],
            "svc.circuit": [
                ServiceNode("bad-node", "127.0.0.1", flaky.port, {"lane": "stable"}, 0.08, 0.10, 10.0, 5.0),
                ServiceNode("good-node", "127.0.0.1", good.port, {"lane": "stable"}, 0.64, 0.62, 220.0, 95.0),
            ],
            "svc.degrade": [
                ServiceNode("flaky-only", "127.0.0.1", flaky.port, {"lane": "stable"}, 0.32, 0.30, 80.0, 18.0),
            ],
        }
    )


@pytest.fixture
def adaptive_setup(make_backend):
    backends = {
        name: make_backend(f"echo-{name}:".encode())
        for name in ("stable", "gray", "flaky", "good")
    }
    client = init_client(_adaptive_discovery(**backends))
    return client, backends


def _request(service, payload, metadata=None):
    return RpcRequest(service, "Echo", payload, dict(metadata or {}), timeout_ms=300, max_retries=0)


def test_traffic_converges_on_low_load_node(adaptive_setup):
    client, backends = adaptive_setup
    stable_hits = 0
    for i in range(40):
        response = client.invoke(_request("svc.adaptive", f"adaptive-{i}", {"x-fallback-cache": "0"}))
        assert response.code == 0, response.message
        stable_hits += response.selected_endpoint == backends["stable"].endpoint
    assert stable_hits >= 30


def test_gray_ratio_user_and_tag_routing(adaptive_setup):
    client, backends = adaptive_setup
    gray = client.invoke(
        _request(
            "svc.adaptive",
            "gray-user",
            {"x-gray-percent": "100", "x-user-id": "u-100", "x-gray-tag": "gray"},
        )
    )
    assert gray.code == 0
    assert gray.selected_endpoint == backends["gray"].endpoint
    stable = client.invoke(_request("svc.adaptive", "stable-tag", {"x-traffic-tag": "stable"}))
    assert stable.code == 0
    assert stable.selected_endpoint == backends["stable"].endpoint


def test_circuit_breaker_fails_over_to_healthy_node(adaptive_setup):
    client, backends = adaptive_setup
    backends["flaky"].fail.set()
    responses = [
        client.invoke(
            _request(
                "svc.circuit",
                f"circuit-{i}",
                {"x-cb-failure-threshold": "2", "x-cb-open-ms": "180", "x-fallback-cache": "0"},
            )
        )
        for i in range(6)
    ]
    failed = [r for r in responses if r.code != 0]
    failed_over = [
        r for r in responses if r.code == 0 and r.selected_endpoint == backends["good"].endpoint
    ]
    assert len(failed) > 0
    assert all(r.selected_endpoint == backends["flaky"].endpoint for r in failed)
    assert len(failed_over) > 0
    assert all(r.payload.startswith(b"echo-good:circuit-") for r in failed_over)


def test_degradation_and_half_open_recovery(adaptive_setup):
    client, backends = adaptive_setup
    seeded = client.invoke(
        _request("svc.degrade", "seed", {"x-fallback-cache": "1", "x-fallback-cache-key": "w13-cache-key"})
    )
    assert seeded.code == 0, seeded.message

    backends["flaky"].fail.set()
    cached = client.invoke(
        _request(
            "svc.degrade",
            "seed",
            {
                "x-cb-failure-threshold": "1",
                "x-cb-open-ms": "120",
                "x-fallback-cache": "1",
                "x-fallback-cache-key": "w13-cache-key",
            },
        )
    )
    assert (cached.code, cached.degraded, cached.degrade_strategy) == (0, True, "cache")
    assert cached.payload == b"echo-flaky:seed"

    static = client.invoke(
        _request(
            "svc.degrade",
            "static-case",
            {
                "x-cb-failure-threshold": "1",
                "x-cb-open-ms": "120",
                "x-fallback-cache": "0",
                "x-fallback-static": "static-fallback-body",
            },
        )
    )
    assert (static.code, static.degraded, static.degrade_strategy) == (0, True, "static")
    assert static.payload == b"static-fallback-body"

    time.sleep(0.18)
    backends["flaky"].fail.clear()
    recovered = client.invoke(
        _request(
            "svc.degrade",
            "recover",
            {
                "x-cb-failure-threshold": "1",
                "x-cb-open-ms": "120",
                "x-cb-half-open-success": "1",
                "x-fallback-cache": "0",
            },
        )
    )
    assert recovered.code == 0, recovered.message
    assert recovered.degraded is False
    assert last_load_balancer_decision_snapshot().has_selection is True