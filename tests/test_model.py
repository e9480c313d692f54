import pytest

from rpcgate.model import (
    CircuitBreakerState,
    InMemoryServiceDiscovery,
    LoadBalancer,
    RpcRequest,
    RpcResponse,
    ServiceDiscovery,
    ServiceNode,
    config_value,
    metadata_bool,
    metadata_float,
    metadata_int,
    setting_float,
    setting_int,
)
from rpcgate.net import update_config


@pytest.fixture
def config_key():
    key = "tests.model.setting"
    yield key
    update_config({key: None})


def test_node_key_prefers_id():
    assert ServiceNode("node-a", "127.0.0.1", 9000).key() == "node-a"
    assert ServiceNode("", "10.0.0.1", 8080).key() == "10.0.0.1:8080"


def test_node_endpoint_ignores_id():
    assert ServiceNode("a", "10.0.0.2", 8081).endpoint() == "10.0.0.2:8081"


@pytest.mark.parametrize(
    "labels, expected",
    [
        ({"lane": "gray", "tag": "other"}, "gray"),
        ({"lane": "", "tag": "canary"}, "canary"),
        ({"az": "a"}, "stable"),
    ],
)
def test_node_lane(labels, expected):
    assert ServiceNode("n", "h", 1, labels).lane() == expected


def test_node_metrics_default_to_unreported():
    node = ServiceNode("a", "127.0.0.1", 1)
    assert min(node.cpu_utilization, node.memory_utilization, node.qps, node.latency_ms) < 0


def test_payloads_accept_text():
    assert RpcRequest(payload="ping").payload == b"ping"
    assert RpcResponse(0, "ok", "pong").payload == b"pong"


@pytest.mark.parametrize("name", ["closed", "open", "half-open"])
def test_circuit_state_lookup_by_name(name):
    state = CircuitBreakerState(name)
    assert state.value == name
    assert state in list(CircuitBreakerState)


def test_circuit_state_rejects_unknown_name():
    with pytest.raises(ValueError):
        CircuitBreakerState("half_open")


def test_metadata_int():
    request = RpcRequest(metadata={"n": "42", "bad": "abc", "big": "18446744073709551616", "empty": ""})
    assert metadata_int(request, "n", 1) == 42
    assert metadata_int(request, "bad", 1) == 1
    assert metadata_int(request, "big", 1) == 1
    assert metadata_int(request, "empty", 5) == 5
    assert metadata_int(request, "missing", 5) == 5


def test_metadata_float():
    request = RpcRequest(metadata={"f": "0.5", "e": "1e2", "bad": "1_0"})
    assert metadata_float(request, "f", 0.0) == 0.5
    assert metadata_float(request, "e", 0.0) == 100.0
    assert metadata_float(request, "bad", 3.0) == 3.0


def test_metadata_bool():
    request = RpcRequest(metadata={"a": " Yes ", "b": "off", "c": "maybe"})
    assert metadata_bool(request, "a", False) is True
    assert metadata_bool(request, "b", True) is False
    assert metadata_bool(request, "c", True) is True
    assert metadata_bool(request, "missing", False) is False


def test_setting_precedence(config_key):
    update_config({config_key: "7"})
    assert config_value(config_key) == "7"
    assert setting_int(RpcRequest(), "x-k", config_key, 1) == 7
    assert setting_int(RpcRequest(metadata={"x-k": "9"}), "x-k", config_key, 1) == 9
    assert setting_int(RpcRequest(metadata={"x-k": "abc"}), "x-k", config_key, 1) == 7
    assert setting_int(None, None, config_key, 1) == 7


def test_setting_float_falls_back_to_default(config_key):
    update_config({config_key: "not-a-number"})
    assert setting_float(None, None, config_key, 0.3) == 0.3
    update_config({config_key: "0.25"})
    assert setting_float(RpcRequest(), "x-f", config_key, 0.3) == 0.25


def test_config_value_missing_is_none(config_key):
    update_config({config_key: ""})
    assert config_value(config_key) is None


def test_in_memory_discovery_defaults():
    discovery = InMemoryServiceDiscovery()
    nodes = discovery.list_nodes("gateway.backend")
    assert [(n.id, n.port, n.lane()) for n in nodes] == [
        ("node-a", 9000, "stable"),
        ("node-b", 9001, "gray"),
    ]
    assert [n.endpoint() for n in discovery.list_nodes("svc.echo")] == ["10.0.0.1:8080", "10.0.0.2:8081"]
    assert discovery.list_nodes("svc.unknown") == []


def test_in_memory_discovery_returns_copies():
    discovery = InMemoryServiceDiscovery({"svc": [ServiceNode("x", "h", 1)]})
    discovery.list_nodes("svc").clear()
    assert [n.id for n in discovery.list_nodes("svc")] == ["x"]


def test_interfaces_are_abstract():
    with pytest.raises(TypeError):
        ServiceDiscovery()
    with pytest.raises(TypeError):
        LoadBalancer()


def test_custom_load_balancer():
    class LastNode(LoadBalancer):
        def select_node(self, nodes, request):
            return len(nodes) - 1

    nodes = InMemoryServiceDiscovery().list_nodes("svc.echo")
    assert nodes[LastNode().select_node(nodes, RpcRequest())].id == "b"