# rpcgate

A small RPC client library for calling backend services over TCP, with TLS
if you want it. It has no dependencies outside the standard library.

On top of the transport it adds:

- **Deadline-aware timeouts.** The timeout for a call is the smaller of the
  downstream timeout and the time left on the caller's deadline.
- **Adaptive load balancing.** `AdaptiveLoadBalancer` scores nodes by CPU,
  memory, QPS, latency, recent failures and in-flight calls.
- **Circuit breaking.** Each node moves between the closed, open and half-open states.
- **Retry budgets.** `RetryBudget` caps retries per time window, so a failing
  upstream cannot set off a retry storm.
- **Degradation.** A failed call can fall back to a cached payload or a static one.
- **Gray routing.** Traffic can be pinned to a lane by tag, or split into the
  gray lane by percentage.

## Modules

| Module | Contents |
|--------|----------|
| `rpcgate.net` | Configuration snapshot (`update_config`, `config_snapshot`), `RequestContext` and `request_scope`, `derive_effective_timeout`, `invoke_tcp`, `last_effective_timeout_ms`, `tls_runtime_snapshot` |
| `rpcgate.krpc` | `KrpcChannel`, `KrpcCodec` (`RAW` or `PROTOBUF`), the frame types, and `encode_request` / `decode_request` / `encode_response` / `decode_response` |
| `rpcgate.model` | `ServiceNode`, `RpcRequest`, `RpcResponse`, `CircuitBreakerState`, the abstract `ServiceDiscovery` and `LoadBalancer`, `InMemoryServiceDiscovery`, and the setting lookup helpers |
| `rpcgate.balancer` | `AdaptiveLoadBalancer`, `LoadBalancerDecision`, `LoadBalancerRuntimeStats` |
| `rpcgate.client` | `RpcClient`, `RetryBudget`, `init_client`, `default_client`, and the snapshot functions |

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Usage

```python
from rpcgate.client import init_client, default_client
from rpcgate.model import RpcRequest, ServiceNode, ServiceDiscovery


class StaticDiscovery(ServiceDiscovery):
    def list_nodes(self, service_name):
        if service_name == "svc.echo":
            return [ServiceNode(id="a", host="127.0.0.1", port=9000)]
        return []


init_client(discovery=StaticDiscovery())
client = default_client()

response = client.invoke(
    RpcRequest(service="svc.echo", method="Echo", payload="ping", timeout_ms=300)
)
print(response.code, response.payload, response.selected_endpoint)
```

`init_client(discovery=None, load_balancer=None, retry_budget=None)` installs
the process-wide client. Any part you leave out gets a default:

- an `InMemoryServiceDiscovery` holding a small fixed table of services;
- an `AdaptiveLoadBalancer`;
- a `RetryBudget` built from the `rpc.retry.*` settings.

`default_client()` returns the installed client, and creates one with the
defaults if none has been installed yet.

`invoke` does not raise for call failures. The outcome is in the response's
`code` field, where `0` means success. Failures carry HTTP-like codes:

| Code | Meaning |
|------|---------|
| 400 | Bad request: empty service name, invalid endpoint, or a frame that cannot be encoded |
| 429 | Retry budget exhausted |
| 499 | Request context cancelled |
| 502 | Upstream closed without a payload, or the reply frame could not be decoded |
| 503 | Unavailable: no nodes, every circuit open, connect/send/receive failure, or TLS failure |
| 504 | Timeout or deadline exceeded |

Payloads are `bytes`. A `str` given as a payload is encoded as UTF-8.

The transport writes the payload, then reads the reply in 4096-byte chunks.
It stops at the first short read or when the peer closes the connection.

### Deadlines

Wrap a call in a request context to give it a deadline. The deadline is an
absolute `time.monotonic()` value.

```python
import time
from rpcgate.net import RequestContext, request_scope

ctx = RequestContext(deadline=time.monotonic() + 0.12)
with request_scope(ctx):
    response = client.invoke(request)
```

- **Deadline already passed.** The context is cancelled with the reason
  `deadline_exceeded`, and the call returns 504.
- **Context cancelled for another reason.** Cancelling a context with
  `ctx.cancel(reason)` makes calls return 499, with the reason in the response.

### Retries and degradation

**Retry count.** A request retries up to `max_retries` times. If
`max_retries` is 0, the `x-max-retries` metadata key or the
`rpc.retry.max_retries` setting is used, and the default is 1. Only failures
the transport marks retryable are retried.

**Retry budget.** Each retry also needs a token from the budget. Within each
window the number of retries allowed is
`min_retry_tokens + floor(requests * retry_ratio)`. The defaults are a
1000 ms window, a ratio of 0.1 and 10 minimum tokens.

**Degradation.** A failure with code 429 or 5xx can be degraded in two ways,
tried in this order:

1. **Cached fallback.** Unless `x-fallback-cache` is false, the last
   successful payload cached under the same key is returned, provided it is
   younger than `x-fallback-cache-ttl-ms` (default 10000). The key is
   `x-fallback-cache-key`, or `service|method` if that is not given.
2. **Static fallback.** The value of `x-fallback-static` is returned.

A degraded response has code 0, `degraded=True`, and `degrade_strategy` set
to `"cache"` or `"static"`.

### Circuit breaker and gray routing

**Opening.** `AdaptiveLoadBalancer` opens a node's circuit after
`failure_threshold` consecutive retryable failures (429 or 5xx). The default
threshold is 3.

**Open.** The circuit stays open for `open_ms`. The default is 280 ms and the
minimum is 50 ms.

**Half-open.** After that the node is allowed half-open probes, 1 by default.
`half_open_success` successes close the circuit again; the default is 2.
A failure while half-open reopens the circuit.

**No node available.** When every circuit is open, the call fails with 503
`no_healthy_service_nodes`.

**Lanes.** A node's lane comes from its `lane` label, or else its `tag`
label, or else it is `stable`.

**Routing to a lane.** `x-traffic-tag` pins a call to a lane. Otherwise
`x-gray-percent` (or `rpc.gray.percent`) sends that share of calls to the gray
lane. A call's share is decided by a CRC-32 hash of the first of these that is
set: `x-user-id`, `x-request-id`, `x-trace-id`, or the payload. The name of the
gray lane is `x-gray-tag` (default `gray`), and the name of the stable lane is
`x-stable-tag` (default `stable`). If no node is in the chosen lane, all nodes
are candidates.

### Configuration

Settings are read from a shared, versioned configuration snapshot. To change
them, call `rpcgate.net.update_config(values)`; a value of `None` removes a
key. Where a metadata key exists, it overrides the setting for that request.

| Config key | Metadata key | What it sets |
|------------|--------------|--------------|
| `rpc.retry.max_retries` | `x-max-retries` | Maximum retries per call |
| `rpc.retry.window_ms` | — | Retry budget window |
| `rpc.retry.ratio` | — | Retry budget ratio |
| `rpc.retry.min_tokens` | — | Retry budget floor |
| `rpc.circuit.failure_threshold` | `x-cb-failure-threshold` | Failures before the circuit opens |
| `rpc.circuit.open_ms` | `x-cb-open-ms` | How long the circuit stays open |
| `rpc.circuit.half_open_success` | `x-cb-half-open-success` | Successes that close a half-open circuit |
| `rpc.circuit.half_open_max_probes` | `x-cb-half-open-max-probes` | Concurrent half-open probes |
| `rpc.gray.percent` | `x-gray-percent` | Share of traffic sent to the gray lane |
| `rpc.lb.weight.cpu` / `.mem` / `.qps` / `.latency` | `x-lb-weight-cpu` / `-mem` / `-qps` / `-latency` | Scoring weights |
| `rpc.lb.target_qps` | `x-lb-target-qps` | QPS at which the QPS penalty is one half |
| `rpc.lb.target_latency_ms` | `x-lb-target-latency-ms` | Latency at which the latency penalty is one half |

The `rpc.retry.*` budget settings are read when `init_client` builds the
default retry budget.

Setting `x-krpc-codec` to `protobuf`, `proto` or `pb` has two effects. The
request is sent as a Protobuf-wire `KrpcRequestFrame`, and the reply is
decoded as a `KrpcResponseFrame`.

### TLS

TLS is switched on with `net.tls.enabled`. These related settings are read on
each call:

- `net.tls.ca_file`
- `net.tls.mtls.enabled`, with `net.tls.cert_file` and `net.tls.key_file`
- `net.tls.insecure_skip_verify`
- `net.tls.server_name`

**Context reuse.** The TLS context is rebuilt only when the configuration
version or the mtime of one of the files changes.

**Failed rebuild.** If a rebuild fails, the previous context is kept, and the
failure is counted.

`tls_runtime_snapshot()` reports the TLS flags, the config version that was
loaded, and the reload counters.

### Observability

These functions in `rpcgate.client` report on recent calls:

- `last_invoke_audit_snapshot()` returns the outcome of the most recent call.
- `last_load_balancer_decision_snapshot()` returns the most recent balancer decision.
- `load_balancer_runtime_stats()` returns the counters of the default client's balancer.

Every call is also logged as a JSON object on the `rpcgate.rpc` logger. The
log level depends on the code: INFO on success, WARNING for codes below 500,
and ERROR for 5xx.

## What it does not do

rpcgate is a client library only.

- It has no command-line program.
- It has no HTTP front end and no server of any kind.
- It has no service registry. Nodes come from the `ServiceDiscovery` you
  supply, or from the fixed built-in table.
- Configuration is held in memory for the life of the process and is not
  stored anywhere.