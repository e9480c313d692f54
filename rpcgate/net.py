"""Network call layer: deadline-aware timeouts and plain or TLS TCP request/response calls."""

from __future__ import annotations

import contextlib
import contextvars
import os
import re
import socket
import ssl
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, Mapping

_RECV_CHUNK = 4096
_PORT_PATTERN = re.compile(r"\+?(\d+)")
_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


# --------------------------------------------------------------------------
# Configuration repository
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigSnapshot:
    """An immutable, versioned view of the key/value configuration."""

    version: int = 0
    values: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


_config_lock = threading.Lock()
_config = ConfigSnapshot()


def update_config(values: Mapping[str, object]) -> ConfigSnapshot:
    """Merge ``values`` into the configuration and bump its version.

    A value of ``None`` removes the key.
    """
    global _config
    with _config_lock:
        merged = dict(_config.values)
        for key, value in values.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = str(value)
        _config = ConfigSnapshot(_config.version + 1, MappingProxyType(merged))
        return _config


def config_snapshot() -> ConfigSnapshot:
    """Return the current configuration snapshot."""
    with _config_lock:
        return _config


# --------------------------------------------------------------------------
# Request context
# --------------------------------------------------------------------------


class RequestContext:
    """Per-request deadline and cancellation state.

    ``deadline`` is an absolute ``time.monotonic()`` value, or ``None`` for none.
    """

    def __init__(self, deadline: float | None = None) -> None:
        self.deadline = deadline
        self._lock = threading.Lock()
        self._cancelled = False
        self._cancel_reason = ""

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def cancel_reason(self) -> str:
        with self._lock:
            return self._cancel_reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the request; return False if it was already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._cancel_reason = reason
            return True


_current_context: contextvars.ContextVar[RequestContext | None] = contextvars.ContextVar(
    "rpcgate_request_context", default=None
)


def current_request_context() -> RequestContext | None:
    """Return the request context active in this execution context, if any."""
    return _current_context.get()


@contextlib.contextmanager
def request_scope(context: RequestContext) -> Iterator[RequestContext]:
    """Make ``context`` the current request context for the ``with`` block."""
    token = _current_context.set(context)
    try:
        yield context
    finally:
        _current_context.reset(token)


# --------------------------------------------------------------------------
# Data types
# --------------------------------------------------------------------------


@dataclass
class EffectiveTimeout:
    effective_timeout_ms: int = 0
    deadline_exceeded: bool = False
    cancelled: bool = False
    cancel_reason: str = ""


@dataclass
class NetCallRequest:
    endpoint: str = ""
    payload: bytes = b""
    downstream_timeout_ms: int = 0
    attempt: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.payload, str):
            self.payload = self.payload.encode("utf-8")


@dataclass
class NetCallResponse:
    code: int
    message: str
    payload: bytes = b""
    retryable: bool = False
    effective_timeout_ms: int = 0
    cancelled: bool = False
    cancel_reason: str = ""


@dataclass(frozen=True)
class TlsRuntimeSnapshot:
    tls_enabled: bool = False
    mtls_enabled: bool = False
    loaded_config_version: int = 0
    context_reload_count: int = 0
    context_reload_failures: int = 0


# --------------------------------------------------------------------------
# Parsing helpers
# --------------------------------------------------------------------------


def parse_bool(value: str, fallback: bool) -> bool:
    """Interpret common boolean words; return ``fallback`` for anything else."""
    if not value:
        return fallback
    lowered = value.strip().lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    return fallback


def parse_ipv4_endpoint(endpoint: str) -> tuple[str, int]:
    """Split ``host:port`` into its parts; raise ValueError if malformed."""
    colon = endpoint.rfind(":")
    if colon <= 0 or colon + 1 >= len(endpoint):
        raise ValueError(f"invalid endpoint: {endpoint!r}")
    host = endpoint[:colon].strip()
    port_text = endpoint[colon + 1:].strip()
    if not host or not port_text:
        raise ValueError(f"invalid endpoint: {endpoint!r}")
    match = _PORT_PATTERN.match(port_text)
    if match is None:
        raise ValueError(f"invalid port in endpoint: {endpoint!r}")
    port = int(match.group(1))
    if port == 0 or port > 0xFFFF:
        raise ValueError(f"port out of range in endpoint: {endpoint!r}")
    return host, port


def _is_ipv4(host: str) -> bool:
    try:
        socket.inet_pton(socket.AF_INET, host)
    except OSError:
        return False
    return True


# --------------------------------------------------------------------------
# Runtime state
# --------------------------------------------------------------------------


@dataclass
class _TlsSettings:
    enabled: bool = False
    mtls_enabled: bool = False
    insecure_skip_verify: bool = False
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    server_name: str = ""
    config_version: int = 0


@dataclass
class _TlsCache:
    context: ssl.SSLContext | None = None
    fingerprint: tuple = ()


@dataclass
class _TlsCounters:
    tls_enabled: bool = False
    mtls_enabled: bool = False
    loaded_config_version: int = 0
    reload_count: int = 0
    reload_failures: int = 0


class _TlsContextError(Exception):
    pass


_state_lock = threading.Lock()
_tls_counters = _TlsCounters()
_tls_cache_lock = threading.Lock()
_tls_cache = _TlsCache()
_last_effective_timeout_ms = 0


def _load_tls_settings() -> _TlsSettings:
    snapshot = config_snapshot()
    values = snapshot.values
    settings = _TlsSettings(
        enabled=parse_bool(values.get("net.tls.enabled", "0"), False),
        mtls_enabled=parse_bool(values.get("net.tls.mtls.enabled", "0"), False),
        insecure_skip_verify=parse_bool(values.get("net.tls.insecure_skip_verify", "0"), False),
        ca_file=values.get("net.tls.ca_file", ""),
        cert_file=values.get("net.tls.cert_file", ""),
        key_file=values.get("net.tls.key_file", ""),
        server_name=values.get("net.tls.server_name", ""),
        config_version=snapshot.version,
    )
    with _state_lock:
        _tls_counters.tls_enabled = settings.enabled
        _tls_counters.mtls_enabled = settings.mtls_enabled
    return settings


def _mtime_if_exists(path: str) -> int | None:
    if not path:
        return None
    try:
        return os.stat(path).st_mtime_ns
    except OSError:
        return None


def _build_tls_context(settings: _TlsSettings) -> ssl.SSLContext:
    try:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        if settings.insecure_skip_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        else:
            context.verify_mode = ssl.CERT_REQUIRED
            if settings.ca_file:
                context.load_verify_locations(cafile=settings.ca_file)
            else:
                context.load_default_certs()
        if settings.mtls_enabled:
            if not settings.cert_file or not settings.key_file:
                raise _TlsContextError("mtls_client_cert_or_key_missing")
            context.load_cert_chain(settings.cert_file, settings.key_file)
        return context
    except _TlsContextError:
        raise
    except Exception as exc:
        raise _TlsContextError(str(exc) or "tls_context_build_unknown_error") from exc


def _acquire_tls_context(settings: _TlsSettings) -> tuple[ssl.SSLContext | None, str]:
    """Return the cached context, rebuilding it when config or files change."""
    fingerprint = (
        settings.config_version,
        settings.ca_file,
        settings.cert_file,
        settings.key_file,
        _mtime_if_exists(settings.ca_file),
        _mtime_if_exists(settings.cert_file),
        _mtime_if_exists(settings.key_file),
    )
    with _tls_cache_lock:
        if _tls_cache.context is not None and _tls_cache.fingerprint == fingerprint:
            return _tls_cache.context, ""
        try:
            rebuilt = _build_tls_context(settings)
        except _TlsContextError as exc:
            with _state_lock:
                _tls_counters.reload_failures += 1
            # Keep the previous working context so a bad rotation does not cause an outage.
            return _tls_cache.context, str(exc)
        _tls_cache.context = rebuilt
        _tls_cache.fingerprint = fingerprint
        with _state_lock:
            _tls_counters.loaded_config_version = settings.config_version
            _tls_counters.reload_count += 1
        return rebuilt, ""


# --------------------------------------------------------------------------
# Calls
# --------------------------------------------------------------------------


def _failure(
    code: int,
    message: str,
    retryable: bool,
    timeout_ms: int,
    *,
    cancelled: bool = False,
    cancel_reason: str = "",
) -> NetCallResponse:
    return NetCallResponse(code, message, b"", retryable, timeout_ms, cancelled, cancel_reason)


def derive_effective_timeout(downstream_timeout_ms: int) -> EffectiveTimeout:
    """Combine the downstream timeout with the current request's remaining deadline."""
    result = EffectiveTimeout(effective_timeout_ms=downstream_timeout_ms)
    context = current_request_context()
    if context is None:
        return result

    if context.cancelled:
        reason = context.cancel_reason
        if reason == "deadline_exceeded":
            return EffectiveTimeout(0, deadline_exceeded=True)
        return EffectiveTimeout(0, cancelled=True, cancel_reason=reason or "cancelled")

    if context.deadline is None:
        return result

    now = time.monotonic()
    if context.deadline <= now:
        context.cancel("deadline_exceeded")
        return EffectiveTimeout(0, deadline_exceeded=True)

    remaining_ms = int((context.deadline - now) * 1000)
    if downstream_timeout_ms == 0:
        result.effective_timeout_ms = remaining_ms
    else:
        result.effective_timeout_ms = min(downstream_timeout_ms, remaining_ms)
    return result


def _connect(host: str, port: int, timeout_ms: int) -> tuple[socket.socket | None, NetCallResponse | None]:
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError:
        return None, _failure(503, "socket_create_failed", True, timeout_ms)
    sock.settimeout(timeout_ms / 1000 if timeout_ms > 0 else None)
    try:
        sock.connect((host, port))
    except TimeoutError:
        sock.close()
        return None, _failure(504, "connect_timeout", True, timeout_ms)
    except OSError as exc:
        sock.close()
        return None, _failure(503, f"connect_failed:{exc.errno or 0}", True, timeout_ms)
    return sock, None


def _exchange(conn: socket.socket, payload: bytes, timeout_ms: int) -> NetCallResponse:
    try:
        conn.sendall(payload)
    except (TimeoutError, BlockingIOError):
        return _failure(504, "send_timeout", True, timeout_ms)
    except OSError as exc:
        return _failure(503, f"send_failed:{exc.errno or 0}", True, timeout_ms)

    chunks: list[bytes] = []
    while True:
        try:
            chunk = conn.recv(_RECV_CHUNK)
        except (ssl.SSLEOFError, ssl.SSLZeroReturnError):
            break
        except (TimeoutError, BlockingIOError):
            return _failure(504, "recv_timeout", True, timeout_ms)
        except OSError as exc:
            return _failure(503, f"recv_failed:{exc.errno or 0}", True, timeout_ms)
        if not chunk:
            break
        chunks.append(chunk)
        if len(chunk) < _RECV_CHUNK:
            break

    data = b"".join(chunks)
    if not data:
        return _failure(502, "upstream_closed_without_payload", False, timeout_ms)
    return NetCallResponse(0, "ok", data, False, timeout_ms)


def _invoke_tls(
    request: NetCallRequest, host: str, port: int, timeout_ms: int, settings: _TlsSettings
) -> NetCallResponse:
    context, error = _acquire_tls_context(settings)
    if context is None:
        return _failure(503, f"tls_context_unavailable:{error or 'unknown'}", True, timeout_ms)

    if not _is_ipv4(host):
        return _failure(400, "invalid_endpoint_host", False, timeout_ms)

    sock, failure = _connect(host, port, timeout_ms)
    if sock is None:
        return failure

    server_name = settings.server_name or host
    try:
        tls = context.wrap_socket(sock, server_hostname=server_name, do_handshake_on_connect=False)
    except (ValueError, ssl.SSLError):
        sock.close()
        return _failure(503, "tls_sni_set_failed", True, timeout_ms)

    with tls:
        try:
            tls.do_handshake()
        except OSError as exc:
            return _failure(503, f"tls_handshake_failed:{exc.errno or 0}", True, timeout_ms)
        result = _exchange(tls, request.payload, timeout_ms)
        if result.code in (0, 502):
            with contextlib.suppress(OSError, ValueError):
                tls.unwrap()
    return result


def invoke_tcp(request: NetCallRequest) -> NetCallResponse:
    """Send the payload to ``request.endpoint`` and read back the reply.

    Failures are reported in the returned response's code and message.
    """
    global _last_effective_timeout_ms
    timeout = derive_effective_timeout(request.downstream_timeout_ms)
    timeout_ms = timeout.effective_timeout_ms
    _last_effective_timeout_ms = timeout_ms

    if timeout.cancelled:
        reason = timeout.cancel_reason or "cancelled"
        return _failure(499, reason, False, timeout_ms, cancelled=True, cancel_reason=reason)
    if timeout.deadline_exceeded:
        return _failure(504, "deadline_exceeded", False, timeout_ms)

    try:
        host, port = parse_ipv4_endpoint(request.endpoint)
    except ValueError:
        return _failure(400, "invalid_endpoint", False, timeout_ms)

    settings = _load_tls_settings()
    if settings.enabled:
        return _invoke_tls(request, host, port, timeout_ms, settings)

    if not _is_ipv4(host):
        return _failure(400, "invalid_endpoint_host", False, timeout_ms)

    sock, failure = _connect(host, port, timeout_ms)
    if sock is None:
        return failure
    with sock:
        return _exchange(sock, request.payload, timeout_ms)


def last_effective_timeout_ms() -> int:
    """Return the effective timeout used by the most recent call."""
    return _last_effective_timeout_ms


def tls_runtime_snapshot() -> TlsRuntimeSnapshot:
    """Return the TLS flags and context reload counters."""
    with _state_lock:
        return TlsRuntimeSnapshot(
            tls_enabled=_tls_counters.tls_enabled,
            mtls_enabled=_tls_counters.mtls_enabled,
            loaded_config_version=_tls_counters.loaded_config_version,
            context_reload_count=_tls_counters.reload_count,
            context_reload_failures=_tls_counters.reload_failures,
        )