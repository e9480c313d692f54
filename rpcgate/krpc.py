"""Framed RPC channel with raw or Protobuf-wire encoding over the network layer."""

from __future__ import annotations

import enum
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from typing import Callable, Iterator

from .net import NetCallRequest, NetCallResponse, invoke_tcp

_U64_MAX = (1 << 64) - 1
_I32_MIN = -(1 << 31)
_I32_MAX = (1 << 31) - 1

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LEN = 2
_WIRE_FIXED32 = 5

NetInvoker = Callable[[NetCallRequest], NetCallResponse]


class KrpcCodec(enum.Enum):
    """How a request frame travels on the wire."""

    RAW = "raw"
    PROTOBUF = "protobuf"


class KrpcCodecError(ValueError):
    """Raised when a frame cannot be encoded or decoded."""


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


@dataclass
class KrpcRequestFrame:
    service: str = ""
    method: str = ""
    payload: bytes = b""
    metadata: dict[str, str] = field(default_factory=dict)
    timeout_ms: int = 0
    max_retries: int = 0

    def __post_init__(self) -> None:
        self.payload = _as_bytes(self.payload)


@dataclass
class KrpcResponseFrame:
    code: int = 0
    message: str = ""
    payload: bytes = b""
    retryable: bool = False
    effective_timeout_ms: int = 0
    cancelled: bool = False
    cancel_reason: str = ""

    def __post_init__(self) -> None:
        self.payload = _as_bytes(self.payload)


@dataclass
class KrpcTransportRequest:
    endpoint: str = ""
    downstream_timeout_ms: int = 0
    attempt: int = 0


@dataclass
class KrpcTransportResponse:
    code: int = 0
    message: str = ""
    payload: bytes = b""
    retryable: bool = False
    effective_timeout_ms: int = 0
    cancelled: bool = False
    cancel_reason: str = ""


# --------------------------------------------------------------------------
# Wire encoding
# --------------------------------------------------------------------------


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _tag(number: int, wire_type: int) -> bytes:
    return _varint((number << 3) | wire_type)


def _len_field(number: int, data: bytes) -> bytes:
    return _tag(number, _WIRE_LEN) + _varint(len(data)) + data


def _uint_field(number: int, value: int) -> bytes:
    return _tag(number, _WIRE_VARINT) + _varint(value)


def _utf8(value: str, name: str) -> bytes:
    try:
        return value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise KrpcCodecError(f"{name} is not valid UTF-8 text") from exc


def _check_u64(value: int, name: str) -> int:
    if not 0 <= value <= _U64_MAX:
        raise KrpcCodecError(f"{name} out of uint64 range: {value}")
    return value


def encode_request(frame: KrpcRequestFrame) -> bytes:
    """Serialise a request frame; an all-default frame encodes to no bytes."""
    parts: list[bytes] = []
    if frame.service:
        parts.append(_len_field(1, _utf8(frame.service, "service")))
    if frame.method:
        parts.append(_len_field(2, _utf8(frame.method, "method")))
    if frame.payload:
        parts.append(_len_field(3, frame.payload))
    if frame.timeout_ms:
        parts.append(_uint_field(4, _check_u64(frame.timeout_ms, "timeout_ms")))
    if frame.max_retries:
        parts.append(_uint_field(5, _check_u64(frame.max_retries, "max_retries")))
    for key, value in frame.metadata.items():
        entry = _len_field(1, _utf8(key, "metadata key")) + _len_field(2, _utf8(value, "metadata value"))
        parts.append(_len_field(6, entry))
    return b"".join(parts)


def encode_response(frame: KrpcResponseFrame) -> bytes:
    """Serialise a response frame; an all-default frame encodes to no bytes."""
    parts: list[bytes] = []
    if frame.code:
        if not _I32_MIN <= frame.code <= _I32_MAX:
            raise KrpcCodecError(f"code out of int32 range: {frame.code}")
        parts.append(_uint_field(1, frame.code & _U64_MAX))
    if frame.message:
        parts.append(_len_field(2, _utf8(frame.message, "message")))
    if frame.payload:
        parts.append(_len_field(3, frame.payload))
    if frame.retryable:
        parts.append(_uint_field(4, 1))
    if frame.effective_timeout_ms:
        parts.append(_uint_field(5, _check_u64(frame.effective_timeout_ms, "effective_timeout_ms")))
    if frame.cancelled:
        parts.append(_uint_field(6, 1))
    if frame.cancel_reason:
        parts.append(_len_field(7, _utf8(frame.cancel_reason, "cancel_reason")))
    return b"".join(parts)


# --------------------------------------------------------------------------
# Wire decoding
# --------------------------------------------------------------------------


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise KrpcCodecError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _U64_MAX, pos
        shift += 7
        if shift >= 70:
            raise KrpcCodecError("varint too long")


def _fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    pos = 0
    end = len(data)
    while pos < end:
        tag, pos = _read_varint(data, pos)
        number, wire_type = tag >> 3, tag & 0x7
        if number == 0:
            raise KrpcCodecError("field number zero")
        if wire_type == _WIRE_VARINT:
            value, pos = _read_varint(data, pos)
            yield number, wire_type, value
        elif wire_type in (_WIRE_FIXED64, _WIRE_FIXED32):
            size = 8 if wire_type == _WIRE_FIXED64 else 4
            if pos + size > end:
                raise KrpcCodecError("truncated fixed-width field")
            yield number, wire_type, int.from_bytes(data[pos:pos + size], "little")
            pos += size
        elif wire_type == _WIRE_LEN:
            length, pos = _read_varint(data, pos)
            if pos + length > end:
                raise KrpcCodecError("truncated length-delimited field")
            yield number, wire_type, bytes(data[pos:pos + length])
            pos += length
        else:
            raise KrpcCodecError(f"unsupported wire type {wire_type}")


def _text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise KrpcCodecError("string field is not valid UTF-8") from exc


def _int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value > _I32_MAX else value


def _map_entry(raw: bytes) -> tuple[str, str]:
    key = value = ""
    for number, wire_type, item in _fields(raw):
        if wire_type != _WIRE_LEN:
            continue
        if number == 1:
            key = _text(item)
        elif number == 2:
            value = _text(item)
    return key, value


def decode_request(data: bytes) -> KrpcRequestFrame:
    """Parse a request frame; entries with an empty metadata key are dropped."""
    frame = KrpcRequestFrame()
    for number, wire_type, value in _fields(data):
        if wire_type == _WIRE_LEN:
            if number == 1:
                frame.service = _text(value)
            elif number == 2:
                frame.method = _text(value)
            elif number == 3:
                frame.payload = value
            elif number == 6:
                key, item = _map_entry(value)
                if key:
                    frame.metadata[key] = item
        elif wire_type == _WIRE_VARINT:
            if number == 4:
                frame.timeout_ms = value
            elif number == 5:
                frame.max_retries = value
    return frame


def decode_response(data: bytes) -> KrpcResponseFrame:
    """Parse a response frame."""
    frame = KrpcResponseFrame()
    for number, wire_type, value in _fields(data):
        if wire_type == _WIRE_LEN:
            if number == 2:
                frame.message = _text(value)
            elif number == 3:
                frame.payload = value
            elif number == 7:
                frame.cancel_reason = _text(value)
        elif wire_type == _WIRE_VARINT:
            if number == 1:
                frame.code = _int32(value)
            elif number == 4:
                frame.retryable = value != 0
            elif number == 5:
                frame.effective_timeout_ms = value
            elif number == 6:
                frame.cancelled = value != 0
    return frame


# --------------------------------------------------------------------------
# Channel
# --------------------------------------------------------------------------


def _from_net(response: NetCallResponse) -> KrpcTransportResponse:
    return KrpcTransportResponse(
        code=response.code,
        message=response.message,
        payload=response.payload,
        retryable=response.retryable,
        effective_timeout_ms=response.effective_timeout_ms,
        cancelled=response.cancelled,
        cancel_reason=response.cancel_reason,
    )


class KrpcChannel:
    """Sends request frames through a network invoker and decodes replies."""

    def __init__(self, invoker: NetInvoker | None = None) -> None:
        self._invoker: NetInvoker = invoker or invoke_tcp

    def invoke(
        self,
        transport: KrpcTransportRequest,
        request: KrpcRequestFrame,
        codec: KrpcCodec = KrpcCodec.RAW,
    ) -> KrpcTransportResponse:
        """Perform one call; failures are reported in the response code."""
        net_request = NetCallRequest(
            endpoint=transport.endpoint,
            downstream_timeout_ms=transport.downstream_timeout_ms,
            attempt=transport.attempt,
        )
        if codec is KrpcCodec.PROTOBUF:
            try:
                net_request.payload = encode_request(request)
            except KrpcCodecError:
                return KrpcTransportResponse(400, "krpc_protobuf_encode_failed")
        else:
            net_request.payload = request.payload

        net_response = self._invoker(net_request)
        result = _from_net(net_response)
        if codec is not KrpcCodec.PROTOBUF or net_response.code != 0:
            return result

        try:
            decoded = decode_response(net_response.payload)
        except KrpcCodecError:
            return KrpcTransportResponse(
                502,
                "krpc_protobuf_decode_failed",
                effective_timeout_ms=net_response.effective_timeout_ms,
            )

        return KrpcTransportResponse(
            code=decoded.code,
            message=decoded.message,
            payload=decoded.payload,
            retryable=decoded.retryable,
            effective_timeout_ms=decoded.effective_timeout_ms or net_response.effective_timeout_ms,
            cancelled=decoded.cancelled,
            cancel_reason=decoded.cancel_reason,
        )

    def invoke_async(
        self,
        transport: KrpcTransportRequest,
        request: KrpcRequestFrame,
        codec: KrpcCodec = KrpcCodec.RAW,
    ) -> Future[KrpcTransportResponse]:
        """Run :meth:`invoke` on its own thread and return a future for the result."""
        transport = replace(transport)
        request = replace(request, metadata=dict(request.metadata))
        future: Future[KrpcTransportResponse] = Future()

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.invoke(transport, request, codec))
            except Exception as exc:
                future.set_exception(exc)

        threading.Thread(target=run, name="krpc-invoke", daemon=True).start()
        return future