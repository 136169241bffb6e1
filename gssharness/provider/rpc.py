# MIT License © 2025 Motohiro Suzuki
"""
provider/rpc.py

Broker wire format (unix socket, both directions):
    length(u32, big-endian) || JSON object (utf-8)

Request : {"op": str, "call_ctx": hex | null, "args": {...}}
Response: {"major": int, "minor": int, "call_ctx": hex | null, "result": {...}}

- bytes travel as base64 strings (None stays null)
- handles travel as opaque string ids issued by the broker
"""

from __future__ import annotations

import asyncio
import base64
import json
import socket
import struct
from typing import Any, Dict, Optional

from gssharness.protocol.errors import FrameError, TransportError
from gssharness.provider.base import CallContext, NegotiatedFlags, Status

MAX_MESSAGE = 16 * 1024 * 1024

_LEN = struct.Struct("!I")


# =========================
# value encoding
# =========================
def b64e(b: Optional[bytes]) -> Optional[str]:
    if b is None:
        return None
    return base64.b64encode(bytes(b)).decode("ascii")


def b64d(s: Optional[str]) -> Optional[bytes]:
    if s is None:
        return None
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as e:
        raise ValueError(f"bad base64 field: {e}") from e


def ctx_to_wire(ctx: Optional[CallContext]) -> Optional[str]:
    return None if ctx is None else ctx.hex()


def ctx_from_wire(v: Optional[str]) -> Optional[CallContext]:
    if v is None:
        return None
    return CallContext(bytes.fromhex(v))


def flags_to_wire(f: Optional[NegotiatedFlags]) -> int:
    return 0 if f is None else f.to_int()


def flags_from_wire(v: Any) -> NegotiatedFlags:
    return NegotiatedFlags.from_int(int(v or 0))


def status_from_wire(msg: Dict[str, Any]) -> Status:
    return Status(major=int(msg.get("major", 0)), minor=int(msg.get("minor", 0)))


# =========================
# framing
# =========================
def encode_message(obj: Dict[str, Any]) -> bytes:
    body = json.dumps(obj, separators=(",", ":"), ensure_ascii=True).encode("utf-8")
    if len(body) > MAX_MESSAGE:
        raise FrameError(f"rpc message too large: {len(body)} > {MAX_MESSAGE}")
    return _LEN.pack(len(body)) + body


def decode_message(body: bytes) -> Dict[str, Any]:
    try:
        obj = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"rpc message is not JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ValueError("rpc message must be a JSON object")
    return obj


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise FrameError(f"broker closed the connection (got {len(buf)} of {n} bytes)")
        buf += chunk
    return bytes(buf)


def send_sync(sock: socket.socket, obj: Dict[str, Any]) -> None:
    try:
        sock.sendall(encode_message(obj))
    except OSError as e:
        raise TransportError(f"error sending to broker: {e}") from e


def recv_sync(sock: socket.socket) -> Dict[str, Any]:
    try:
        (n,) = _LEN.unpack(_recv_exact(sock, _LEN.size))
        if n > MAX_MESSAGE:
            raise FrameError(f"malformed rpc length prefix: {n}")
        body = _recv_exact(sock, n)
    except socket.timeout as e:
        raise TransportError("timed out waiting for broker") from e
    except OSError as e:
        raise TransportError(f"error reading from broker: {e}") from e
    try:
        return decode_message(body)
    except ValueError as e:
        raise FrameError(str(e)) from e


async def send_async(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    writer.write(encode_message(obj))
    await writer.drain()


async def recv_async(reader: asyncio.StreamReader) -> Optional[bytes]:
    """Returns the raw JSON body, or None on a clean close between messages."""
    try:
        hdr = await reader.readexactly(_LEN.size)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise FrameError("stream closed mid-length") from e
    (n,) = _LEN.unpack(hdr)
    if n > MAX_MESSAGE:
        raise FrameError(f"malformed rpc length prefix: {n}")
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise FrameError("stream closed mid-message") from e
