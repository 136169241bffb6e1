# MIT License © 2025 Motohiro Suzuki
"""
provider/tokens.py

Loopback mechanism tokens are TLV (Type=u16, Length=u32, Value=bytes),
network byte order.

Message Types:
- INIT   = 1  initiator -> acceptor, first context token
- ACCEPT = 2  acceptor -> initiator, mutual authentication only
- FINISH = 3  initiator -> acceptor, mutual authentication only
- CRED   = 4  exported credential blob

Fields (TLV types):
- 0x0001 : MSG_TYPE (u8)
- 0x0002 : NONCE_C (bytes, 16)
- 0x0003 : NONCE_S (bytes, 16)
- 0x0004 : NAME (utf-8; initiator name in INIT, credential name in CRED)
- 0x0005 : TARGET_NAME (utf-8)
- 0x0006 : FLAGS (u32, RFC 2744 bit positions)
- 0x0007 : USAGE (utf-8)
- 0x0008 : NAME_TYPE (utf-8)
- 0x0010 : PROOF (HMAC-SHA256)
- 0x0011 : DELEG (utf-8 delegated principal)

Proof rule (canonical):
- PROOF covers the "body TLVs" (everything except PROOF itself),
  encoded sorted by TLV type ascending.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

_TLV_HDR = struct.Struct("!HI")  # type(u16), len(u32)


# ---- Message types ----
MSG_INIT = 1
MSG_ACCEPT = 2
MSG_FINISH = 3
MSG_CRED = 4

# ---- TLV types ----
T_MSG_TYPE = 0x0001
T_NONCE_C = 0x0002
T_NONCE_S = 0x0003
T_NAME = 0x0004
T_TARGET_NAME = 0x0005
T_FLAGS = 0x0006
T_USAGE = 0x0007
T_NAME_TYPE = 0x0008

T_PROOF = 0x0010
T_DELEG = 0x0011


def enc_tlv(t: int, v: bytes) -> bytes:
    vb = bytes(v)
    if t < 0 or t > 0xFFFF:
        raise ValueError("tlv type out of range")
    if len(vb) > 0xFFFFFFFF:
        raise ValueError("tlv too long")
    return _TLV_HDR.pack(t & 0xFFFF, len(vb) & 0xFFFFFFFF) + vb


def dec_tlvs(blob: bytes) -> List[Tuple[int, bytes]]:
    out: List[Tuple[int, bytes]] = []
    i = 0
    b = bytes(blob)
    while i < len(b):
        if i + _TLV_HDR.size > len(b):
            raise ValueError("truncated tlv header")
        t, ln = _TLV_HDR.unpack_from(b, i)
        i += _TLV_HDR.size
        if i + ln > len(b):
            raise ValueError("truncated tlv value")
        v = b[i : i + ln]
        i += ln
        out.append((int(t), bytes(v)))
    return out


def canonical_body_bytes(fields: Dict[int, bytes]) -> bytes:
    items = sorted(fields.items(), key=lambda kv: kv[0])
    return b"".join(enc_tlv(t, v) for t, v in items)


def _fields(blob: bytes, expect_type: int, label: str) -> Dict[int, bytes]:
    m: Dict[int, bytes] = {}
    for t, v in dec_tlvs(blob):
        m[t] = v
    if T_MSG_TYPE not in m or len(m[T_MSG_TYPE]) != 1 or m[T_MSG_TYPE][0] != expect_type:
        raise ValueError(f"not {label}")
    return m


def _require(m: Dict[int, bytes], t: int, what: str) -> bytes:
    if t not in m:
        raise ValueError(f"missing {what}")
    return m[t]


def _u32(b: bytes) -> int:
    if len(b) != 4:
        raise ValueError("FLAGS must be 4 bytes (u32)")
    return int.from_bytes(b, "big")


def _with_proof(body: Dict[int, bytes], proof: Optional[bytes]) -> bytes:
    blob = canonical_body_bytes(body)
    if proof is not None:
        blob += enc_tlv(T_PROOF, proof)
    return blob


@dataclass(frozen=True)
class InitToken:
    nonce_c: bytes
    src_name: str
    target_name: str
    flags: int
    proof: Optional[bytes] = None
    deleg: Optional[str] = None

    def body_fields(self) -> Dict[int, bytes]:
        d: Dict[int, bytes] = {
            T_MSG_TYPE: bytes([MSG_INIT]),
            T_NONCE_C: bytes(self.nonce_c),
            T_NAME: self.src_name.encode("utf-8"),
            T_TARGET_NAME: self.target_name.encode("utf-8"),
            T_FLAGS: int(self.flags).to_bytes(4, "big"),
        }
        if self.deleg is not None:
            d[T_DELEG] = self.deleg.encode("utf-8")
        return d

    def to_bytes(self) -> bytes:
        return _with_proof(self.body_fields(), self.proof)

    @staticmethod
    def parse(blob: bytes) -> "InitToken":
        m = _fields(blob, MSG_INIT, "INIT")
        deleg = m.get(T_DELEG)
        return InitToken(
            nonce_c=_require(m, T_NONCE_C, "client nonce"),
            src_name=_require(m, T_NAME, "initiator name").decode("utf-8"),
            target_name=_require(m, T_TARGET_NAME, "target name").decode("utf-8"),
            flags=_u32(_require(m, T_FLAGS, "flags")),
            proof=m.get(T_PROOF),
            deleg=None if deleg is None else deleg.decode("utf-8"),
        )


@dataclass(frozen=True)
class AcceptToken:
    nonce_s: bytes
    flags: int
    proof: bytes

    def body_fields(self) -> Dict[int, bytes]:
        return {
            T_MSG_TYPE: bytes([MSG_ACCEPT]),
            T_NONCE_S: bytes(self.nonce_s),
            T_FLAGS: int(self.flags).to_bytes(4, "big"),
        }

    def to_bytes(self) -> bytes:
        return _with_proof(self.body_fields(), self.proof)

    @staticmethod
    def parse(blob: bytes) -> "AcceptToken":
        m = _fields(blob, MSG_ACCEPT, "ACCEPT")
        return AcceptToken(
            nonce_s=_require(m, T_NONCE_S, "server nonce"),
            flags=_u32(_require(m, T_FLAGS, "flags")),
            proof=_require(m, T_PROOF, "proof"),
        )


@dataclass(frozen=True)
class FinishToken:
    proof: bytes
    deleg: Optional[str] = None

    def body_fields(self) -> Dict[int, bytes]:
        d: Dict[int, bytes] = {T_MSG_TYPE: bytes([MSG_FINISH])}
        if self.deleg is not None:
            d[T_DELEG] = self.deleg.encode("utf-8")
        return d

    def to_bytes(self) -> bytes:
        return _with_proof(self.body_fields(), self.proof)

    @staticmethod
    def parse(blob: bytes) -> "FinishToken":
        m = _fields(blob, MSG_FINISH, "FINISH")
        deleg = m.get(T_DELEG)
        return FinishToken(
            proof=_require(m, T_PROOF, "proof"),
            deleg=None if deleg is None else deleg.decode("utf-8"),
        )


@dataclass(frozen=True)
class CredBlob:
    usage: str
    name: str
    name_type: str
    mac: bytes = b""

    def body_fields(self) -> Dict[int, bytes]:
        return {
            T_MSG_TYPE: bytes([MSG_CRED]),
            T_NAME: self.name.encode("utf-8"),
            T_USAGE: self.usage.encode("utf-8"),
            T_NAME_TYPE: self.name_type.encode("utf-8"),
        }

    def to_bytes(self) -> bytes:
        return _with_proof(self.body_fields(), self.mac)

    @staticmethod
    def parse(blob: bytes) -> "CredBlob":
        m = _fields(blob, MSG_CRED, "CRED")
        return CredBlob(
            usage=_require(m, T_USAGE, "usage").decode("utf-8"),
            name=m.get(T_NAME, b"").decode("utf-8"),
            name_type=m.get(T_NAME_TYPE, b"").decode("utf-8"),
            mac=_require(m, T_PROOF, "mac"),
        )
