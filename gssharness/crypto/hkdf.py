# MIT License © 2025 Motohiro Suzuki
"""
crypto/hkdf.py

Key schedule helpers for the loopback mechanism: HKDF-SHA256 and HMAC-SHA256.
"""

from __future__ import annotations

import hashlib
import hmac
import struct

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

_MAX_OKM = 255 * 32


def build_ikm(*parts: bytes | None) -> bytes:
    """IKM = len(p0)||p0 || len(p1)||p1 || ...  (u32 big-endian lengths, None as empty)"""
    chunks = []
    for p in parts:
        b = bytes(p or b"")
        chunks.append(struct.pack("!I", len(b)))
        chunks.append(b)
    return b"".join(chunks)


def hkdf_sha256(ikm: bytes, salt: bytes, info: bytes, length: int) -> bytes:
    if not 0 < length <= _MAX_OKM:
        raise ValueError(f"hkdf length out of range: {length}")
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(ikm)


def hmac_sha256(key: bytes, msg: bytes) -> bytes:
    return hmac.new(key, msg, hashlib.sha256).digest()


def hmac_verify(key: bytes, msg: bytes, tag: bytes) -> bool:
    return hmac.compare_digest(hmac_sha256(key, msg), bytes(tag))
