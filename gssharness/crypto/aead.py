# MIT License © 2025 Motohiro Suzuki
"""
crypto/aead.py

AES-GCM used by the loopback mechanism for confidentiality-protected wrap.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_LEN = 12


class AEADError(ValueError):
    pass


def seal(key: bytes, plaintext: bytes, aad: bytes) -> bytes:
    """Returns nonce || ciphertext+tag."""
    nonce = os.urandom(NONCE_LEN)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, aad)


def open_sealed(key: bytes, blob: bytes, aad: bytes) -> bytes:
    if len(blob) < NONCE_LEN + 16:
        raise AEADError("sealed blob too short")
    nonce, ct = blob[:NONCE_LEN], blob[NONCE_LEN:]
    try:
        return AESGCM(key).decrypt(nonce, ct, aad)
    except InvalidTag as e:
        raise AEADError("aead tag mismatch") from e
