# MIT License © 2025 Motohiro Suzuki
"""
crypto/zeroize.py

Best-effort wiping of context keys when a security context is released.
'bytes' is immutable, so keys are held in a SecretBox (bytearray) that can
be cleared in place.
"""

from __future__ import annotations


def wipe_bytearray(b: bytearray) -> None:
    """In-place wipe for mutable buffer."""
    for i in range(len(b)):
        b[i] = 0


class SecretBox:
    """Holds a bytearray so it can be wiped in-place."""
    __slots__ = ("_buf",)

    def __init__(self, data: bytes | bytearray) -> None:
        self._buf = data if isinstance(data, bytearray) else bytearray(data)

    def bytes(self) -> bytes:
        return bytes(self._buf)

    def wipe(self) -> None:
        wipe_bytearray(self._buf)

    @property
    def wiped(self) -> bool:
        return not any(self._buf)

    def __len__(self) -> int:
        return len(self._buf)
