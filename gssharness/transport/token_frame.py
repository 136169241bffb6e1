# MIT License © 2025 Motohiro Suzuki
"""
transport/token_frame.py

One token on the wire:
    flags(u8) || payload_len(u32, big-endian) || payload

- flags is a bit set (TokenFlag); bits combine freely.
- flags == 0 with an empty payload is how a closed stream is reported (EOF).
  It is NOT the same thing as an explicit NOOP token.
- The legacy ("v1") variant uses the same framing but never sends the
  capability preamble and always sends DATA tokens with flags == 0.
"""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from enum import Enum, IntFlag

from gssharness.protocol.errors import FrameError

MAX_PAYLOAD = 16 * 1024 * 1024

_HDR = struct.Struct("!BI")  # flags(u8), payload_len(u32)


class TokenFlag(IntFlag):
    NOOP = 1 << 0
    CONTEXT = 1 << 1
    DATA = 1 << 2
    MIC = 1 << 3

    CONTEXT_NEXT = 1 << 4
    WRAPPED = 1 << 5
    ENCRYPTED = 1 << 6
    SEND_MIC = 1 << 7


PROTECTION_FLAGS = TokenFlag.WRAPPED | TokenFlag.ENCRYPTED | TokenFlag.SEND_MIC


class WireVariant(str, Enum):
    CURRENT = "current"
    LEGACY = "v1"

    @property
    def sends_preamble(self) -> bool:
        return self is WireVariant.CURRENT

    def data_flags(self, flags: int) -> int:
        """Flags actually put on a DATA token for this variant."""
        if self is WireVariant.LEGACY:
            return 0
        return int(flags) & 0xFF


@dataclass(frozen=True)
class Token:
    flags: int
    payload: bytes = b""

    @property
    def is_eof(self) -> bool:
        return self.flags == 0 and not self.payload

    def has(self, flag: TokenFlag) -> bool:
        return (self.flags & flag) != 0

    def to_bytes(self) -> bytes:
        p = bytes(self.payload)
        if len(p) > MAX_PAYLOAD:
            raise FrameError(f"payload too large: {len(p)} > {MAX_PAYLOAD}")
        return _HDR.pack(int(self.flags) & 0xFF, len(p)) + p

    @staticmethod
    async def read_from(reader: asyncio.StreamReader) -> "Token":
        try:
            first = await reader.readexactly(1)
        except asyncio.IncompleteReadError:
            return EOF_TOKEN
        except (ConnectionResetError, BrokenPipeError) as e:
            raise FrameError(f"connection reset before token: {e}") from e

        try:
            rest = await reader.readexactly(_HDR.size - 1)
            (plen,) = struct.unpack("!I", rest)
            if plen > MAX_PAYLOAD:
                raise FrameError(f"malformed length prefix: {plen} > {MAX_PAYLOAD}")
            payload = await reader.readexactly(plen) if plen else b""
        except asyncio.IncompleteReadError as e:
            raise FrameError(
                f"stream closed mid-token (got {len(e.partial)} of {e.expected} bytes)"
            ) from e
        except (ConnectionResetError, BrokenPipeError) as e:
            raise FrameError(f"connection reset mid-token: {e}") from e

        return Token(flags=first[0], payload=bytes(payload))


EOF_TOKEN = Token(flags=0, payload=b"")


def describe_flags(flags: int) -> str:
    if flags == 0:
        return "0"
    names = [f.name for f in TokenFlag if flags & f]
    return f"{flags} ({'|'.join(names)})"
