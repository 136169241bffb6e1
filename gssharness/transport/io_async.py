# MIT License © 2025 Motohiro Suzuki
"""
transport/io_async.py

Token IO over asyncio streams.

- write_token / read_token are the raw codec entry points.
- AsyncTokenIO binds a stream pair to a wire variant and an optional
  per-read deadline; protocols only talk to this object.
- Peer-side socket errors surface as TransportError / FrameError.
"""

from __future__ import annotations

import asyncio

from gssharness.protocol.errors import TransportError
from gssharness.transport.token_frame import Token, TokenFlag, WireVariant


async def write_token(writer: asyncio.StreamWriter, flags: int, payload: bytes = b"") -> None:
    try:
        writer.write(Token(flags=int(flags), payload=bytes(payload)).to_bytes())
        await writer.drain()
    except (ConnectionError, OSError) as e:
        raise TransportError(f"error sending token: {e}") from e


async def read_token(reader: asyncio.StreamReader) -> Token:
    return await Token.read_from(reader)


class AsyncTokenIO:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        variant: WireVariant = WireVariant.CURRENT,
        timeout: float | None = None,
    ) -> None:
        self._r = reader
        self._w = writer
        self.variant = variant
        self.timeout = timeout
        self._closed = False

    @property
    def legacy(self) -> bool:
        return self.variant is WireVariant.LEGACY

    def peername(self) -> str:
        peer = self._w.get_extra_info("peername")
        if isinstance(peer, tuple) and len(peer) >= 2:
            return f"{peer[0]}:{peer[1]}"
        return str(peer) if peer else "?"

    async def read_token(self) -> Token:
        if self.timeout is None:
            return await read_token(self._r)
        return await asyncio.wait_for(read_token(self._r), timeout=self.timeout)

    async def write_token(self, flags: int, payload: bytes = b"") -> None:
        if self._closed:
            raise TransportError("write on closed connection")
        await write_token(self._w, flags, payload)

    # -------------------------
    # Convenience senders
    # -------------------------
    async def send_noop(self, extra: int = 0) -> None:
        await self.write_token(TokenFlag.NOOP | extra)

    async def send_context(self, payload: bytes) -> None:
        await self.write_token(TokenFlag.CONTEXT, payload)

    async def send_data(self, flags: int, payload: bytes) -> None:
        await self.write_token(self.variant.data_flags(TokenFlag.DATA | flags), payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._w.close()
            await self._w.wait_closed()
        except (ConnectionError, OSError):
            pass


async def open_client(
    host: str,
    port: int,
    *,
    variant: WireVariant = WireVariant.CURRENT,
    timeout: float | None = None,
) -> AsyncTokenIO:
    conn = asyncio.open_connection(host, port)
    if timeout is None:
        reader, writer = await conn
    else:
        reader, writer = await asyncio.wait_for(conn, timeout=timeout)
    return AsyncTokenIO(reader, writer, variant=variant, timeout=timeout)
