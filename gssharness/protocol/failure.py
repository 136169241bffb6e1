# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from gssharness.protocol.errors import (
    ConfigError,
    FrameError,
    ProtocolViolation,
    ProviderFailure,
    TransportError,
)


class FailureLayer(str, Enum):
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    PROVIDER = "provider"
    CONFIG = "config"


class FailurePhase(str, Enum):
    PREAMBLE = "preamble"
    HANDSHAKE = "handshake"
    DATA = "data"
    CLOSE = "close"


class FailureCode(str, Enum):
    ERR_CONNECT = "ERR_CONNECT"
    ERR_FRAME = "ERR_FRAME"
    ERR_IO = "ERR_IO"
    ERR_TIMEOUT = "ERR_TIMEOUT"
    ERR_UNEXPECTED_TOKEN = "ERR_UNEXPECTED_TOKEN"
    ERR_UNAUTHENTICATED_PROTECTION = "ERR_UNAUTHENTICATED_PROTECTION"
    ERR_RESPONSE_MISMATCH = "ERR_RESPONSE_MISMATCH"
    ERR_PROVIDER = "ERR_PROVIDER"
    ERR_CONFIG = "ERR_CONFIG"
    ERR_INTERNAL = "ERR_INTERNAL"


@dataclass(frozen=True)
class Failure:
    """
    Unified error carrier for one session.
    detail is for local diagnostics only (never sent on the wire).
    """
    layer: FailureLayer
    phase: FailurePhase
    code: FailureCode
    fatal: bool = True
    detail: Optional[str] = None
    major: Optional[int] = None
    minor: Optional[int] = None
    flags: Optional[int] = None

    def redacted(self) -> "Failure":
        return Failure(
            layer=self.layer,
            phase=self.phase,
            code=self.code,
            fatal=self.fatal,
            detail=None,
            major=self.major,
            minor=self.minor,
            flags=self.flags,
        )

    def describe(self) -> str:
        s = f"{self.phase.value}: {self.code.value}"
        if self.detail:
            s += f": {self.detail}"
        return s

    @staticmethod
    def from_exception(exc: BaseException, phase: FailurePhase) -> "Failure":
        msg = str(exc) or type(exc).__name__

        if isinstance(exc, ProviderFailure):
            return Failure(
                layer=FailureLayer.PROVIDER,
                phase=phase,
                code=FailureCode.ERR_PROVIDER,
                detail=msg,
                major=int(exc.status.major),
                minor=int(exc.status.minor),
            )

        if isinstance(exc, ProtocolViolation):
            return Failure(
                layer=FailureLayer.PROTOCOL,
                phase=phase,
                code=FailureCode(exc.code),
                detail=msg,
                flags=exc.flags,
            )

        if isinstance(exc, FrameError):
            return Failure(layer=FailureLayer.TRANSPORT, phase=phase, code=FailureCode.ERR_FRAME, detail=msg)

        if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
            return Failure(layer=FailureLayer.TRANSPORT, phase=phase, code=FailureCode.ERR_TIMEOUT, detail="timed out")

        if isinstance(exc, ConnectionRefusedError):
            return Failure(layer=FailureLayer.TRANSPORT, phase=phase, code=FailureCode.ERR_CONNECT, detail=msg)

        if isinstance(exc, (TransportError, OSError)):
            return Failure(layer=FailureLayer.TRANSPORT, phase=phase, code=FailureCode.ERR_IO, detail=msg)

        if isinstance(exc, ConfigError):
            return Failure(layer=FailureLayer.CONFIG, phase=phase, code=FailureCode.ERR_CONFIG, detail=msg)

        return Failure(
            layer=FailureLayer.PROTOCOL,
            phase=phase,
            code=FailureCode.ERR_INTERNAL,
            detail=f"{type(exc).__name__}: {msg}",
        )
