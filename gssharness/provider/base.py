# MIT License © 2025 Motohiro Suzuki
"""
provider/base.py

The contract through which both protocols drive a security provider.

- Handles (names, credentials, contexts) are opaque: protocols hold and pass
  them, never look inside.
- Every call returns a frozen result carrying a Status. On the proxy path the
  result also carries the CallContext that MUST be passed to the next call.
  Local providers hand the CallContext they were given straight back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Mapping, Optional, Protocol, Sequence

# ---- Mechanism OIDs (dotted form) ----
MECH_SPNEGO = "1.3.6.1.5.5.2"
MECH_KRB5 = "1.2.840.113554.1.2.2"
MECH_IAKERB = "1.3.6.1.5.2.5"
MECH_LOOPBACK = "1.3.6.1.4.1.32473.1.1"


class MajorStatus(IntEnum):
    """Routine major status values (RFC 2744 numbering)."""
    COMPLETE = 0
    CONTINUE_NEEDED = 1
    BAD_MECH = 1 << 16
    BAD_NAME = 2 << 16
    BAD_NAMETYPE = 3 << 16
    BAD_STATUS = 5 << 16
    BAD_MIC = 6 << 16
    NO_CRED = 7 << 16
    NO_CONTEXT = 8 << 16
    DEFECTIVE_TOKEN = 9 << 16
    DEFECTIVE_CREDENTIAL = 10 << 16
    CREDENTIALS_EXPIRED = 11 << 16
    CONTEXT_EXPIRED = 12 << 16
    FAILURE = 13 << 16
    UNAVAILABLE = 16 << 16

    @classmethod
    def coerce(cls, value: int) -> "MajorStatus | int":
        try:
            return cls(int(value))
        except ValueError:
            return int(value)


@dataclass(frozen=True)
class Status:
    major: int = MajorStatus.COMPLETE
    minor: int = 0

    @property
    def complete(self) -> bool:
        return self.major == MajorStatus.COMPLETE

    @property
    def continue_needed(self) -> bool:
        return self.major == MajorStatus.CONTINUE_NEEDED

    @property
    def failed(self) -> bool:
        return not (self.complete or self.continue_needed)

    def describe(self) -> str:
        m = MajorStatus.coerce(self.major)
        name = m.name if isinstance(m, MajorStatus) else "UNKNOWN"
        return f"major {int(self.major):#x} ({name}), minor {int(self.minor):#x}"


COMPLETE = Status()
CONTINUE_NEEDED = Status(major=MajorStatus.CONTINUE_NEEDED)


def failure(major: int, minor: int = 0) -> Status:
    return Status(major=major, minor=minor)


class NameType(str, Enum):
    HOSTBASED_SERVICE = "hostbased_service"
    USER_NAME = "user_name"


class CredUsage(str, Enum):
    INITIATE = "initiate"
    ACCEPT = "accept"
    BOTH = "both"


@dataclass(frozen=True)
class CallContext:
    """Opaque correlation value minted by a (proxied) provider."""
    value: bytes = b""

    def hex(self) -> str:
        return self.value.hex()


@dataclass(frozen=True)
class NegotiatedFlags:
    delegate: bool = False
    sequence: bool = False
    replay: bool = False
    conf: bool = False
    integ: bool = False
    mutual: bool = False

    # RFC 2744 req_flags bit positions
    _BITS = (
        ("delegate", 1),
        ("mutual", 2),
        ("replay", 4),
        ("sequence", 8),
        ("conf", 16),
        ("integ", 32),
    )

    def to_int(self) -> int:
        v = 0
        for name, bit in self._BITS:
            if getattr(self, name):
                v |= bit
        return v

    @classmethod
    def from_int(cls, v: int) -> "NegotiatedFlags":
        return cls(**{name: bool(v & bit) for name, bit in cls._BITS})

    def narrow(self, other: "NegotiatedFlags") -> "NegotiatedFlags":
        return NegotiatedFlags.from_int(self.to_int() & other.to_int())

    def describe(self) -> str:
        on = [name for name, _ in self._BITS if getattr(self, name)]
        return ", ".join(on) if on else "none"


# =========================
# Results
# =========================

@dataclass(frozen=True)
class NameResult:
    status: Status
    name: Any = None
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class CredResult:
    status: Status
    credential: Any = None
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class InitContextResult:
    status: Status
    context: Any = None
    output_token: Optional[bytes] = None
    flags: NegotiatedFlags = field(default_factory=NegotiatedFlags)
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class AcceptContextResult:
    status: Status
    context: Any = None
    output_token: Optional[bytes] = None
    delegated_credential: Any = None
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class WrapResult:
    status: Status
    conf_applied: bool = False
    token: bytes = b""
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class UnwrapResult:
    status: Status
    conf_applied: bool = False
    payload: bytes = b""
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class MicResult:
    status: Status
    token: bytes = b""
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class ExportResult:
    status: Status
    token: bytes = b""
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class StatusResult:
    status: Status
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class ContextInfo:
    status: Status
    source_name: str = ""
    source_name_type: str = ""
    target_name: str = ""
    lifetime: int = 0
    mech: str = ""
    flags: NegotiatedFlags = field(default_factory=NegotiatedFlags)
    locally_initiated: bool = False
    open: bool = False
    source_attributes: Mapping[str, bytes] = field(default_factory=dict)
    call_ctx: Optional[CallContext] = None


@dataclass(frozen=True)
class NamesForMechResult:
    status: Status
    name_types: Sequence[str] = ()
    call_ctx: Optional[CallContext] = None


# =========================
# Provider contract
# =========================

class SecurityProvider(Protocol):
    """
    External security provider. Implementations:
      - provider/loopback.py  (in-process reference mechanism)
      - provider/proxy.py     (forwards every call to provider/broker.py)
    """

    def get_call_context(self, call_ctx: Optional[CallContext] = None) -> StatusResult:
        ...

    def import_name(
        self, name: str, name_type: NameType, *, call_ctx: Optional[CallContext] = None
    ) -> NameResult:
        ...

    def acquire_credential(
        self,
        name: Any,
        *,
        password: Optional[bytes] = None,
        mechs: Optional[Sequence[str]] = None,
        usage: CredUsage = CredUsage.INITIATE,
        call_ctx: Optional[CallContext] = None,
    ) -> CredResult:
        ...

    def init_context(
        self,
        credential: Any,
        context: Any,
        target: Any,
        mech: Optional[str],
        flags: NegotiatedFlags,
        input_token: Optional[bytes] = None,
        *,
        call_ctx: Optional[CallContext] = None,
    ) -> InitContextResult:
        ...

    def accept_context(
        self,
        credential: Any,
        context: Any,
        input_token: bytes,
        *,
        call_ctx: Optional[CallContext] = None,
    ) -> AcceptContextResult:
        ...

    def wrap(
        self, context: Any, conf_requested: bool, payload: bytes, *, call_ctx: Optional[CallContext] = None
    ) -> WrapResult:
        ...

    def unwrap(self, context: Any, token: bytes, *, call_ctx: Optional[CallContext] = None) -> UnwrapResult:
        ...

    def get_mic(self, context: Any, payload: bytes, *, call_ctx: Optional[CallContext] = None) -> MicResult:
        ...

    def verify_mic(
        self, context: Any, payload: bytes, token: bytes, *, call_ctx: Optional[CallContext] = None
    ) -> StatusResult:
        ...

    def export_credential(self, credential: Any, *, call_ctx: Optional[CallContext] = None) -> ExportResult:
        ...

    def import_credential(self, token: bytes, *, call_ctx: Optional[CallContext] = None) -> CredResult:
        ...

    def inquire_context(self, context: Any, *, call_ctx: Optional[CallContext] = None) -> ContextInfo:
        ...

    def inquire_names_for_mech(
        self, mech: str, *, call_ctx: Optional[CallContext] = None
    ) -> NamesForMechResult:
        ...

    def release_context(self, context: Any, *, call_ctx: Optional[CallContext] = None) -> StatusResult:
        ...

    def release_credential(self, credential: Any, *, call_ctx: Optional[CallContext] = None) -> StatusResult:
        ...

    def release_name(self, name: Any, *, call_ctx: Optional[CallContext] = None) -> StatusResult:
        ...
