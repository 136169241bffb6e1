# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

from collections import deque
from typing import Any, List, Optional, Sequence, Tuple

import pytest

from gssharness.provider.base import (
    COMPLETE,
    CONTINUE_NEEDED,
    MECH_LOOPBACK,
    AcceptContextResult,
    CallContext,
    ContextInfo,
    CredResult,
    ExportResult,
    InitContextResult,
    MajorStatus,
    MicResult,
    NameResult,
    NamesForMechResult,
    NegotiatedFlags,
    Status,
    StatusResult,
    UnwrapResult,
    WrapResult,
    failure,
)
from gssharness.transport.io_async import AsyncTokenIO
from gssharness.transport.token_frame import EOF_TOKEN, Token, WireVariant


class FakeTokenIO(AsyncTokenIO):
    """AsyncTokenIO with scripted inbound tokens; outbound tokens are recorded."""

    def __init__(self, replies: Sequence[Token] = (), *, variant: WireVariant = WireVariant.CURRENT) -> None:
        self.variant = variant
        self.timeout = None
        self._closed = False
        self._replies = deque(replies)
        self.sent: List[Token] = []

    def peername(self) -> str:
        return "fake:0"

    async def read_token(self) -> Token:
        if self._replies:
            return self._replies.popleft()
        return EOF_TOKEN

    async def write_token(self, flags: int, payload: bytes = b"") -> None:
        self.sent.append(Token(flags=int(flags), payload=bytes(payload)))

    async def close(self) -> None:
        self._closed = True


class Handle:
    def __init__(self, label: str) -> None:
        self.label = label

    def __repr__(self) -> str:
        return f"Handle({self.label})"


class ScriptedProvider:
    """
    Records every call as (op, call_ctx) and answers from scripts.
    Each call returns CallContext(b"cc-<n>") where n counts calls from 1.
    """

    def __init__(
        self,
        *,
        init_script: Sequence[Status] = (COMPLETE,),
        accept_script: Sequence[Status] = (COMPLETE,),
        mic_ok: bool = True,
        conf_applied: bool = True,
        delegated: bool = False,
    ) -> None:
        self.init_script = list(init_script)
        self.accept_script = list(accept_script)
        self.mic_ok = mic_ok
        self.conf_applied = conf_applied
        self.delegated = delegated

        self.calls: List[Tuple[str, Optional[CallContext]]] = []
        self.released: List[Tuple[str, Any]] = []
        self.accept_creds: List[Any] = []
        self.imported: List[Handle] = []
        self.context = Handle("ctx")
        self.delegated_cred = Handle("delegated")
        self._init_i = 0
        self._accept_i = 0

    # ---- helpers ----
    def _rec(self, op: str, call_ctx: Optional[CallContext]) -> CallContext:
        self.calls.append((op, call_ctx))
        return CallContext(f"cc-{len(self.calls)}".encode())

    def ops(self) -> List[str]:
        return [op for op, _ in self.calls]

    def released_kinds(self, kind: str) -> List[Any]:
        return [h for k, h in self.released if k == kind]

    # ---- SecurityProvider ----
    def get_call_context(self, call_ctx=None):
        return StatusResult(COMPLETE, self._rec("get_call_context", call_ctx))

    def import_name(self, name, name_type, *, call_ctx=None):
        return NameResult(COMPLETE, Handle(f"name:{name}"), self._rec("import_name", call_ctx))

    def acquire_credential(self, name, *, password=None, mechs=None, usage=None, call_ctx=None):
        return CredResult(COMPLETE, Handle("cred"), self._rec("acquire_credential", call_ctx))

    def init_context(self, credential, context, target, mech, flags, input_token=None, *, call_ctx=None):
        nxt = self._rec("init_context", call_ctx)
        i = self._init_i
        self._init_i += 1
        st = self.init_script[i]
        if st.failed:
            return InitContextResult(st, context, None, flags, nxt)
        return InitContextResult(st, self.context, f"init-{i}".encode(), flags, nxt)

    def accept_context(self, credential, context, input_token, *, call_ctx=None):
        nxt = self._rec("accept_context", call_ctx)
        self.accept_creds.append(credential)
        i = self._accept_i
        self._accept_i += 1
        st = self.accept_script[i]
        if st.failed:
            return AcceptContextResult(st, context, None, None, nxt)
        out = f"accept-{i}".encode() if st.continue_needed else None
        deleg = self.delegated_cred if (self.delegated and st.complete) else None
        return AcceptContextResult(st, self.context, out, deleg, nxt)

    def wrap(self, context, conf_requested, payload, *, call_ctx=None):
        nxt = self._rec("wrap", call_ctx)
        return WrapResult(COMPLETE, bool(conf_requested and self.conf_applied), b"W:" + bytes(payload), nxt)

    def unwrap(self, context, token, *, call_ctx=None):
        nxt = self._rec("unwrap", call_ctx)
        if not bytes(token).startswith(b"W:"):
            return UnwrapResult(failure(MajorStatus.DEFECTIVE_TOKEN), call_ctx=nxt)
        return UnwrapResult(COMPLETE, self.conf_applied, bytes(token)[2:], nxt)

    def get_mic(self, context, payload, *, call_ctx=None):
        return MicResult(COMPLETE, b"MIC:" + bytes(payload), self._rec("get_mic", call_ctx))

    def verify_mic(self, context, payload, token, *, call_ctx=None):
        nxt = self._rec("verify_mic", call_ctx)
        if self.mic_ok and bytes(token) == b"MIC:" + bytes(payload):
            return StatusResult(COMPLETE, nxt)
        return StatusResult(failure(MajorStatus.BAD_MIC), nxt)

    def export_credential(self, credential, *, call_ctx=None):
        return ExportResult(COMPLETE, b"EXPORTED", self._rec("export_credential", call_ctx))

    def import_credential(self, token, *, call_ctx=None):
        h = Handle(f"imported-{len(self.imported)}")
        self.imported.append(h)
        return CredResult(COMPLETE, h, self._rec("import_credential", call_ctx))

    def inquire_context(self, context, *, call_ctx=None):
        return ContextInfo(
            COMPLETE,
            source_name="alice",
            source_name_type="user_name",
            target_name="svc@host",
            lifetime=100,
            mech=MECH_LOOPBACK,
            flags=NegotiatedFlags(mutual=True, conf=True, integ=True),
            locally_initiated=True,
            open=True,
            source_attributes={"urn:test:attr": b"value"},
            call_ctx=self._rec("inquire_context", call_ctx),
        )

    def inquire_names_for_mech(self, mech, *, call_ctx=None):
        return NamesForMechResult(
            COMPLETE, ("hostbased_service", "user_name"), self._rec("inquire_names_for_mech", call_ctx)
        )

    def release_context(self, context, *, call_ctx=None):
        self.released.append(("context", context))
        return StatusResult(COMPLETE, self._rec("release_context", call_ctx))

    def release_credential(self, credential, *, call_ctx=None):
        self.released.append(("credential", credential))
        return StatusResult(COMPLETE, self._rec("release_credential", call_ctx))

    def release_name(self, name, *, call_ctx=None):
        self.released.append(("name", name))
        return StatusResult(COMPLETE, self._rec("release_name", call_ctx))


CONT = CONTINUE_NEEDED


@pytest.fixture
def lines():
    """Collects console output; pass `lines.append` as `out=`."""
    return []
