# MIT License © 2025 Motohiro Suzuki
"""
provider/proxy.py

SecurityProvider that forwards every call to a ProviderBroker over a unix
socket. Calls are blocking: one request, one response, in order. The
socket is shared, so calls from several threads are serialized.

The CallContext returned by the broker MUST be passed to the next call;
the broker refuses contexts it never issued.
"""

from __future__ import annotations

import socket
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

from gssharness.protocol.errors import TransportError
from gssharness.provider.base import (
    AcceptContextResult,
    CallContext,
    ContextInfo,
    CredResult,
    CredUsage,
    ExportResult,
    InitContextResult,
    MicResult,
    NameResult,
    NamesForMechResult,
    NameType,
    NegotiatedFlags,
    Status,
    StatusResult,
    UnwrapResult,
    WrapResult,
)
from gssharness.provider.rpc import (
    b64d,
    b64e,
    ctx_from_wire,
    ctx_to_wire,
    flags_from_wire,
    flags_to_wire,
    recv_sync,
    send_sync,
    status_from_wire,
)


@dataclass(frozen=True)
class RemoteHandle:
    kind: str
    id: str


def _hid(h: Any) -> Optional[str]:
    if h is None:
        return None
    if not isinstance(h, RemoteHandle):
        raise TypeError(f"not a broker handle: {type(h).__name__}")
    return h.id


def _handle(kind: str, hid: Optional[str]) -> Optional[RemoteHandle]:
    return None if hid is None else RemoteHandle(kind, hid)


class ProxyProvider:
    def __init__(self, socket_path: str, *, timeout: Optional[float] = None) -> None:
        self.socket_path = socket_path
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()

    def _connect(self) -> socket.socket:
        if self._sock is None:
            s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            s.settimeout(self.timeout)
            try:
                s.connect(self.socket_path)
            except OSError as e:
                s.close()
                raise TransportError(f"cannot reach broker at {self.socket_path}: {e}") from e
            self._sock = s
        return self._sock

    def close(self) -> None:
        with self._lock:
            self._drop()

    def _drop(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _call(
        self, op: str, call_ctx: Optional[CallContext], **args: Any
    ) -> Tuple[Status, Optional[CallContext], Dict[str, Any]]:
        with self._lock:
            sock = self._connect()
            try:
                send_sync(sock, {"op": op, "call_ctx": ctx_to_wire(call_ctx), "args": args})
                resp = recv_sync(sock)
            except TransportError:
                self._drop()
                raise
        try:
            next_ctx = ctx_from_wire(resp.get("call_ctx"))
        except ValueError as e:
            raise TransportError(f"broker sent a bad call context: {e}") from e
        result = resp.get("result") or {}
        return status_from_wire(resp), next_ctx, result

    # -------------------------
    # SecurityProvider
    # -------------------------
    def get_call_context(self, call_ctx: Optional[CallContext] = None) -> StatusResult:
        st, nxt, _ = self._call("get_call_context", call_ctx)
        return StatusResult(st, nxt)

    def import_name(self, name: str, name_type: NameType, *, call_ctx=None) -> NameResult:
        st, nxt, r = self._call("import_name", call_ctx, name=name, name_type=NameType(name_type).value)
        return NameResult(st, _handle("name", r.get("name")), nxt)

    def acquire_credential(
        self,
        name: Any,
        *,
        password: Optional[bytes] = None,
        mechs: Optional[Sequence[str]] = None,
        usage: CredUsage = CredUsage.INITIATE,
        call_ctx=None,
    ) -> CredResult:
        st, nxt, r = self._call(
            "acquire_credential",
            call_ctx,
            name=_hid(name),
            password=b64e(password),
            mechs=None if mechs is None else list(mechs),
            usage=CredUsage(usage).value,
        )
        return CredResult(st, _handle("credential", r.get("credential")), nxt)

    def init_context(
        self,
        credential: Any,
        context: Any,
        target: Any,
        mech: Optional[str],
        flags: NegotiatedFlags,
        input_token: Optional[bytes] = None,
        *,
        call_ctx=None,
    ) -> InitContextResult:
        st, nxt, r = self._call(
            "init_context",
            call_ctx,
            credential=_hid(credential),
            context=_hid(context),
            target=_hid(target),
            mech=mech,
            flags=flags_to_wire(flags),
            input_token=b64e(input_token),
        )
        return InitContextResult(
            st,
            _handle("context", r.get("context")),
            b64d(r.get("output_token")),
            flags_from_wire(r.get("flags")),
            nxt,
        )

    def accept_context(self, credential: Any, context: Any, input_token: bytes, *, call_ctx=None) -> AcceptContextResult:
        st, nxt, r = self._call(
            "accept_context",
            call_ctx,
            credential=_hid(credential),
            context=_hid(context),
            input_token=b64e(input_token),
        )
        return AcceptContextResult(
            st,
            _handle("context", r.get("context")),
            b64d(r.get("output_token")),
            _handle("credential", r.get("delegated_credential")),
            nxt,
        )

    def wrap(self, context: Any, conf_requested: bool, payload: bytes, *, call_ctx=None) -> WrapResult:
        st, nxt, r = self._call("wrap", call_ctx, context=_hid(context), conf=bool(conf_requested), payload=b64e(payload))
        return WrapResult(st, bool(r.get("conf_applied")), b64d(r.get("token")) or b"", nxt)

    def unwrap(self, context: Any, token: bytes, *, call_ctx=None) -> UnwrapResult:
        st, nxt, r = self._call("unwrap", call_ctx, context=_hid(context), token=b64e(token))
        return UnwrapResult(st, bool(r.get("conf_applied")), b64d(r.get("payload")) or b"", nxt)

    def get_mic(self, context: Any, payload: bytes, *, call_ctx=None) -> MicResult:
        st, nxt, r = self._call("get_mic", call_ctx, context=_hid(context), payload=b64e(payload))
        return MicResult(st, b64d(r.get("token")) or b"", nxt)

    def verify_mic(self, context: Any, payload: bytes, token: bytes, *, call_ctx=None) -> StatusResult:
        st, nxt, _ = self._call("verify_mic", call_ctx, context=_hid(context), payload=b64e(payload), token=b64e(token))
        return StatusResult(st, nxt)

    def export_credential(self, credential: Any, *, call_ctx=None) -> ExportResult:
        st, nxt, r = self._call("export_credential", call_ctx, credential=_hid(credential))
        return ExportResult(st, b64d(r.get("token")) or b"", nxt)

    def import_credential(self, token: bytes, *, call_ctx=None) -> CredResult:
        st, nxt, r = self._call("import_credential", call_ctx, token=b64e(token))
        return CredResult(st, _handle("credential", r.get("credential")), nxt)

    def inquire_context(self, context: Any, *, call_ctx=None) -> ContextInfo:
        st, nxt, r = self._call("inquire_context", call_ctx, context=_hid(context))
        if st.failed:
            return ContextInfo(st, call_ctx=nxt)
        return ContextInfo(
            st,
            source_name=r.get("source_name", ""),
            source_name_type=r.get("source_name_type", ""),
            target_name=r.get("target_name", ""),
            lifetime=int(r.get("lifetime", 0)),
            mech=r.get("mech", ""),
            flags=flags_from_wire(r.get("flags")),
            locally_initiated=bool(r.get("locally_initiated")),
            open=bool(r.get("open")),
            source_attributes={k: b64d(v) for k, v in (r.get("source_attributes") or {}).items()},
            call_ctx=nxt,
        )

    def inquire_names_for_mech(self, mech: str, *, call_ctx=None) -> NamesForMechResult:
        st, nxt, r = self._call("inquire_names_for_mech", call_ctx, mech=mech)
        return NamesForMechResult(st, tuple(r.get("name_types") or ()), nxt)

    def release_context(self, context: Any, *, call_ctx=None) -> StatusResult:
        st, nxt, _ = self._call("release_context", call_ctx, context=_hid(context))
        return StatusResult(st, nxt)

    def release_credential(self, credential: Any, *, call_ctx=None) -> StatusResult:
        st, nxt, _ = self._call("release_credential", call_ctx, credential=_hid(credential))
        return StatusResult(st, nxt)

    def release_name(self, name: Any, *, call_ctx=None) -> StatusResult:
        st, nxt, _ = self._call("release_name", call_ctx, name=_hid(name))
        return StatusResult(st, nxt)
