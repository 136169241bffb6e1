# MIT License © 2025 Motohiro Suzuki
"""
protocol/session.py

Per-connection provider bookkeeping shared by both protocol roles.

- Threads the CallContext: each call is made with the value returned by the
  previous one, strictly in order.
- Raises ProviderFailure on any status other than COMPLETE/CONTINUE_NEEDED.
- Tracks every handle the session created and releases them in close():
  security context first (exactly once), then credentials, then names.
  Handles passed in from outside (the acceptor's process credential) are
  never released here.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional, Sequence

from gssharness.protocol.errors import ProviderFailure, TransportError
from gssharness.provider.base import (
    AcceptContextResult,
    CallContext,
    ContextInfo,
    CredUsage,
    InitContextResult,
    NameType,
    NegotiatedFlags,
    SecurityProvider,
    UnwrapResult,
    WrapResult,
)


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    ESTABLISHED = "established"
    UNAUTHENTICATED = "unauthenticated"
    FAILED = "failed"


class ProviderSession:
    def __init__(
        self,
        provider: SecurityProvider,
        call_ctx: Optional[CallContext] = None,
        *,
        mech: Optional[str] = None,
    ) -> None:
        self.provider = provider
        self.call_ctx = call_ctx
        self.mech = mech
        self.state = SessionState.NOT_STARTED
        self.context: Any = None
        self.calls = 0
        self.release_errors: List[str] = []
        self._creds: List[Any] = []
        self._names: List[Any] = []
        self._closed = False

    # -------------------------
    # plumbing
    # -------------------------
    def _advance(self, result: Any) -> Any:
        self.calls += 1
        if result.call_ctx is not None:
            self.call_ctx = result.call_ctx
        return result

    def _check(self, operation: str, result: Any) -> Any:
        self._advance(result)
        if result.status.failed:
            raise ProviderFailure(operation, result.status, self.mech)
        return result

    # -------------------------
    # names / credentials
    # -------------------------
    def import_name(self, name: str, name_type: NameType, operation: str = "importing name") -> Any:
        r = self._check(operation, self.provider.import_name(name, name_type, call_ctx=self.call_ctx))
        self._names.append(r.name)
        return r.name

    def acquire_credential(
        self,
        name: Any,
        *,
        password: Optional[bytes] = None,
        mechs: Optional[Sequence[str]] = None,
        usage: CredUsage = CredUsage.INITIATE,
        operation: str = "acquiring creds",
    ) -> Any:
        r = self._check(
            operation,
            self.provider.acquire_credential(
                name, password=password, mechs=mechs, usage=usage, call_ctx=self.call_ctx
            ),
        )
        self._creds.append(r.credential)
        return r.credential

    def export_credential(self, credential: Any, operation: str = "exporting a credential") -> bytes:
        r = self._check(operation, self.provider.export_credential(credential, call_ctx=self.call_ctx))
        return r.token

    def import_credential(self, token: bytes, operation: str = "importing a credential") -> Any:
        r = self._check(operation, self.provider.import_credential(token, call_ctx=self.call_ctx))
        self._creds.append(r.credential)
        return r.credential

    def release_credential(self, credential: Any, operation: str = "releasing credentials") -> None:
        self._creds = [c for c in self._creds if c is not credential]
        self._check(operation, self.provider.release_credential(credential, call_ctx=self.call_ctx))

    # -------------------------
    # context establishment
    # -------------------------
    def init_context(
        self,
        credential: Any,
        target: Any,
        flags: NegotiatedFlags,
        input_token: Optional[bytes] = None,
        operation: str = "initializing security context",
    ) -> InitContextResult:
        self.state = SessionState.IN_PROGRESS
        r = self._advance(
            self.provider.init_context(
                credential, self.context, target, self.mech, flags, input_token, call_ctx=self.call_ctx
            )
        )
        if r.context is not None:
            self.context = r.context
        if r.status.failed:
            raise ProviderFailure(operation, r.status, self.mech)
        return r

    def accept_context(
        self, credential: Any, input_token: bytes, operation: str = "accepting a context"
    ) -> AcceptContextResult:
        self.state = SessionState.IN_PROGRESS
        r = self._advance(
            self.provider.accept_context(credential, self.context, input_token, call_ctx=self.call_ctx)
        )
        if r.context is not None:
            self.context = r.context
        if r.status.failed:
            raise ProviderFailure(operation, r.status, self.mech)
        return r

    def inquire_context(self, operation: str = "inquiring context") -> ContextInfo:
        return self._check(operation, self.provider.inquire_context(self.context, call_ctx=self.call_ctx))

    def inquire_names_for_mech(self, mech: str, operation: str = "inquiring mech names") -> Sequence[str]:
        r = self._check(operation, self.provider.inquire_names_for_mech(mech, call_ctx=self.call_ctx))
        return tuple(r.name_types)

    # -------------------------
    # per-message
    # -------------------------
    def wrap(self, conf: bool, payload: bytes, operation: str = "wrapping data") -> WrapResult:
        return self._check(operation, self.provider.wrap(self.context, conf, payload, call_ctx=self.call_ctx))

    def unwrap(self, token: bytes, operation: str = "unwrapping token") -> UnwrapResult:
        return self._check(operation, self.provider.unwrap(self.context, token, call_ctx=self.call_ctx))

    def get_mic(self, payload: bytes, operation: str = "signing message") -> bytes:
        r = self._check(operation, self.provider.get_mic(self.context, payload, call_ctx=self.call_ctx))
        return r.token

    def verify_mic(self, payload: bytes, token: bytes, operation: str = "verifying signature") -> None:
        self._check(operation, self.provider.verify_mic(self.context, payload, token, call_ctx=self.call_ctx))

    # -------------------------
    # cleanup
    # -------------------------
    def _release(self, what: str, fn, handle: Any) -> None:
        try:
            r = self._advance(fn(handle, call_ctx=self.call_ctx))
        except TransportError as e:
            self.release_errors.append(f"releasing {what}: {e}")
            return
        except Exception as e:
            # later handles are still released
            self.release_errors.append(f"releasing {what}: {type(e).__name__}: {e}")
            return
        if r.status.failed:
            self.release_errors.append(f"releasing {what}: {r.status.describe()}")

    def close(self) -> None:
        """Release everything this session created. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        if self.context is not None:
            ctx, self.context = self.context, None
            self._release("security context", self.provider.release_context, ctx)
        while self._creds:
            self._release("credentials", self.provider.release_credential, self._creds.pop())
        while self._names:
            self._release("name", self.provider.release_name, self._names.pop())
