# MIT License © 2025 Motohiro Suzuki
"""
protocol/acceptor.py

Server side of one accepted connection.

First token decides the session kind:
  - NOOP|CONTEXT_NEXT : authenticated (optional credential export exercise,
                        then CONTEXT tokens until the provider reports COMPLETE)
  - NOOP              : unauthenticated; any protection request is refused
  - EOF               : client went away, nothing to do

Message loop: DATA -> (unwrap) -> MIC | NOOP, until EOF or a closing NOOP.
The acceptor does not answer the closing NOOP.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gssharness.protocol.audit import TraceLog
from gssharness.protocol.errors import ProtocolViolation, TransportError
from gssharness.protocol.failure import Failure, FailureCode, FailurePhase
from gssharness.protocol.result import Result
from gssharness.protocol.session import ProviderSession, SessionState
from gssharness.provider.base import CallContext, SecurityProvider
from gssharness.transport.token_frame import PROTECTION_FLAGS, TokenFlag, describe_flags

EXPORT_ROUNDS = 3


@dataclass(frozen=True)
class AcceptorReport:
    peer: str
    authenticated: bool
    closed_by: str = "eof"
    mech: Optional[str] = None
    client_name: Optional[str] = None
    context_tokens_received: int = 0
    context_tokens_sent: int = 0
    messages: int = 0
    mics_sent: int = 0
    export_rounds: int = 0
    call_ctx: Optional[CallContext] = None


@dataclass
class _Stats:
    peer: str
    authenticated: bool = False
    closed_by: str = "eof"
    mech: Optional[str] = None
    client_name: Optional[str] = None
    context_tokens_received: int = 0
    context_tokens_sent: int = 0
    messages: int = 0
    mics_sent: int = 0
    export_rounds: int = 0

    def report(self, call_ctx: Optional[CallContext]) -> AcceptorReport:
        return AcceptorReport(
            peer=self.peer,
            authenticated=self.authenticated,
            closed_by=self.closed_by,
            mech=self.mech,
            client_name=self.client_name,
            context_tokens_received=self.context_tokens_received,
            context_tokens_sent=self.context_tokens_sent,
            messages=self.messages,
            mics_sent=self.mics_sent,
            export_rounds=self.export_rounds,
            call_ctx=call_ctx,
        )


def _export_exercise(sess: ProviderSession, credential: Any, st: _Stats) -> Any:
    """Export and reimport the acceptor credential; each round uses the previous round's output."""
    current = credential
    for _ in range(EXPORT_ROUNDS):
        blob = sess.export_credential(current)
        imported = sess.import_credential(blob)
        if current is not credential:
            sess.release_credential(current)
        current = imported
        st.export_rounds += 1
    return current


async def _accept(io, sess: ProviderSession, credential: Any, trace: TraceLog, st: _Stats) -> None:
    while True:
        tok = await io.read_token()
        if tok.is_eof:
            raise TransportError("EOF from client during context establishment")
        trace.dump(f"Received token ({len(tok.payload)} bytes):", tok.payload)
        if not tok.has(TokenFlag.CONTEXT):
            raise ProtocolViolation(
                f"Expected context establishment token, got {describe_flags(tok.flags)} token instead.",
                flags=tok.flags,
            )
        st.context_tokens_received += 1

        r = await asyncio.to_thread(sess.accept_context, credential, tok.payload)
        if r.output_token:
            trace.dump(f"Sending accept_sec_context token ({len(r.output_token)} bytes):", r.output_token)
            await io.send_context(r.output_token)
            st.context_tokens_sent += 1

        # delegated credentials are never used
        if r.delegated_credential is not None:
            await asyncio.to_thread(
                sess.release_credential, r.delegated_credential, "releasing delegated credentials"
            )

        if r.status.complete:
            trace.detail("")
            break
        trace.detail("continue needed...")

    sess.state = SessionState.ESTABLISHED
    st.authenticated = True

    info = await asyncio.to_thread(sess.inquire_context)
    st.mech = info.mech
    st.client_name = info.source_name or None
    trace.detail(f"Accepted connection using mechanism OID {info.mech}.")
    for attr, value in dict(info.source_attributes).items():
        trace.dump(f'Attribute {attr} "{value.decode("utf-8", errors="replace")}"', value)


async def _message_loop(io, sess: ProviderSession, trace: TraceLog, say, st: _Stats) -> None:
    while True:
        tok = await io.read_token()
        if tok.is_eof:
            if trace.verbose:
                say("EOF from client.")
            st.closed_by = "eof"
            return
        if tok.has(TokenFlag.NOOP):
            trace.line("NOOP token")
            st.closed_by = "noop"
            return
        if not tok.has(TokenFlag.DATA):
            raise ProtocolViolation(
                f"Expected data token, got {describe_flags(tok.flags)} token instead.",
                flags=tok.flags,
            )
        trace.dump(f"Message token (flags={tok.flags}):", tok.payload)

        if sess.state is SessionState.UNAUTHENTICATED and tok.flags & PROTECTION_FLAGS:
            trace.line("Unauthenticated client requested authenticated services!")
            raise ProtocolViolation(
                "unauthenticated client requested protection",
                flags=tok.flags,
                code=FailureCode.ERR_UNAUTHENTICATED_PROTECTION,
            )

        payload = tok.payload
        if tok.has(TokenFlag.WRAPPED):
            u = await asyncio.to_thread(sess.unwrap, payload)
            if tok.has(TokenFlag.ENCRYPTED) and not u.conf_applied:
                say("Warning!  Message not encrypted.")
            payload = u.payload

        trace.message(payload)

        if tok.has(TokenFlag.SEND_MIC):
            mic = await asyncio.to_thread(sess.get_mic, payload)
            await io.write_token(TokenFlag.MIC, mic)
            st.mics_sent += 1
        else:
            await io.send_noop()
        st.messages += 1


async def serve_connection(
    io,
    provider: SecurityProvider,
    credential: Any,
    call_ctx: Optional[CallContext] = None,
    *,
    export_exercise: bool = False,
    trace: Optional[TraceLog] = None,
    out: Optional[Callable[[str], None]] = None,
) -> Result[AcceptorReport]:
    """
    credential and call_ctx are shared with other connections and are only
    read here; the CallContext chain of this connection lives in its session.
    Provider calls block, so they run in worker threads and a slow provider
    reply stalls only this connection.
    """
    trace = trace or TraceLog()
    say = out or (lambda s: print(f"[acceptor] {s}"))
    sess = ProviderSession(provider, call_ctx)
    st = _Stats(peer=io.peername())
    phase = FailurePhase.PREAMBLE

    try:
        first = await io.read_token()
        if first.is_eof:
            say("EOF from client")
            return Result.Ok(st.report(sess.call_ctx))
        if not first.has(TokenFlag.NOOP):
            trace.line(f"Expected NOOP token, got {describe_flags(first.flags)} token instead.")
            raise ProtocolViolation(
                f"expected NOOP token, got {describe_flags(first.flags)} token instead",
                flags=first.flags,
            )

        if first.has(TokenFlag.CONTEXT_NEXT):
            phase = FailurePhase.HANDSHAKE
            cred = credential
            if export_exercise and credential is not None:
                cred = await asyncio.to_thread(_export_exercise, sess, credential, st)
            await _accept(io, sess, cred, trace, st)
            if st.client_name:
                say(f'Accepted connection: "{st.client_name}"')
            else:
                say("Accepted connection.")
        else:
            sess.state = SessionState.UNAUTHENTICATED
            trace.line("Accepted unauthenticated connection.")
            say("Accepted unauthenticated connection.")

        phase = FailurePhase.DATA
        await _message_loop(io, sess, trace, say, st)
        return Result.Ok(st.report(sess.call_ctx))

    except Exception as e:
        sess.state = SessionState.FAILED
        return Result.Err(Failure.from_exception(e, phase), partial=st.report(sess.call_ctx))

    finally:
        await asyncio.to_thread(sess.close)
        for msg in sess.release_errors:
            trace.line(f"cleanup: {msg}")
