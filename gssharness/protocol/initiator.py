# MIT License © 2025 Motohiro Suzuki
"""
protocol/initiator.py

Client side of one connection:

  [NOOP|CONTEXT_NEXT]          (current variant only)
  CONTEXT ... <-> CONTEXT ...  (until the provider reports COMPLETE)
  DATA -> MIC | NOOP           (x messages)
  [NOOP]                       (current variant only)

With authentication disabled the session is a bare NOOP followed by
unprotected DATA exchanges.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from gssharness.protocol.config import InitiatorConfig, ProtectionOptions
from gssharness.protocol.errors import ProtocolViolation, TransportError
from gssharness.protocol.failure import Failure, FailureCode, FailurePhase
from gssharness.protocol.result import Result
from gssharness.protocol.session import ProviderSession, SessionState
from gssharness.provider.base import (
    CallContext,
    ContextInfo,
    CredUsage,
    NameType,
    NegotiatedFlags,
    SecurityProvider,
)
from gssharness.transport.token_frame import TokenFlag, describe_flags


@dataclass(frozen=True)
class InitiatorReport:
    authenticated: bool
    context_tokens_sent: int = 0
    context_tokens_received: int = 0
    messages_sent: int = 0
    replies_ok: int = 0
    flags: NegotiatedFlags = field(default_factory=NegotiatedFlags)
    info: Optional[ContextInfo] = None
    name_types: Sequence[str] = ()
    warnings: Sequence[str] = ()


@dataclass
class _Stats:
    authenticated: bool = False
    context_tokens_sent: int = 0
    context_tokens_received: int = 0
    messages_sent: int = 0
    replies_ok: int = 0
    flags: NegotiatedFlags = field(default_factory=NegotiatedFlags)
    info: Optional[ContextInfo] = None
    name_types: Sequence[str] = ()
    warnings: List[str] = field(default_factory=list)

    def report(self) -> InitiatorReport:
        return InitiatorReport(
            authenticated=self.authenticated,
            context_tokens_sent=self.context_tokens_sent,
            context_tokens_received=self.context_tokens_received,
            messages_sent=self.messages_sent,
            replies_ok=self.replies_ok,
            flags=self.flags,
            info=self.info,
            name_types=tuple(self.name_types),
            warnings=tuple(self.warnings),
        )


def _console(quiet: bool, out: Optional[Callable[[str], None]]) -> Callable[[str], None]:
    emit = out or (lambda s: print(f"[initiator] {s}"))

    def say(text: str) -> None:
        if not quiet:
            emit(text)

    return say


async def _establish(io, sess: ProviderSession, cfg: InitiatorConfig, say, st: _Stats) -> None:
    target = sess.import_name(cfg.target_name(), NameType.HOSTBASED_SERVICE, "importing remote service name")

    cred = None
    if cfg.user is not None:
        user = sess.import_name(cfg.user, NameType.USER_NAME, "importing client name")
        cred = sess.acquire_credential(
            user,
            password=None if cfg.password is None else cfg.password.encode("utf-8"),
            mechs=cfg.credential_mechs(),
            usage=CredUsage.INITIATE,
            operation="acquiring creds",
        )

    requested = cfg.requested_flags()
    token_in: Optional[bytes] = None
    while True:
        r = sess.init_context(cred, target, requested, token_in)
        if r.output_token:
            say(f"Sending init_sec_context token ({len(r.output_token)} bytes)...")
            await io.send_context(r.output_token)
            st.context_tokens_sent += 1

        if r.status.complete:
            say("Done authenticating.")
            st.flags = r.flags
            break

        say("continue needed...")
        tok = await io.read_token()
        if tok.is_eof:
            raise TransportError("connection closed during context establishment")
        if not tok.has(TokenFlag.CONTEXT):
            raise ProtocolViolation(
                f"expected context establishment token, got {describe_flags(tok.flags)} token instead",
                flags=tok.flags,
            )
        st.context_tokens_received += 1
        token_in = tok.payload
        say(f"Received new input token ({len(token_in)} bytes).")

    sess.state = SessionState.ESTABLISHED
    st.authenticated = True


def _describe(sess: ProviderSession, say, st: _Stats) -> None:
    info = sess.inquire_context()
    st.info = info
    st.flags = info.flags
    local = "locally initiated" if info.locally_initiated else "remotely initiated"
    state = "open" if info.open else "closed"
    say(f'"{info.source_name}" to "{info.target_name}", lifetime {info.lifetime}, {local}, {state}')
    say(f"Flags: {info.flags.describe()}")
    say(f"Name type of source name is {info.source_name_type}.")

    st.name_types = sess.inquire_names_for_mech(info.mech)
    say(f"Mechanism {info.mech} supports {len(st.name_types)} names")
    for i, nt in enumerate(st.name_types):
        say(f"{i:3d}: {nt}")


async def _exchange(io, sess: ProviderSession, plain: bytes, prot: ProtectionOptions, say, st: _Stats) -> None:
    if prot.wrap:
        w = sess.wrap(prot.encrypt, plain)
        wire = w.token
        if prot.encrypt and not w.conf_applied:
            st.warnings.append("message not encrypted")
            say("Warning!  Message not encrypted.")
    else:
        wire = plain

    await io.send_data(prot.token_flags(), wire)
    st.messages_sent += 1

    reply = await io.read_token()
    if reply.is_eof:
        raise TransportError("connection closed while waiting for a reply")

    if prot.mic:
        sess.verify_mic(plain, reply.payload)
        say("Signature verified.")
    else:
        # a bare NOOP acknowledgement is fine; an echo must match
        if reply.payload and reply.payload != plain:
            raise ProtocolViolation("Response differed.", flags=reply.flags, code=FailureCode.ERR_RESPONSE_MISMATCH)
        say("Response received.")
    st.replies_ok += 1


async def run_initiator(
    io,
    provider: SecurityProvider,
    cfg: InitiatorConfig,
    *,
    call_ctx: Optional[CallContext] = None,
    out: Optional[Callable[[str], None]] = None,
) -> Result[InitiatorReport]:
    say = _console(cfg.quiet, out)
    sess = ProviderSession(provider, call_ctx, mech=cfg.negotiation_mech())
    prot = cfg.effective_protection()
    st = _Stats()
    phase = FailurePhase.PREAMBLE

    try:
        if not cfg.authenticate:
            await io.send_noop()
            sess.state = SessionState.UNAUTHENTICATED
        else:
            if io.variant.sends_preamble:
                await io.send_noop(TokenFlag.CONTEXT_NEXT)
            phase = FailurePhase.HANDSHAKE
            await _establish(io, sess, cfg, say, st)
            _describe(sess, say, st)

        phase = FailurePhase.DATA
        for _ in range(cfg.messages):
            await _exchange(io, sess, cfg.message, prot, say, st)

        phase = FailurePhase.CLOSE
        if io.variant.sends_preamble:
            await io.send_noop()
        return Result.Ok(st.report())

    except Exception as e:
        sess.state = SessionState.FAILED
        return Result.Err(Failure.from_exception(e, phase), partial=st.report())

    finally:
        sess.close()
        for msg in sess.release_errors:
            say(f"cleanup: {msg}")
