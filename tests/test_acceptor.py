# MIT License © 2025 Motohiro Suzuki
import asyncio
import io as _io
import threading

from conftest import CONT, FakeTokenIO, Handle, ScriptedProvider
from gssharness.protocol.acceptor import EXPORT_ROUNDS, serve_connection
from gssharness.protocol.audit import TraceLog
from gssharness.protocol.failure import FailureCode, FailureLayer, FailurePhase
from gssharness.protocol.session import ProviderSession
from gssharness.provider.base import (
    COMPLETE,
    CallContext,
    CredUsage,
    ExportResult,
    MajorStatus,
    NameType,
    failure,
)
from gssharness.transport.token_frame import Token, TokenFlag

SEED = CallContext(b"seed")
PROTECTED = TokenFlag.DATA | TokenFlag.WRAPPED | TokenFlag.ENCRYPTED | TokenFlag.SEND_MIC


def _serve(tokens, provider, *, cred=None, export=False, trace=None, out=None):
    io = FakeTokenIO(tokens)
    r = asyncio.run(
        serve_connection(
            io,
            provider,
            cred if cred is not None else Handle("process-cred"),
            SEED,
            export_exercise=export,
            trace=trace,
            out=out if out is not None else (lambda s: None),
        )
    )
    return io, r


def test_eof_before_anything_ends_quietly():
    p = ScriptedProvider()
    io, r = _serve([], p)
    assert r.ok
    assert not r.value.authenticated
    assert p.calls == []
    assert io.sent == []


def test_first_token_without_noop_is_violation():
    p = ScriptedProvider()
    io, r = _serve([Token(TokenFlag.CONTEXT, b"tok")], p)
    f = r.unwrap_err()
    assert f.layer is FailureLayer.PROTOCOL
    assert f.phase is FailurePhase.PREAMBLE
    assert f.flags == TokenFlag.CONTEXT
    assert p.calls == []


def test_authenticated_session_replies_with_mic_and_releases_context_once():
    p = ScriptedProvider(accept_script=(CONT, COMPLETE))
    cred = Handle("process-cred")
    io, r = _serve(
        [
            Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT),
            Token(TokenFlag.CONTEXT, b"init-0"),
            Token(TokenFlag.CONTEXT, b"init-1"),
            Token(PROTECTED, b"W:hello"),
            Token(TokenFlag.NOOP),
        ],
        p,
        cred=cred,
    )

    assert r.ok, r.failure
    rep = r.value
    assert rep.authenticated
    assert rep.closed_by == "noop"
    assert (rep.context_tokens_received, rep.context_tokens_sent) == (2, 1)
    assert rep.messages == 1 and rep.mics_sent == 1
    assert rep.client_name == "alice"
    assert io.sent == [Token(TokenFlag.CONTEXT, b"accept-0"), Token(TokenFlag.MIC, b"MIC:hello")]
    assert p.released_kinds("context") == [p.context]
    # the shared process credential is never released by a session
    assert p.released_kinds("credential") == []
    assert p.accept_creds == [cred, cred]


def test_session_call_context_chain_starts_from_seed():
    p = ScriptedProvider()
    _serve([Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT), Token(TokenFlag.CONTEXT, b"i")], p)
    assert p.calls[0] == ("accept_context", SEED)
    for i in range(1, len(p.calls)):
        assert p.calls[i][1] == CallContext(f"cc-{i}".encode())


def test_unauthenticated_protection_request_rejected_without_provider_calls():
    p = ScriptedProvider()
    for flag in (TokenFlag.WRAPPED, TokenFlag.ENCRYPTED, TokenFlag.SEND_MIC):
        io, r = _serve([Token(TokenFlag.NOOP), Token(TokenFlag.DATA | flag, b"x")], p)
        f = r.unwrap_err()
        assert f.code is FailureCode.ERR_UNAUTHENTICATED_PROTECTION
        assert f.phase is FailurePhase.DATA
        assert io.sent == []
    assert p.calls == []


def test_unauthenticated_plain_data_gets_noop_ack():
    p = ScriptedProvider()
    buf = _io.StringIO()
    io, r = _serve(
        [Token(TokenFlag.NOOP), Token(TokenFlag.DATA, b"hi there"), Token(TokenFlag.DATA, b"again")],
        p,
        trace=TraceLog(buf),
    )
    assert r.ok
    assert r.value.closed_by == "eof"
    assert r.value.messages == 2
    assert io.sent == [Token(TokenFlag.NOOP), Token(TokenFlag.NOOP)]
    assert p.calls == []
    assert "Accepted unauthenticated connection." in buf.getvalue()
    assert 'Received message: "hi there"' in buf.getvalue()


def test_export_exercise_threads_call_context_before_first_context_token():
    p = ScriptedProvider()
    cred = Handle("process-cred")
    io, r = _serve(
        [Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT), Token(TokenFlag.CONTEXT, b"i"), Token(TokenFlag.NOOP)],
        p,
        cred=cred,
        export=True,
    )

    assert r.ok, r.failure
    assert r.value.export_rounds == EXPORT_ROUNDS == 3
    first_accept = p.ops().index("accept_context")
    assert p.ops()[:first_accept] == [
        "export_credential",
        "import_credential",
        "export_credential",
        "import_credential",
        "release_credential",
        "export_credential",
        "import_credential",
        "release_credential",
    ]
    assert p.calls[0][1] == SEED
    for i in range(1, first_accept + 1):
        assert p.calls[i][1] == CallContext(f"cc-{i}".encode())
    # handshake runs on the last reimported credential; all reimports get released
    assert p.accept_creds == [p.imported[-1]]
    assert p.released_kinds("credential") == p.imported
    assert cred not in p.released_kinds("credential")


def test_export_exercise_failure_aborts_before_handshake():
    p = ScriptedProvider()

    def broken(credential, *, call_ctx=None):
        return ExportResult(failure(MajorStatus.NO_CRED), call_ctx=CallContext(b"x"))

    p.export_credential = broken
    io, r = _serve([Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT), Token(TokenFlag.CONTEXT, b"i")], p, export=True)
    f = r.unwrap_err()
    assert f.code is FailureCode.ERR_PROVIDER
    assert f.phase is FailurePhase.HANDSHAKE
    assert "exporting a credential" in f.detail
    assert "accept_context" not in p.ops()
    assert io.sent == []


def test_delegated_credential_is_released_immediately():
    p = ScriptedProvider(delegated=True)
    io, r = _serve([Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT), Token(TokenFlag.CONTEXT, b"i")], p)
    assert r.ok
    assert p.ops()[1] == "release_credential"
    assert p.released_kinds("credential") == [p.delegated_cred]


def test_non_context_token_during_handshake_is_violation():
    p = ScriptedProvider(accept_script=(CONT, COMPLETE))
    io, r = _serve(
        [Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT), Token(TokenFlag.CONTEXT, b"i"), Token(TokenFlag.DATA, b"x")],
        p,
    )
    f = r.unwrap_err()
    assert f.code is FailureCode.ERR_UNEXPECTED_TOKEN
    assert f.phase is FailurePhase.HANDSHAKE
    assert p.released_kinds("context") == [p.context]


def test_accept_failure_releases_partial_context():
    p = ScriptedProvider(accept_script=(CONT, failure(MajorStatus.DEFECTIVE_TOKEN)))
    io, r = _serve(
        [Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT), Token(TokenFlag.CONTEXT, b"1"), Token(TokenFlag.CONTEXT, b"2")],
        p,
    )
    f = r.unwrap_err()
    assert f.major == int(MajorStatus.DEFECTIVE_TOKEN)
    assert io.sent == [Token(TokenFlag.CONTEXT, b"accept-0")]
    assert p.released_kinds("context") == [p.context]


def test_eof_during_handshake_is_transport_failure():
    p = ScriptedProvider()
    io, r = _serve([Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT)], p)
    f = r.unwrap_err()
    assert f.layer is FailureLayer.TRANSPORT
    assert f.phase is FailurePhase.HANDSHAKE


def test_non_data_token_in_message_loop_is_violation():
    p = ScriptedProvider()
    io, r = _serve(
        [Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT), Token(TokenFlag.CONTEXT, b"i"), Token(TokenFlag.MIC, b"m")],
        p,
    )
    f = r.unwrap_err()
    assert f.code is FailureCode.ERR_UNEXPECTED_TOKEN
    assert f.phase is FailurePhase.DATA
    assert f.flags == TokenFlag.MIC
    assert len(p.released_kinds("context")) == 1


def test_unwrapped_message_without_mic_gets_noop():
    p = ScriptedProvider()
    io, r = _serve(
        [
            Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT),
            Token(TokenFlag.CONTEXT, b"i"),
            Token(TokenFlag.DATA, b"plain"),
        ],
        p,
    )
    assert r.ok
    assert io.sent == [Token(TokenFlag.NOOP)]
    assert "unwrap" not in p.ops() and "get_mic" not in p.ops()


def test_warns_when_encrypted_message_was_not(lines):
    p = ScriptedProvider(conf_applied=False)
    io, r = _serve(
        [
            Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT),
            Token(TokenFlag.CONTEXT, b"i"),
            Token(TokenFlag.DATA | TokenFlag.WRAPPED | TokenFlag.ENCRYPTED, b"W:m"),
        ],
        p,
        out=lines.append,
    )
    assert r.ok
    assert "Warning!  Message not encrypted." in lines


def test_verbose_trace_dumps_tokens_and_attributes():
    buf = _io.StringIO()
    p = ScriptedProvider()
    _serve(
        [Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT), Token(TokenFlag.CONTEXT, bytes(range(20)))],
        p,
        trace=TraceLog(buf, verbose=True),
    )
    text = buf.getvalue()
    assert "Received token (20 bytes):\n00 01 02 03 04 05 06 07 08 09 0a 0b 0c 0d 0e 0f\n10 11 12 13\n" in text
    assert "Accepted connection using mechanism OID" in text
    assert 'Attribute urn:test:attr "value"' in text


class _StalledProvider(ScriptedProvider):
    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()

    def accept_context(self, credential, context, input_token, *, call_ctx=None):
        self.entered.set()
        self.gate.wait(5.0)
        return super().accept_context(credential, context, input_token, call_ctx=call_ctx)


def test_stalled_provider_does_not_block_other_connections():
    handshake = [
        Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT),
        Token(TokenFlag.CONTEXT, b"init-0"),
        Token(PROTECTED, b"W:hi"),
        Token(TokenFlag.NOOP),
    ]
    slow = _StalledProvider()
    order = []

    async def one(provider, label):
        r = await serve_connection(
            FakeTokenIO(handshake), provider, Handle("process-cred"), SEED, out=lambda s: None
        )
        order.append(label)
        return r

    async def main():
        stalled = asyncio.create_task(one(slow, "slow"))
        while not slow.entered.is_set():
            await asyncio.sleep(0.005)
        fast = await asyncio.wait_for(one(ScriptedProvider(), "fast"), 5.0)
        slow.gate.set()
        return fast, await stalled

    fast, stalled = asyncio.run(main())
    assert order == ["fast", "slow"]
    assert fast.ok and stalled.ok
    assert stalled.value.messages == 1


class _CrashingRelease(ScriptedProvider):
    def release_context(self, context, *, call_ctx=None):
        raise RuntimeError("backend crashed")


def test_crash_releasing_context_still_releases_credentials():
    p = _CrashingRelease()
    buf = _io.StringIO()
    io, r = _serve(
        [Token(TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT), Token(TokenFlag.CONTEXT, b"init-0")],
        p,
        export=True,
        trace=TraceLog(buf),
    )
    assert r.ok, r.failure
    assert p.imported[-1] in p.released_kinds("credential")
    assert "cleanup: releasing security context: RuntimeError: backend crashed" in buf.getvalue()


def test_session_close_carries_on_after_a_crash():
    p = _CrashingRelease()
    sess = ProviderSession(p, SEED)
    name = sess.import_name("svc", NameType.HOSTBASED_SERVICE)
    cred = sess.acquire_credential(name, usage=CredUsage.ACCEPT)
    sess.accept_context(cred, b"init-0")
    sess.close()
    assert sess.release_errors == ["releasing security context: RuntimeError: backend crashed"]
    assert p.released_kinds("credential") == [cred]
    assert p.released_kinds("name") == [name]
