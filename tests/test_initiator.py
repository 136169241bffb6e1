# MIT License © 2025 Motohiro Suzuki
import asyncio

import pytest

from conftest import CONT, FakeTokenIO, ScriptedProvider
from gssharness.protocol.config import InitiatorConfig, ProtectionOptions
from gssharness.protocol.failure import FailureCode, FailureLayer, FailurePhase
from gssharness.protocol.initiator import run_initiator
from gssharness.provider.base import COMPLETE, CallContext, MajorStatus, failure
from gssharness.transport.token_frame import Token, TokenFlag, WireVariant


def _cfg(**kw):
    base = dict(host="host", service="svc", message=b"hello", quiet=True)
    base.update(kw)
    return InitiatorConfig(**base)


def _run(io, provider, cfg):
    return asyncio.run(run_initiator(io, provider, cfg))


def _mic_reply(msg=b"hello"):
    return Token(TokenFlag.MIC, b"MIC:" + msg)


def _context_frames(io):
    return [t for t in io.sent if t.has(TokenFlag.CONTEXT)]


def _data_frames(io):
    return [t for t in io.sent if t.has(TokenFlag.DATA) or (t.flags == 0 and t.payload)]


def test_n_continue_then_complete_sends_n_plus_one_context_tokens():
    p = ScriptedProvider(init_script=(CONT, CONT, COMPLETE))
    io = FakeTokenIO([Token(TokenFlag.CONTEXT, b"a1"), Token(TokenFlag.CONTEXT, b"a2"), _mic_reply()])
    r = _run(io, p, _cfg())

    assert r.ok, r.failure
    assert [t.payload for t in _context_frames(io)] == [b"init-0", b"init-1", b"init-2"]
    assert r.value.context_tokens_sent == 3
    assert r.value.context_tokens_received == 2
    # preamble first, closing NOOP last
    assert io.sent[0].flags == TokenFlag.NOOP | TokenFlag.CONTEXT_NEXT
    assert io.sent[-1] == Token(TokenFlag.NOOP)


def test_handshake_failure_releases_context_and_stops_sending():
    p = ScriptedProvider(init_script=(CONT, CONT, failure(MajorStatus.FAILURE, 7)))
    io = FakeTokenIO([Token(TokenFlag.CONTEXT, b"a1"), Token(TokenFlag.CONTEXT, b"a2")])
    r = _run(io, p, _cfg())

    assert not r.ok
    f = r.unwrap_err()
    assert f.layer is FailureLayer.PROVIDER
    assert f.phase is FailurePhase.HANDSHAKE
    assert f.code is FailureCode.ERR_PROVIDER
    assert (f.major, f.minor) == (int(MajorStatus.FAILURE), 7)
    assert len(_context_frames(io)) == 2
    assert _data_frames(io) == []
    assert p.released_kinds("context") == [p.context]
    assert "initializing security context" in f.detail


def test_full_session_threads_call_context_in_order():
    p = ScriptedProvider(init_script=(CONT, COMPLETE))
    io = FakeTokenIO([Token(TokenFlag.CONTEXT, b"a1"), _mic_reply(), _mic_reply()])
    seed = CallContext(b"seed")
    r = asyncio.run(run_initiator(io, p, _cfg(messages=2), call_ctx=seed))

    assert r.ok, r.failure
    assert p.calls[0][1] == seed
    for i in range(1, len(p.calls)):
        assert p.calls[i][1] == CallContext(f"cc-{i}".encode())
    assert p.ops()[:6] == [
        "import_name",
        "init_context",
        "init_context",
        "inquire_context",
        "inquire_names_for_mech",
        "wrap",
    ]


@pytest.mark.parametrize(
    "prot, expected",
    [
        (ProtectionOptions(), TokenFlag.DATA | TokenFlag.WRAPPED | TokenFlag.ENCRYPTED | TokenFlag.SEND_MIC),
        (ProtectionOptions(encrypt=False), TokenFlag.DATA | TokenFlag.WRAPPED | TokenFlag.SEND_MIC),
        (ProtectionOptions(wrap=False), TokenFlag.DATA | TokenFlag.SEND_MIC),
        (ProtectionOptions(mic=False), TokenFlag.DATA | TokenFlag.WRAPPED | TokenFlag.ENCRYPTED),
        (ProtectionOptions(wrap=False, encrypt=False, mic=False), TokenFlag.DATA),
    ],
)
def test_data_flags_follow_protection_options(prot, expected):
    p = ScriptedProvider()
    reply = _mic_reply() if prot.mic else Token(TokenFlag.NOOP)
    io = FakeTokenIO([reply])
    r = _run(io, p, _cfg(protection=prot))

    assert r.ok, r.failure
    (data,) = _data_frames(io)
    assert data.flags == expected
    if prot.wrap:
        assert data.payload == b"W:hello"
        assert "wrap" in p.ops()
    else:
        assert data.payload == b"hello"
        assert "wrap" not in p.ops()
    assert ("verify_mic" in p.ops()) == prot.mic


def test_legacy_session_has_no_preamble_and_zero_data_flags():
    p = ScriptedProvider(init_script=(CONT, COMPLETE))
    io = FakeTokenIO(
        [Token(TokenFlag.CONTEXT, b"a1"), _mic_reply(), _mic_reply()],
        variant=WireVariant.LEGACY,
    )
    r = _run(io, p, _cfg(legacy=True, messages=2))

    assert r.ok, r.failure
    assert all(not t.has(TokenFlag.CONTEXT_NEXT) for t in io.sent)
    assert all(not t.has(TokenFlag.NOOP) for t in io.sent)
    assert [t.flags for t in io.sent] == [TokenFlag.CONTEXT, TokenFlag.CONTEXT, 0, 0]


def test_no_auth_sends_bare_noop_and_never_touches_provider():
    p = ScriptedProvider()
    io = FakeTokenIO([Token(TokenFlag.NOOP), Token(TokenFlag.NOOP)])
    r = _run(io, p, _cfg(authenticate=False, messages=2))

    assert r.ok, r.failure
    assert not r.value.authenticated
    assert p.calls == []
    assert io.sent[0] == Token(TokenFlag.NOOP)
    assert [t.flags for t in io.sent[1:3]] == [TokenFlag.DATA, TokenFlag.DATA]
    assert [t.payload for t in io.sent[1:3]] == [b"hello", b"hello"]


def test_no_mic_accepts_matching_echo_and_rejects_mismatch():
    ok_io = FakeTokenIO([Token(TokenFlag.NOOP, b"hello")])
    assert _run(ok_io, ScriptedProvider(), _cfg(protection=ProtectionOptions(mic=False))).ok

    bad_io = FakeTokenIO([Token(TokenFlag.NOOP, b"something else")])
    p = ScriptedProvider()
    r = _run(bad_io, p, _cfg(protection=ProtectionOptions(mic=False)))
    assert not r.ok
    assert r.unwrap_err().code is FailureCode.ERR_RESPONSE_MISMATCH
    assert r.unwrap_err().phase is FailurePhase.DATA
    assert p.released_kinds("context") == [p.context]


def test_bad_mic_is_fatal():
    p = ScriptedProvider(mic_ok=False)
    io = FakeTokenIO([_mic_reply(), _mic_reply()])
    r = _run(io, p, _cfg(messages=2))

    assert not r.ok
    f = r.unwrap_err()
    assert f.code is FailureCode.ERR_PROVIDER
    assert f.major == int(MajorStatus.BAD_MIC)
    assert r.value.messages_sent == 1
    assert len(_data_frames(io)) == 1


def test_warns_when_wrap_did_not_encrypt(lines):
    p = ScriptedProvider(conf_applied=False)
    io = FakeTokenIO([_mic_reply()])
    r = asyncio.run(run_initiator(io, p, _cfg(quiet=False), out=lines.append))

    assert r.ok
    assert r.value.warnings == ("message not encrypted",)
    assert "Warning!  Message not encrypted." in lines


def test_eof_during_handshake_is_transport_failure():
    p = ScriptedProvider(init_script=(CONT, COMPLETE))
    r = _run(FakeTokenIO([]), p, _cfg())

    f = r.unwrap_err()
    assert f.layer is FailureLayer.TRANSPORT
    assert f.phase is FailurePhase.HANDSHAKE
    assert p.released_kinds("context") == [p.context]


def test_non_context_reply_during_handshake_is_violation():
    p = ScriptedProvider(init_script=(CONT, COMPLETE))
    r = _run(FakeTokenIO([Token(TokenFlag.DATA, b"x")]), p, _cfg())

    f = r.unwrap_err()
    assert f.layer is FailureLayer.PROTOCOL
    assert f.code is FailureCode.ERR_UNEXPECTED_TOKEN
    assert f.flags == TokenFlag.DATA


def test_user_credentials_are_acquired_and_released():
    p = ScriptedProvider()
    io = FakeTokenIO([_mic_reply()])
    r = _run(io, p, _cfg(user="alice", password="pw"))

    assert r.ok, r.failure
    assert p.ops()[:3] == ["import_name", "import_name", "acquire_credential"]
    assert len(p.released_kinds("credential")) == 1
    assert [h.label for h in p.released_kinds("name")] == ["name:alice", "name:svc@host"]
    # context goes first, exactly once
    assert p.released[0] == ("context", p.context)
    assert len(p.released_kinds("context")) == 1


def test_zero_messages_still_closes_cleanly():
    io = FakeTokenIO([])
    r = _run(io, ScriptedProvider(), _cfg(messages=0))

    assert r.ok
    assert _data_frames(io) == []
    assert io.sent[-1] == Token(TokenFlag.NOOP)
