# MIT License © 2025 Motohiro Suzuki
import asyncio
import contextlib
import io as _io
import json
import socket

from gssharness.protocol.audit import TraceLog
from gssharness.protocol.config import AcceptorConfig, InitiatorConfig, ProtectionOptions
from gssharness.protocol.failure import FailureCode
from gssharness.provider.broker import ProviderBroker
from gssharness.provider.loopback import LoopbackProvider
from gssharness.provider.proxy import ProxyProvider
from gssharness.runners.driver import AcceptorService, run_client_connections

SECRET = b"e2e-secret"
HOST = "127.0.0.1"


def _acceptor(provider, lines, trace_buf=None, **kw):
    cfg = AcceptorConfig(service="svc", host=HOST, port=0, **kw)
    return AcceptorService(cfg, provider, trace=TraceLog(trace_buf or _io.StringIO()), out=lines.append)


def _initiator(port, **kw):
    base = dict(host=HOST, service="svc", message=b"hello over tcp", port=port, quiet=True, io_timeout=5.0)
    base.update(kw)
    return InitiatorConfig(**base)


async def _started(svc):
    task = asyncio.create_task(svc.serve())
    while not svc.port:
        if task.done():
            task.result()
        await asyncio.sleep(0.01)
    return task, svc.port


async def _settle(svc, n):
    while len(svc.results) < n:
        await asyncio.sleep(0.01)


async def _stop(task):
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def _client(cfg):
    return run_client_connections(cfg, lambda: LoopbackProvider(SECRET), out=lambda s: None)


def test_single_protected_session_once_mode(lines):
    async def go():
        svc = _acceptor(LoopbackProvider(SECRET), lines, once=True)
        task, port = await _started(svc)
        results = await _client(_initiator(port))
        await asyncio.wait_for(task, 5.0)
        return svc, results

    svc, results = asyncio.run(go())
    (r,) = results
    assert r.ok, r.failure
    assert r.value.authenticated
    assert r.value.replies_ok == 1
    assert r.value.warnings == ()

    (a,) = svc.results
    assert a.ok, a.failure
    assert a.value.authenticated
    assert a.value.closed_by == "noop"
    assert a.value.messages == 1 and a.value.mics_sent == 1
    assert a.value.client_name == "anonymous"


def test_many_connections_many_messages(lines):
    async def go():
        svc = _acceptor(LoopbackProvider(SECRET), lines)
        task, port = await _started(svc)
        results = await _client(_initiator(port, connections=2, messages=3))
        await asyncio.wait_for(_settle(svc, 2), 5.0)
        await _stop(task)
        return svc, results

    svc, results = asyncio.run(go())
    assert [r.ok for r in results] == [True, True]
    assert [r.value.replies_ok for r in results] == [3, 3]
    assert [a.value.messages for a in svc.results] == [3, 3]


def test_one_way_integrity_only_session(lines):
    async def go():
        svc = _acceptor(LoopbackProvider(SECRET), lines, once=True)
        task, port = await _started(svc)
        cfg = _initiator(port, mutual=False, protection=ProtectionOptions(encrypt=False))
        results = await _client(cfg)
        await asyncio.wait_for(task, 5.0)
        return results

    (r,) = asyncio.run(go())
    assert r.ok, r.failure
    assert r.value.context_tokens_sent == 1
    assert r.value.context_tokens_received == 0


def test_unauthenticated_session(lines):
    buf = _io.StringIO()

    async def go():
        svc = _acceptor(LoopbackProvider(SECRET), lines, trace_buf=buf, once=True)
        task, port = await _started(svc)
        results = await _client(_initiator(port, authenticate=False, messages=2))
        await asyncio.wait_for(task, 5.0)
        return svc, results

    svc, results = asyncio.run(go())
    (r,) = results
    assert r.ok, r.failure
    assert not r.value.authenticated
    (a,) = svc.results
    assert a.ok and not a.value.authenticated
    assert a.value.messages == 2
    assert 'Received message: "hello over tcp"' in buf.getvalue()


def test_wrong_secret_fails_handshake_on_both_sides(lines):
    async def go():
        svc = _acceptor(LoopbackProvider(b"not-the-same"), lines, once=True)
        task, port = await _started(svc)
        results = await _client(_initiator(port, mutual=False))
        await asyncio.wait_for(task, 5.0)
        return svc, results

    svc, results = asyncio.run(go())
    (a,) = svc.results
    assert a.unwrap_err().code is FailureCode.ERR_PROVIDER
    # the one-way initiator is complete before the acceptor rejects it
    (r,) = results
    assert not r.ok


def test_export_exercise_through_broker(tmp_path, lines):
    broker = ProviderBroker(LoopbackProvider(SECRET))
    path = str(tmp_path / "b.sock")
    thread = broker.serve_in_thread(path)
    proxy = ProxyProvider(path, timeout=5.0)

    async def go():
        svc = _acceptor(proxy, lines, once=True, export_exercise=True)
        task, port = await _started(svc)
        results = await _client(_initiator(port))
        await asyncio.wait_for(task, 5.0)
        return svc, results

    try:
        svc, results = asyncio.run(go())
    finally:
        proxy.close()
        broker.stop()
        thread.join(timeout=5.0)

    (r,) = results
    assert r.ok, r.failure
    (a,) = svc.results
    assert a.ok, a.failure
    assert a.value.export_rounds == 3
    assert broker.live_handles == 0


def test_refused_connections_are_reported_and_rest_still_run():
    s = socket.socket()
    s.bind((HOST, 0))
    port = s.getsockname()[1]
    s.close()

    results = asyncio.run(_client(_initiator(port, connections=2)))
    assert len(results) == 2
    assert all(r.unwrap_err().code is FailureCode.ERR_CONNECT for r in results)


def test_audit_log_has_outcomes_but_no_plaintext(tmp_path, lines):
    audit = tmp_path / "audit.jsonl"

    async def go():
        svc = _acceptor(LoopbackProvider(SECRET), lines, once=True, audit_log_path=str(audit))
        task, port = await _started(svc)
        await _client(_initiator(port, message=b"top secret payload", audit_log_path=str(audit)))
        await asyncio.wait_for(task, 5.0)

    asyncio.run(go())
    text = audit.read_text(encoding="utf-8")
    assert "top secret" not in text
    recs = [json.loads(line) for line in text.splitlines()]
    assert sorted(r["role"] for r in recs) == ["acceptor", "initiator"]
    assert all(r["ok"] for r in recs)
