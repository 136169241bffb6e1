# MIT License © 2025 Motohiro Suzuki
"""
runners/driver.py

Connection lifecycle around the two protocol roles.

Client: C sequential connections, each a full initiator session. A failed
connection (refused, reset, protocol or provider error) is reported and the
remaining connections still run.

Server: provider setup (calling context, acceptor credential) happens once
before listening; any error there is fatal. Afterwards each accepted
connection is served in its own task and per-connection errors are only
logged. `once` accepts exactly one connection.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Optional

from gssharness.protocol.acceptor import AcceptorReport, serve_connection
from gssharness.protocol.audit import TraceLog, emit_audit
from gssharness.protocol.config import AcceptorConfig, InitiatorConfig
from gssharness.protocol.errors import ProviderFailure
from gssharness.protocol.failure import Failure, FailurePhase
from gssharness.protocol.initiator import InitiatorReport, run_initiator
from gssharness.protocol.result import Result
from gssharness.protocol.session import ProviderSession
from gssharness.provider.base import CredUsage, MajorStatus, NameType, SecurityProvider, failure
from gssharness.transport.io_async import AsyncTokenIO, open_client


def _audit_record(role: str, r: Result, **extra: Any) -> dict:
    rec = {"role": role}
    rec.update(r.audit_fields())
    rec.update(extra)
    return rec


# =========================
# Client
# =========================
async def run_client_connection(
    cfg: InitiatorConfig,
    provider: SecurityProvider,
    *,
    out: Optional[Callable[[str], None]] = None,
) -> Result[InitiatorReport]:
    try:
        io = await open_client(cfg.host, cfg.port, variant=cfg.variant, timeout=cfg.io_timeout)
    except (OSError, asyncio.TimeoutError) as e:
        return Result.Err(Failure.from_exception(e, FailurePhase.PREAMBLE))

    try:
        return await run_initiator(io, provider, cfg, out=out)
    finally:
        await io.close()


async def run_client_connections(
    cfg: InitiatorConfig,
    provider_factory: Callable[[], SecurityProvider],
    *,
    out: Optional[Callable[[str], None]] = None,
) -> List[Result[InitiatorReport]]:
    results: List[Result[InitiatorReport]] = []
    for i in range(cfg.connections):
        r = await run_client_connection(cfg, provider_factory(), out=out)
        if not r.ok:
            print(f"[initiator] connection {i + 1}/{cfg.connections} failed: {r.describe()}")
        rep = r.value
        emit_audit(
            cfg.audit_log_path,
            _audit_record(
                "initiator",
                r,
                peer=f"{cfg.host}:{cfg.port}",
                connection=i + 1,
                authenticated=bool(rep and rep.authenticated),
                messages=rep.messages_sent if rep else 0,
            ),
        )
        results.append(r)
    return results


# =========================
# Server
# =========================
class AcceptorService:
    def __init__(
        self,
        cfg: AcceptorConfig,
        provider: SecurityProvider,
        *,
        trace: Optional[TraceLog] = None,
        out: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.cfg = cfg
        self.provider = provider
        self.trace = trace if trace is not None else TraceLog.open(cfg.log_path, verbose=cfg.verbose)
        self._say = out or (lambda s: print(f"[acceptor] {s}"))
        self._setup: Optional[ProviderSession] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: set = set()
        self._accepted = 0
        self._once_done: Optional[asyncio.Event] = None
        self.credential: Any = None
        self.call_ctx = None
        self.results: List[Result[AcceptorReport]] = []

    # -------------------------
    # startup
    # -------------------------
    def setup(self) -> None:
        """Seed calling context and acceptor credential; raises on any failure."""
        sess = ProviderSession(self.provider)
        self._setup = sess
        seed = self.provider.get_call_context(None)
        if seed.status.failed:
            raise ProviderFailure("getting a calling context", seed.status)
        sess.call_ctx = seed.call_ctx

        name = sess.import_name(self.cfg.service, NameType.HOSTBASED_SERVICE, "importing name")
        cred = sess.acquire_credential(name, usage=CredUsage.ACCEPT, operation="acquiring credentials")
        if cred is None:
            raise ProviderFailure("acquiring credentials", failure(MajorStatus.NO_CRED))
        self.credential = cred
        # each connection starts its own chain from the seed
        self.call_ctx = seed.call_ctx

    async def start(self) -> asyncio.AbstractServer:
        self.setup()
        self._once_done = asyncio.Event()
        self._server = await asyncio.start_server(self._on_client, self.cfg.host or None, self.cfg.port)
        self._say("starting...")
        return self._server

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            return 0
        return int(self._server.sockets[0].getsockname()[1])

    # -------------------------
    # per connection
    # -------------------------
    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.cfg.once:
            if self._accepted:
                writer.close()
                return
            self._server.close()
        self._accepted += 1

        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        io = AsyncTokenIO(reader, writer, timeout=self.cfg.io_timeout)
        peer = io.peername()
        try:
            r = await serve_connection(
                io,
                self.provider,
                self.credential,
                self.call_ctx,
                export_exercise=self.cfg.export_exercise,
                trace=self.trace,
                out=self._say,
            )
        finally:
            await io.close()
            self._tasks.discard(task)

        self._record(r, peer)
        if self.cfg.once and self._once_done is not None:
            self._once_done.set()

    def _record(self, r: Result[AcceptorReport], peer: str) -> None:
        self.results.append(r)
        if not r.ok:
            self._say(f"{peer}: {r.describe()}")
        rep = r.value
        emit_audit(
            self.cfg.audit_log_path,
            _audit_record(
                "acceptor",
                r,
                peer=peer,
                authenticated=bool(rep and rep.authenticated),
                mech=rep.mech if rep else None,
                messages=rep.messages if rep else 0,
                export_rounds=rep.export_rounds if rep else 0,
            ),
        )

    # -------------------------
    # lifecycle
    # -------------------------
    async def serve(self) -> None:
        try:
            server = await self.start()
            if self.cfg.once:
                await self._once_done.wait()
            else:
                await server.serve_forever()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        if self._server is not None:
            self._server.close()
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self.close()

    def close(self) -> None:
        """Release the acceptor credential and name."""
        if self._setup is not None:
            self._setup.close()
            self._setup = None
        self.trace.close()
