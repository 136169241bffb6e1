# MIT License © 2025 Motohiro Suzuki
"""
provider/broker.py

Out-of-process provider host. Listens on a unix socket and executes
SecurityProvider calls against a backend on behalf of ProxyProvider clients.

Rules:
- Handles never leave the broker; clients only see opaque ids.
- Every response carries a freshly minted CallContext.
- A CallContext minted for a get_call_context reply is a seed: any number
  of chains may start from it. Every other CallContext is good for exactly
  one call and is retired when presented.
- A call presenting a CallContext this broker never issued, or one already
  used, is refused (FAILURE, MINOR_UNKNOWN_CALL_CTX) without touching the
  backend.
- get_call_context with no CallContext is the only call that may start a chain.
- Outstanding contexts are bounded; the least recently issued are dropped.
"""

from __future__ import annotations

import asyncio
import os
import secrets
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from gssharness.protocol.errors import FrameError, TransportError
from gssharness.provider.base import (
    CallContext,
    CredUsage,
    MajorStatus,
    NameType,
    SecurityProvider,
    Status,
    failure,
)
from gssharness.provider.rpc import (
    b64d,
    b64e,
    ctx_from_wire,
    ctx_to_wire,
    decode_message,
    flags_from_wire,
    flags_to_wire,
    recv_async,
    send_async,
)

MINOR_UNKNOWN_CALL_CTX = 0x100
MINOR_BAD_REQUEST = 0x101
MINOR_UNKNOWN_HANDLE = 0x102

CALL_CTX_LEN = 16
MAX_CALL_CTX = 4096
MAX_SEEDS = 256

_Reply = Tuple[Status, Dict[str, Any]]


class ProviderBroker:
    def __init__(self, backend: SecurityProvider) -> None:
        self.backend = backend
        self._handles: Dict[str, Any] = {}
        self._seeds: "OrderedDict[bytes, None]" = OrderedDict()
        self._issued: "OrderedDict[bytes, None]" = OrderedDict()
        self._server: Optional[asyncio.AbstractServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.calls = 0

        self._ops: Dict[str, Callable[[Dict[str, Any], CallContext], _Reply]] = {
            "get_call_context": self._op_get_call_context,
            "import_name": self._op_import_name,
            "acquire_credential": self._op_acquire_credential,
            "init_context": self._op_init_context,
            "accept_context": self._op_accept_context,
            "wrap": self._op_wrap,
            "unwrap": self._op_unwrap,
            "get_mic": self._op_get_mic,
            "verify_mic": self._op_verify_mic,
            "export_credential": self._op_export_credential,
            "import_credential": self._op_import_credential,
            "inquire_context": self._op_inquire_context,
            "inquire_names_for_mech": self._op_inquire_names_for_mech,
            "release_context": self._op_release_context,
            "release_credential": self._op_release_credential,
            "release_name": self._op_release_name,
        }

    @property
    def live_handles(self) -> int:
        return len(self._handles)

    @property
    def outstanding_call_contexts(self) -> int:
        return len(self._seeds) + len(self._issued)

    # -------------------------
    # call contexts / handles
    # -------------------------
    def _mint(self, *, seed: bool = False) -> CallContext:
        v = secrets.token_bytes(CALL_CTX_LEN)
        pool, limit = (self._seeds, MAX_SEEDS) if seed else (self._issued, MAX_CALL_CTX)
        pool[v] = None
        while len(pool) > limit:
            pool.popitem(last=False)
        return CallContext(v)

    def _redeem(self, value: bytes) -> bool:
        if value in self._seeds:
            self._seeds.move_to_end(value)
            return True
        if value in self._issued:
            del self._issued[value]
            return True
        return False

    def _register(self, handle: Any) -> Optional[str]:
        if handle is None:
            return None
        hid = secrets.token_hex(8)
        self._handles[hid] = handle
        return hid

    def _resolve(self, hid: Optional[str]) -> Any:
        if hid is None:
            return None
        if hid not in self._handles:
            raise LookupError(hid)
        return self._handles[hid]

    def _update(self, hid: Optional[str], handle: Any) -> Optional[str]:
        if handle is None:
            return hid
        if hid is not None and self._handles.get(hid) is handle:
            return hid
        return self._register(handle)

    # -------------------------
    # dispatch
    # -------------------------
    def dispatch(self, request: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        op = request.get("op")
        args = request.get("args") or {}

        try:
            presented = ctx_from_wire(request.get("call_ctx"))
        except ValueError:
            return self._reply(failure(MajorStatus.FAILURE, MINOR_BAD_REQUEST), {})

        if presented is None:
            if op != "get_call_context":
                return self._reply(failure(MajorStatus.FAILURE, MINOR_UNKNOWN_CALL_CTX), {})
        elif not self._redeem(presented.value):
            return self._reply(failure(MajorStatus.FAILURE, MINOR_UNKNOWN_CALL_CTX), {})

        handler = self._ops.get(op) if isinstance(op, str) else None
        if handler is None or not isinstance(args, dict):
            return self._reply(failure(MajorStatus.FAILURE, MINOR_BAD_REQUEST), {})

        try:
            status, result = handler(args, presented)
        except KeyError:
            return self._reply(failure(MajorStatus.FAILURE, MINOR_BAD_REQUEST), {})
        except LookupError:
            return self._reply(failure(MajorStatus.FAILURE, MINOR_UNKNOWN_HANDLE), {})
        except (TypeError, ValueError):
            return self._reply(failure(MajorStatus.FAILURE, MINOR_BAD_REQUEST), {})
        return self._reply(status, result, seed=op == "get_call_context")

    def _reply(self, status: Status, result: Dict[str, Any], *, seed: bool = False) -> Dict[str, Any]:
        return {
            "major": int(status.major),
            "minor": int(status.minor),
            "call_ctx": ctx_to_wire(self._mint(seed=seed)),
            "result": result,
        }

    # -------------------------
    # operations
    # -------------------------
    def _op_get_call_context(self, args, ctx) -> _Reply:
        return self.backend.get_call_context(ctx).status, {}

    def _op_import_name(self, args, ctx) -> _Reply:
        r = self.backend.import_name(str(args["name"]), NameType(args["name_type"]), call_ctx=ctx)
        return r.status, {"name": self._register(r.name)}

    def _op_acquire_credential(self, args, ctx) -> _Reply:
        mechs = args.get("mechs")
        r = self.backend.acquire_credential(
            self._resolve(args.get("name")),
            password=b64d(args.get("password")),
            mechs=None if mechs is None else [str(m) for m in mechs],
            usage=CredUsage(args.get("usage", CredUsage.INITIATE.value)),
            call_ctx=ctx,
        )
        return r.status, {"credential": self._register(r.credential)}

    def _op_init_context(self, args, ctx) -> _Reply:
        hid = args.get("context")
        r = self.backend.init_context(
            self._resolve(args.get("credential")),
            self._resolve(hid),
            self._resolve(args.get("target")),
            args.get("mech"),
            flags_from_wire(args.get("flags")),
            b64d(args.get("input_token")),
            call_ctx=ctx,
        )
        return r.status, {
            "context": self._update(hid, r.context),
            "output_token": b64e(r.output_token),
            "flags": flags_to_wire(r.flags),
        }

    def _op_accept_context(self, args, ctx) -> _Reply:
        hid = args.get("context")
        r = self.backend.accept_context(
            self._resolve(args.get("credential")),
            self._resolve(hid),
            b64d(args.get("input_token")) or b"",
            call_ctx=ctx,
        )
        return r.status, {
            "context": self._update(hid, r.context),
            "output_token": b64e(r.output_token),
            "delegated_credential": self._register(r.delegated_credential),
        }

    def _op_wrap(self, args, ctx) -> _Reply:
        r = self.backend.wrap(
            self._resolve(args["context"]), bool(args.get("conf")), b64d(args["payload"]), call_ctx=ctx
        )
        return r.status, {"conf_applied": r.conf_applied, "token": b64e(r.token)}

    def _op_unwrap(self, args, ctx) -> _Reply:
        r = self.backend.unwrap(self._resolve(args["context"]), b64d(args["token"]), call_ctx=ctx)
        return r.status, {"conf_applied": r.conf_applied, "payload": b64e(r.payload)}

    def _op_get_mic(self, args, ctx) -> _Reply:
        r = self.backend.get_mic(self._resolve(args["context"]), b64d(args["payload"]), call_ctx=ctx)
        return r.status, {"token": b64e(r.token)}

    def _op_verify_mic(self, args, ctx) -> _Reply:
        r = self.backend.verify_mic(
            self._resolve(args["context"]), b64d(args["payload"]), b64d(args["token"]), call_ctx=ctx
        )
        return r.status, {}

    def _op_export_credential(self, args, ctx) -> _Reply:
        r = self.backend.export_credential(self._resolve(args["credential"]), call_ctx=ctx)
        return r.status, {"token": b64e(r.token)}

    def _op_import_credential(self, args, ctx) -> _Reply:
        r = self.backend.import_credential(b64d(args["token"]), call_ctx=ctx)
        return r.status, {"credential": self._register(r.credential)}

    def _op_inquire_context(self, args, ctx) -> _Reply:
        r = self.backend.inquire_context(self._resolve(args["context"]), call_ctx=ctx)
        return r.status, {
            "source_name": r.source_name,
            "source_name_type": r.source_name_type,
            "target_name": r.target_name,
            "lifetime": r.lifetime,
            "mech": r.mech,
            "flags": flags_to_wire(r.flags),
            "locally_initiated": r.locally_initiated,
            "open": r.open,
            "source_attributes": {k: b64e(v) for k, v in dict(r.source_attributes).items()},
        }

    def _op_inquire_names_for_mech(self, args, ctx) -> _Reply:
        r = self.backend.inquire_names_for_mech(str(args["mech"]), call_ctx=ctx)
        return r.status, {"name_types": list(r.name_types)}

    def _release(self, args, ctx, key: str, fn) -> _Reply:
        hid = args[key]
        r = fn(self._resolve(hid), call_ctx=ctx)
        if not r.status.failed:
            self._handles.pop(hid, None)
        return r.status, {}

    def _op_release_context(self, args, ctx) -> _Reply:
        return self._release(args, ctx, "context", self.backend.release_context)

    def _op_release_credential(self, args, ctx) -> _Reply:
        return self._release(args, ctx, "credential", self.backend.release_credential)

    def _op_release_name(self, args, ctx) -> _Reply:
        return self._release(args, ctx, "name", self.backend.release_name)

    # -------------------------
    # server
    # -------------------------
    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                body = await recv_async(reader)
                if body is None:
                    return
                try:
                    request = decode_message(body)
                except ValueError:
                    response = self._reply(failure(MajorStatus.FAILURE, MINOR_BAD_REQUEST), {})
                else:
                    response = self.dispatch(request)
                await send_async(writer, response)
        except FrameError as e:
            print(f"[broker] dropping client: {e}")
        except (ConnectionError, OSError) as e:
            print(f"[broker] client went away: {e}")
        finally:
            writer.close()

    async def start(self, path: str) -> asyncio.AbstractServer:
        if os.path.exists(path):
            os.unlink(path)
        self._loop = asyncio.get_running_loop()
        self._server = await asyncio.start_unix_server(self._handle_client, path=path)
        print(f"[broker] listening on {path}")
        return self._server

    async def serve_forever(self, path: str) -> None:
        server = await self.start(path)
        async with server:
            await server.serve_forever()

    def serve_in_thread(self, path: str, *, timeout: float = 5.0) -> threading.Thread:
        """Run the broker on its own event loop; returns once it is listening."""
        ready = threading.Event()
        errors: list = []

        async def _main() -> None:
            try:
                server = await self.start(path)
            except OSError as e:
                errors.append(e)
                ready.set()
                return
            ready.set()
            async with server:
                try:
                    await server.serve_forever()
                except asyncio.CancelledError:
                    pass

        t = threading.Thread(target=asyncio.run, args=(_main(),), name="gssharness-broker", daemon=True)
        t.start()
        if not ready.wait(timeout):
            raise TransportError(f"broker did not start on {path}")
        if errors:
            raise TransportError(f"broker failed to start on {path}: {errors[0]}") from errors[0]
        return t

    def stop(self) -> None:
        if self._server is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._server.close)
