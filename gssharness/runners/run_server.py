# MIT License © 2025 Motohiro Suzuki
"""
runners/run_server.py

    gssharness-server [options] [socket] service

With a socket path every provider call goes through the broker listening
there; without one the loopback mechanism runs in-process (needs --secret).
Startup errors exit with status 2.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from gssharness.protocol.config import (
    DEFAULT_PORT,
    AcceptorConfig,
    ProviderSettings,
    acceptor_config_from,
    load_config_file,
    provider_settings_from,
)
from gssharness.protocol.errors import ConfigError, HarnessError
from gssharness.provider.factory import make_provider
from gssharness.provider.proxy import ProxyProvider
from gssharness.runners.driver import AcceptorService


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="gssharness-server", description="GSS-style acceptor test harness")
    p.add_argument("endpoint", nargs="+", metavar="[socket] service", help="broker socket path and service name")
    p.add_argument("--port", type=int, default=None, help=f"port (default {DEFAULT_PORT})")
    p.add_argument("--verbose", action="store_true", default=None, help="verbose")
    p.add_argument("--once", action="store_true", default=None, help="single-connection mode")
    p.add_argument("--export", dest="export_exercise", action="store_true", default=None,
                   help="export/reimport the acceptor credential before each handshake")
    p.add_argument("--logfile", dest="log_path", default=None, help="log file for details (default stdout)")

    p.add_argument("--config", default=None, help="YAML config file")
    p.add_argument("--secret", default=None, help="loopback mechanism shared secret (in-process provider)")
    p.add_argument("--timeout", dest="io_timeout", type=float, default=None, help="per-read deadline in seconds")
    p.add_argument("--audit-log", dest="audit_log_path", default=None, help="append JSON-lines session records")
    return p


def config_from_args(args: argparse.Namespace) -> tuple:
    if len(args.endpoint) > 2:
        raise ConfigError("usage: gssharness-server [options] [socket] service")
    socket_path = args.endpoint[0] if len(args.endpoint) == 2 else None
    service = args.endpoint[-1]

    data = load_config_file(args.config) if args.config else {}
    cfg = acceptor_config_from(
        data,
        service=service,
        proxy_socket=socket_path,
        port=args.port,
        verbose=args.verbose,
        once=args.once,
        export_exercise=args.export_exercise,
        log_path=args.log_path,
        audit_log_path=args.audit_log_path,
        io_timeout=args.io_timeout,
    )
    settings: Optional[ProviderSettings] = None
    if not cfg.proxy_socket:
        settings = provider_settings_from(data, secret=args.secret)
    return cfg, settings


async def _serve(cfg: AcceptorConfig, settings: Optional[ProviderSettings]) -> None:
    provider = make_provider(settings, cfg.proxy_socket, timeout=cfg.io_timeout)
    try:
        await AcceptorService(cfg, provider).serve()
    finally:
        if isinstance(provider, ProxyProvider):
            provider.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg, settings = config_from_args(args)
    except ConfigError as e:
        print(f"[acceptor] config error: {e}")
        return 2

    try:
        asyncio.run(_serve(cfg, settings))
    except KeyboardInterrupt:
        return 0
    except (HarnessError, OSError) as e:
        print(f"[acceptor] startup failed: {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
