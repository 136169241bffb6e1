# MIT License © 2025 Motohiro Suzuki
"""
runners/run_client.py

    gssharness-client [options] host service message

Runs --ccount connections against an acceptor, each exchanging --mcount
messages. Exit status: 0 all connections ok, 1 some failed, 2 bad config.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from gssharness.protocol.config import (
    DEFAULT_PORT,
    InitiatorConfig,
    ProviderSettings,
    initiator_config_from,
    load_config_file,
    parse_oid,
    provider_settings_from,
)
from gssharness.protocol.errors import ConfigError
from gssharness.provider.base import MECH_IAKERB, MECH_KRB5
from gssharness.provider.factory import make_provider
from gssharness.runners.driver import run_client_connections


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="gssharness-client", description="GSS-style initiator test harness")
    p.add_argument("host")
    p.add_argument("service")
    p.add_argument("message", help="message text (or file name with -f)")

    p.add_argument("--port", type=int, default=None, help=f"port (default {DEFAULT_PORT})")
    p.add_argument("--mech", default=None, help="mechanism OID or krb5/iakerb/spnego/loopback")
    p.add_argument("--spnego", action="store_true", default=None, help="use SPNEGO")
    p.add_argument("--iakerb", action="store_true", default=False, help="use IAKERB")
    p.add_argument("--krb5", action="store_true", default=False, help="use Kerberos 5")
    p.add_argument("-d", dest="delegate", action="store_true", default=None, help="delegate")
    p.add_argument("--seq", dest="sequence", action="store_true", default=None, help="use sequence number checking")
    p.add_argument("--noreplay", dest="replay", action="store_false", default=None, help="disable replay checking")
    p.add_argument("--nomutual", dest="mutual", action="store_false", default=None, help="perform one-way authentication")
    p.add_argument("--user", default=None, help="user name")
    p.add_argument("--pass", dest="password", default=None, help="password")
    p.add_argument("-f", dest="from_file", action="store_true", help="read message from file")
    p.add_argument("--v1", dest="legacy", action="store_true", default=None, help="use version 1 protocol")
    p.add_argument("-q", dest="quiet", action="store_true", default=None, help="quiet")
    p.add_argument("--ccount", dest="connections", type=int, default=None, help="connection count")
    p.add_argument("--mcount", dest="messages", type=int, default=None, help="message count")
    p.add_argument("--na", dest="authenticate", action="store_false", default=None, help="no authentication")
    p.add_argument("--nw", dest="wrap", action="store_false", default=None, help="no wrapping")
    p.add_argument("--nx", dest="encrypt", action="store_false", default=None, help="no encryption")
    p.add_argument("--nm", dest="mic", action="store_false", default=None, help="no MICs")

    p.add_argument("--config", default=None, help="YAML config file")
    p.add_argument("--secret", default=None, help="loopback mechanism shared secret")
    p.add_argument("--timeout", dest="io_timeout", type=float, default=None, help="per-read deadline in seconds")
    p.add_argument("--audit-log", dest="audit_log_path", default=None, help="append JSON-lines session records")
    return p


def _read_message(args: argparse.Namespace) -> bytes:
    if not args.from_file:
        return args.message.encode("utf-8")
    try:
        return Path(args.message).read_bytes()
    except OSError as e:
        raise ConfigError(f'Error opening "{args.message}": {e}') from e


def _mech(args: argparse.Namespace) -> Optional[str]:
    mech = None
    if args.krb5:
        mech = MECH_KRB5
    if args.iakerb:
        mech = MECH_IAKERB
    if args.mech:
        mech = parse_oid(args.mech)
    return mech


def config_from_args(args: argparse.Namespace) -> Tuple[InitiatorConfig, ProviderSettings]:
    data = load_config_file(args.config) if args.config else {}
    cfg = initiator_config_from(
        data,
        host=args.host,
        service=args.service,
        message=_read_message(args),
        port=args.port,
        mech=_mech(args),
        spnego=args.spnego,
        delegate=args.delegate,
        sequence=args.sequence,
        replay=args.replay,
        mutual=args.mutual,
        user=args.user or None,
        password=args.password or None,
        legacy=args.legacy,
        quiet=args.quiet,
        connections=args.connections,
        messages=args.messages,
        authenticate=args.authenticate,
        wrap=args.wrap,
        encrypt=args.encrypt,
        mic=args.mic,
        io_timeout=args.io_timeout,
        audit_log_path=args.audit_log_path,
    )
    return cfg, provider_settings_from(data, secret=args.secret)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg, settings = config_from_args(args)
    except ConfigError as e:
        print(f"[initiator] config error: {e}")
        return 2

    def factory():
        return make_provider(settings)

    results = asyncio.run(run_client_connections(cfg, factory))
    failed = sum(1 for r in results if not r.ok)
    if failed:
        print(f"[initiator] {failed} of {len(results)} connections failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
