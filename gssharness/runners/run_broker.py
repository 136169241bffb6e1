# MIT License © 2025 Motohiro Suzuki
"""
runners/run_broker.py

    gssharness-broker --socket PATH [--secret S | --config FILE]

Hosts the loopback mechanism behind a unix socket for gssharness-server.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from gssharness.protocol.config import load_config_file, provider_settings_from
from gssharness.protocol.errors import ConfigError
from gssharness.provider.broker import ProviderBroker
from gssharness.provider.loopback import LoopbackProvider


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="gssharness-broker", description="provider broker for gssharness-server")
    p.add_argument("--socket", required=True, help="unix socket path to listen on")
    p.add_argument("--config", default=None, help="YAML config file (provider section)")
    p.add_argument("--secret", default=None, help="loopback mechanism shared secret")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        data = load_config_file(args.config) if args.config else {}
        settings = provider_settings_from(data, secret=args.secret)
    except ConfigError as e:
        print(f"[broker] config error: {e}")
        return 2

    backend = LoopbackProvider(settings.secret, users=settings.users, lifetime=settings.lifetime)
    try:
        asyncio.run(ProviderBroker(backend).serve_forever(args.socket))
    except KeyboardInterrupt:
        return 0
    except OSError as e:
        print(f"[broker] cannot listen on {args.socket}: {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
