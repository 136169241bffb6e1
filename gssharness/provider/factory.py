# MIT License © 2025 Motohiro Suzuki
"""
provider/factory.py

- proxy_socket given -> ProxyProvider (calls go to a broker)
- otherwise          -> in-process LoopbackProvider
"""

from __future__ import annotations

from typing import Optional

from gssharness.protocol.config import ProviderSettings
from gssharness.protocol.errors import ConfigError
from gssharness.provider.base import SecurityProvider
from gssharness.provider.loopback import LoopbackProvider
from gssharness.provider.proxy import ProxyProvider


def make_provider(
    settings: Optional[ProviderSettings],
    proxy_socket: Optional[str] = None,
    *,
    timeout: Optional[float] = None,
) -> SecurityProvider:
    if proxy_socket:
        return ProxyProvider(proxy_socket, timeout=timeout)
    if settings is None or not settings.secret:
        raise ConfigError("loopback provider needs a secret")
    return LoopbackProvider(settings.secret, users=settings.users, lifetime=settings.lifetime)
