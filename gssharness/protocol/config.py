# MIT License © 2025 Motohiro Suzuki
"""
protocol/config.py

Harness configuration.

- Frozen dataclasses built from CLI flags, optionally layered over a YAML
  file (`--config`). CLI values win over file values.
- Anything unusable (bad OID, unknown key, missing service) raises
  ConfigError at startup, before any connection is made.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from gssharness.protocol.errors import ConfigError
from gssharness.provider.base import (
    MECH_IAKERB,
    MECH_KRB5,
    MECH_LOOPBACK,
    MECH_SPNEGO,
    NegotiatedFlags,
)
from gssharness.transport.token_frame import TokenFlag, WireVariant

DEFAULT_PORT = 4444

MECH_ALIASES = {
    "krb5": MECH_KRB5,
    "iakerb": MECH_IAKERB,
    "spnego": MECH_SPNEGO,
    "loopback": MECH_LOOPBACK,
}

_OID_RE = re.compile(r"^[0-2](\.(0|[1-9][0-9]*))+$")


def parse_oid(text: str) -> str:
    s = (text or "").strip()
    if s.lower() in MECH_ALIASES:
        return MECH_ALIASES[s.lower()]
    if not _OID_RE.match(s):
        raise ConfigError(f'Error parsing OID "{text}".')
    return s


@dataclass(frozen=True)
class ProtectionOptions:
    wrap: bool = True
    encrypt: bool = True
    mic: bool = True

    def effective(self, authenticated: bool) -> "ProtectionOptions":
        """Without a context nothing can be protected; encryption implies wrapping."""
        if not authenticated:
            return ProtectionOptions(wrap=False, encrypt=False, mic=False)
        return ProtectionOptions(wrap=self.wrap, encrypt=self.wrap and self.encrypt, mic=self.mic)

    def token_flags(self) -> int:
        f = 0
        if self.wrap:
            f |= TokenFlag.WRAPPED
        if self.wrap and self.encrypt:
            f |= TokenFlag.ENCRYPTED
        if self.mic:
            f |= TokenFlag.SEND_MIC
        return int(f)


@dataclass(frozen=True)
class ProviderSettings:
    """Loopback mechanism settings (shared secret, optional password table)."""
    secret: bytes = b""
    users: Optional[Mapping[str, str]] = None
    lifetime: int = 3600


@dataclass(frozen=True)
class InitiatorConfig:
    host: str
    service: str
    message: bytes
    port: int = DEFAULT_PORT
    mech: Optional[str] = None
    spnego: bool = False
    delegate: bool = False
    sequence: bool = False
    replay: bool = True
    mutual: bool = True
    user: Optional[str] = None
    password: Optional[str] = None
    legacy: bool = False
    quiet: bool = False
    connections: int = 1
    messages: int = 1
    authenticate: bool = True
    protection: ProtectionOptions = field(default_factory=ProtectionOptions)
    io_timeout: Optional[float] = None
    audit_log_path: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigError("host is required")
        if not self.service:
            raise ConfigError("service is required")
        if not (0 < int(self.port) < 65536):
            raise ConfigError(f"bad port: {self.port}")
        if int(self.connections) < 0 or int(self.messages) < 0:
            raise ConfigError("connection and message counts must be >= 0")
        if self.io_timeout is not None and float(self.io_timeout) <= 0:
            raise ConfigError("io_timeout must be positive")

    @property
    def variant(self) -> WireVariant:
        return WireVariant.LEGACY if self.legacy else WireVariant.CURRENT

    def target_name(self) -> str:
        if "@" in self.service:
            return self.service
        return f"{self.service}@{self.host}"

    def negotiation_mech(self) -> Optional[str]:
        """Mechanism handed to init_context."""
        return MECH_SPNEGO if self.spnego else self.mech

    def credential_mechs(self) -> Optional[list]:
        """Mechanism set used when acquiring initiator credentials."""
        if self.spnego:
            return [MECH_SPNEGO]
        if self.mech is not None:
            return [self.mech]
        return None

    def requested_flags(self) -> NegotiatedFlags:
        return NegotiatedFlags(
            delegate=self.delegate,
            sequence=self.sequence,
            replay=self.replay,
            conf=self.protection.encrypt,
            integ=self.protection.mic,
            mutual=self.mutual,
        )

    def effective_protection(self) -> ProtectionOptions:
        return self.protection.effective(self.authenticate)


@dataclass(frozen=True)
class AcceptorConfig:
    service: str
    proxy_socket: Optional[str] = None
    host: str = ""
    port: int = DEFAULT_PORT
    verbose: bool = False
    once: bool = False
    export_exercise: bool = False
    log_path: Optional[str] = None
    audit_log_path: Optional[str] = None
    io_timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.service:
            raise ConfigError("service is required")
        if not (0 <= int(self.port) < 65536):
            raise ConfigError(f"bad port: {self.port}")
        if self.io_timeout is not None and float(self.io_timeout) <= 0:
            raise ConfigError("io_timeout must be positive")


# =========================
# YAML file layer
# =========================
def load_config_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f'Error opening config file "{path}": {e}') from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f'Error parsing config file "{path}": {e}') from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f'config file "{path}" must contain a mapping')
    _check_keys("top-level", data, {"initiator", "acceptor", "provider"})
    for name, sec in data.items():
        if sec is not None and not isinstance(sec, dict):
            raise ConfigError(f'config section "{name}" must be a mapping')
        if sec:
            _check_keys(name, sec, _SECTION_KEYS[name])
    return data


def _known_keys(cls) -> set:
    return {f.name for f in fields(cls)}


def _check_keys(section: str, data: Mapping[str, Any], allowed: set) -> None:
    unknown = sorted(str(k) for k in set(data) - allowed)
    if unknown:
        raise ConfigError(f"unknown {section} config keys: {', '.join(unknown)}")


_PROTECTION_KEYS = {"wrap", "encrypt", "mic"}
_SECTION_KEYS = {
    "initiator": _known_keys(InitiatorConfig) | _PROTECTION_KEYS,
    "acceptor": _known_keys(AcceptorConfig),
    "provider": {"secret", "users", "lifetime"},
}


def provider_settings_from(data: Mapping[str, Any], *, secret: Optional[str] = None) -> ProviderSettings:
    """The `provider:` section; `secret` (from the CLI) overrides the file."""
    sec = dict(data.get("provider") or {})
    _check_keys("provider", sec, _SECTION_KEYS["provider"])
    raw = secret if secret is not None else sec.get("secret")
    if raw is None or str(raw) == "":
        raise ConfigError("a loopback secret is required (--secret or provider.secret)")
    users = sec.get("users")
    if users is not None and not isinstance(users, dict):
        raise ConfigError("provider.users must be a mapping of user -> password")
    return ProviderSettings(
        secret=str(raw).encode("utf-8"),
        users=None if users is None else {str(k): str(v) for k, v in users.items()},
        lifetime=int(sec.get("lifetime", 3600)),
    )


def initiator_config_from(data: Mapping[str, Any], **overrides: Any) -> InitiatorConfig:
    """
    Build from the `initiator:` section of a config file plus CLI overrides.
    Overrides equal to None are ignored so that unset flags fall through.
    """
    sec = dict(data.get("initiator") or {})
    _check_keys("initiator", sec, _SECTION_KEYS["initiator"])

    merged: Dict[str, Any] = dict(sec)
    merged.update({k: v for k, v in overrides.items() if v is not None})

    prot = merged.pop("protection", None) or ProtectionOptions()
    if isinstance(prot, dict):
        _check_keys("initiator.protection", prot, _PROTECTION_KEYS)
        prot = ProtectionOptions(**{k: bool(v) for k, v in prot.items()})
    prot = replace(
        prot,
        **{k: bool(merged.pop(k)) for k in ("wrap", "encrypt", "mic") if k in merged},
    )
    if isinstance(merged.get("message"), str):
        merged["message"] = merged["message"].encode("utf-8")
    if merged.get("mech") is not None:
        merged["mech"] = parse_oid(str(merged["mech"]))

    try:
        return InitiatorConfig(protection=prot, **merged)
    except TypeError as e:
        raise ConfigError(f"incomplete initiator config: {e}") from e


def acceptor_config_from(data: Mapping[str, Any], **overrides: Any) -> AcceptorConfig:
    sec = dict(data.get("acceptor") or {})
    _check_keys("acceptor", sec, _SECTION_KEYS["acceptor"])
    merged: Dict[str, Any] = dict(sec)
    merged.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return AcceptorConfig(**merged)
    except TypeError as e:
        raise ConfigError(f"incomplete acceptor config: {e}") from e
