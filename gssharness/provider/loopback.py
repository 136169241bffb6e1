# MIT License © 2025 Motohiro Suzuki
"""
provider/loopback.py

In-process reference mechanism for the harness. Both peers hold the same
service secret; the mechanism is a test fixture, NOT a security design.

Context establishment:
  - mutual=False : INIT(proof)                      -> 1 token, COMPLETE at once
  - mutual=True  : INIT -> ACCEPT(proof) -> FINISH(proof)  -> 3 tokens

Per-message protection:
  - wrap with conf : header || AES-GCM(nonce || ct)
  - wrap w/o conf  : header || payload || HMAC
  - MIC            : HMAC over direction || payload
  header = version(u8) || conf(u8) || direction(u8)
"""

from __future__ import annotations

import hmac
import os
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from gssharness.crypto.aead import AEADError, open_sealed, seal
from gssharness.crypto.hkdf import build_ikm, hkdf_sha256, hmac_sha256, hmac_verify
from gssharness.crypto.zeroize import SecretBox
from gssharness.provider.base import (
    COMPLETE,
    CONTINUE_NEEDED,
    MECH_LOOPBACK,
    MECH_SPNEGO,
    AcceptContextResult,
    CallContext,
    ContextInfo,
    CredResult,
    CredUsage,
    ExportResult,
    InitContextResult,
    MajorStatus,
    MicResult,
    NameResult,
    NamesForMechResult,
    NameType,
    NegotiatedFlags,
    StatusResult,
    UnwrapResult,
    WrapResult,
    failure,
)
from gssharness.provider.tokens import (
    AcceptToken,
    CredBlob,
    FinishToken,
    InitToken,
    canonical_body_bytes,
)

SUPPORTED_MECHS = (MECH_LOOPBACK, MECH_SPNEGO)

# ---- minor status codes ----
MINOR_BAD_PROOF = 0x10
MINOR_WRONG_TARGET = 0x11
MINOR_BAD_PASSWORD = 0x12
MINOR_UNKNOWN_USER = 0x13
MINOR_WRONG_USAGE = 0x14
MINOR_RELEASED = 0x15
MINOR_OUT_OF_SEQUENCE = 0x16
MINOR_BAD_DIRECTION = 0x17

KEY_SALT = b"gssharness-loopback"
KEY_INFO = b"loopback-context-keys-v1"
CRED_INFO = b"loopback-cred-export-v1"

_WRAP_VERSION = 1
_DIR_INITIATOR = 0
_DIR_ACCEPTOR = 1
_TAG_LEN = 32


@dataclass
class LoopbackName:
    display: str
    name_type: NameType
    released: bool = False


@dataclass
class LoopbackCred:
    name: Optional[LoopbackName]
    usage: CredUsage
    mechs: tuple = SUPPORTED_MECHS
    released: bool = False


@dataclass
class LoopbackContext:
    initiator: bool
    src_name: str
    target_name: str
    requested: NegotiatedFlags
    expires_at: float
    mech: str = MECH_LOOPBACK
    flags: NegotiatedFlags = field(default_factory=NegotiatedFlags)
    nonce_c: bytes = b""
    transcript: bytes = b""
    keys: Optional[SecretBox] = None
    deleg: Optional[str] = None
    established: bool = False
    released: bool = False

    @property
    def direction(self) -> int:
        return _DIR_INITIATOR if self.initiator else _DIR_ACCEPTOR

    @property
    def peer_direction(self) -> int:
        return _DIR_ACCEPTOR if self.initiator else _DIR_INITIATOR

    def enc_key(self) -> bytes:
        return self.keys.bytes()[:32]

    def mic_key(self) -> bytes:
        return self.keys.bytes()[32:]


def _target_matches(cred_name: str, target: str) -> bool:
    if cred_name == target:
        return True
    return "@" not in cred_name and target.split("@", 1)[0] == cred_name


class LoopbackProvider:
    def __init__(
        self,
        secret: bytes,
        *,
        users: Optional[Mapping[str, str]] = None,
        lifetime: int = 3600,
        principal: str = "anonymous",
    ) -> None:
        if not secret:
            raise ValueError("loopback secret must not be empty")
        self._secret = bytes(secret)
        self._users = None if users is None else dict(users)
        self.lifetime = int(lifetime)
        self.principal = principal

    # -------------------------
    # key schedule
    # -------------------------
    def _context_keys(self, nonce_c: bytes, nonce_s: bytes) -> SecretBox:
        ikm = build_ikm(self._secret, nonce_c, nonce_s)
        return SecretBox(hkdf_sha256(ikm=ikm, salt=KEY_SALT, info=KEY_INFO, length=64))

    def _cred_key(self) -> bytes:
        return hkdf_sha256(ikm=build_ikm(self._secret), salt=KEY_SALT, info=CRED_INFO, length=32)

    @staticmethod
    def _live_context(ctx: Any) -> bool:
        return isinstance(ctx, LoopbackContext) and ctx.established and not ctx.released

    # -------------------------
    # names / credentials
    # -------------------------
    def get_call_context(self, call_ctx: Optional[CallContext] = None) -> StatusResult:
        return StatusResult(COMPLETE, call_ctx or CallContext())

    def import_name(self, name: str, name_type: NameType, *, call_ctx=None) -> NameResult:
        if not name:
            return NameResult(failure(MajorStatus.BAD_NAME), call_ctx=call_ctx)
        try:
            nt = NameType(name_type)
        except ValueError:
            return NameResult(failure(MajorStatus.BAD_NAMETYPE), call_ctx=call_ctx)
        return NameResult(COMPLETE, LoopbackName(display=name, name_type=nt), call_ctx)

    def acquire_credential(
        self,
        name: Any,
        *,
        password: Optional[bytes] = None,
        mechs: Optional[Sequence[str]] = None,
        usage: CredUsage = CredUsage.INITIATE,
        call_ctx=None,
    ) -> CredResult:
        if mechs and not any(m in SUPPORTED_MECHS for m in mechs):
            return CredResult(failure(MajorStatus.BAD_MECH), call_ctx=call_ctx)
        if name is not None and (not isinstance(name, LoopbackName) or name.released):
            return CredResult(failure(MajorStatus.BAD_NAME), call_ctx=call_ctx)

        if password is not None:
            if name is None:
                return CredResult(failure(MajorStatus.BAD_NAME), call_ctx=call_ctx)
            if self._users is not None:
                expected = self._users.get(name.display)
                if expected is None:
                    return CredResult(failure(MajorStatus.FAILURE, MINOR_UNKNOWN_USER), call_ctx=call_ctx)
                if not hmac.compare_digest(expected.encode("utf-8"), bytes(password)):
                    return CredResult(failure(MajorStatus.FAILURE, MINOR_BAD_PASSWORD), call_ctx=call_ctx)
        elif self._users is not None and name is not None and usage is CredUsage.INITIATE:
            if name.display not in self._users:
                return CredResult(failure(MajorStatus.NO_CRED, MINOR_UNKNOWN_USER), call_ctx=call_ctx)

        use = tuple(m for m in (mechs or SUPPORTED_MECHS) if m in SUPPORTED_MECHS)
        return CredResult(COMPLETE, LoopbackCred(name=name, usage=CredUsage(usage), mechs=use), call_ctx)

    def export_credential(self, credential: Any, *, call_ctx=None) -> ExportResult:
        if not isinstance(credential, LoopbackCred) or credential.released:
            return ExportResult(failure(MajorStatus.NO_CRED, MINOR_RELEASED), call_ctx=call_ctx)
        n = credential.name
        blob = CredBlob(
            usage=credential.usage.value,
            name=n.display if n else "",
            name_type=n.name_type.value if n else "",
        )
        mac = hmac_sha256(self._cred_key(), canonical_body_bytes(blob.body_fields()))
        return ExportResult(COMPLETE, CredBlob(blob.usage, blob.name, blob.name_type, mac).to_bytes(), call_ctx)

    def import_credential(self, token: bytes, *, call_ctx=None) -> CredResult:
        try:
            blob = CredBlob.parse(token)
            usage = CredUsage(blob.usage)
            name_type = NameType(blob.name_type) if blob.name else None
        except ValueError:
            return CredResult(failure(MajorStatus.DEFECTIVE_TOKEN), call_ctx=call_ctx)
        if not hmac_verify(self._cred_key(), canonical_body_bytes(blob.body_fields()), blob.mac):
            return CredResult(failure(MajorStatus.DEFECTIVE_CREDENTIAL), call_ctx=call_ctx)
        name = LoopbackName(blob.name, name_type) if blob.name else None
        return CredResult(COMPLETE, LoopbackCred(name=name, usage=usage), call_ctx)

    # -------------------------
    # context establishment
    # -------------------------
    def init_context(
        self,
        credential: Any,
        context: Any,
        target: Any,
        mech: Optional[str],
        flags: NegotiatedFlags,
        input_token: Optional[bytes] = None,
        *,
        call_ctx=None,
    ) -> InitContextResult:
        if context is None:
            return self._init_first(credential, target, mech, flags, call_ctx)

        if not isinstance(context, LoopbackContext) or not context.initiator or context.released:
            return InitContextResult(failure(MajorStatus.NO_CONTEXT), call_ctx=call_ctx)
        if context.established:
            return InitContextResult(failure(MajorStatus.FAILURE, MINOR_OUT_OF_SEQUENCE), context, call_ctx=call_ctx)
        if not input_token:
            return InitContextResult(failure(MajorStatus.DEFECTIVE_TOKEN), context, call_ctx=call_ctx)

        try:
            acc = AcceptToken.parse(input_token)
        except ValueError:
            return InitContextResult(failure(MajorStatus.DEFECTIVE_TOKEN), context, call_ctx=call_ctx)

        keys = self._context_keys(context.nonce_c, acc.nonce_s)
        accept_body = canonical_body_bytes(acc.body_fields())
        if not hmac_verify(keys.bytes()[32:], b"accept" + context.transcript + accept_body, acc.proof):
            keys.wipe()
            return InitContextResult(failure(MajorStatus.FAILURE, MINOR_BAD_PROOF), context, call_ctx=call_ctx)

        context.keys = keys
        context.transcript += accept_body
        context.flags = context.requested.narrow(NegotiatedFlags.from_int(acc.flags))

        fin = FinishToken(proof=b"", deleg=context.src_name if context.flags.delegate else None)
        proof = hmac_sha256(context.mic_key(), b"finish" + context.transcript + canonical_body_bytes(fin.body_fields()))
        context.established = True
        return InitContextResult(
            COMPLETE,
            context,
            FinishToken(proof=proof, deleg=fin.deleg).to_bytes(),
            context.flags,
            call_ctx,
        )

    def _init_first(self, credential, target, mech, flags, call_ctx) -> InitContextResult:
        if mech is not None and mech not in SUPPORTED_MECHS:
            return InitContextResult(failure(MajorStatus.BAD_MECH), call_ctx=call_ctx)
        if not isinstance(target, LoopbackName) or target.released:
            return InitContextResult(failure(MajorStatus.BAD_NAME), call_ctx=call_ctx)
        if credential is not None:
            if not isinstance(credential, LoopbackCred) or credential.released:
                return InitContextResult(failure(MajorStatus.NO_CRED, MINOR_RELEASED), call_ctx=call_ctx)
            if credential.usage is CredUsage.ACCEPT:
                return InitContextResult(failure(MajorStatus.NO_CRED, MINOR_WRONG_USAGE), call_ctx=call_ctx)

        src = credential.name.display if credential is not None and credential.name else self.principal
        ctx = LoopbackContext(
            initiator=True,
            src_name=src,
            target_name=target.display,
            requested=flags,
            expires_at=time.time() + self.lifetime,
            nonce_c=os.urandom(16),
        )

        if not flags.mutual:
            init = InitToken(
                nonce_c=ctx.nonce_c,
                src_name=src,
                target_name=target.display,
                flags=flags.to_int(),
                deleg=src if flags.delegate else None,
            )
            body = canonical_body_bytes(init.body_fields())
            ctx.keys = self._context_keys(ctx.nonce_c, b"")
            ctx.flags = flags
            ctx.established = True
            proof = hmac_sha256(ctx.mic_key(), b"init" + body)
            tok = InitToken(init.nonce_c, init.src_name, init.target_name, init.flags, proof, init.deleg)
            return InitContextResult(COMPLETE, ctx, tok.to_bytes(), ctx.flags, call_ctx)

        init = InitToken(nonce_c=ctx.nonce_c, src_name=src, target_name=target.display, flags=flags.to_int())
        ctx.transcript = canonical_body_bytes(init.body_fields())
        return InitContextResult(CONTINUE_NEEDED, ctx, init.to_bytes(), flags, call_ctx)

    def accept_context(self, credential: Any, context: Any, input_token: bytes, *, call_ctx=None) -> AcceptContextResult:
        if not isinstance(credential, LoopbackCred) or credential.released:
            return AcceptContextResult(failure(MajorStatus.NO_CRED, MINOR_RELEASED), call_ctx=call_ctx)
        if credential.usage is CredUsage.INITIATE:
            return AcceptContextResult(failure(MajorStatus.NO_CRED, MINOR_WRONG_USAGE), call_ctx=call_ctx)

        if context is None:
            return self._accept_first(credential, input_token, call_ctx)

        if not isinstance(context, LoopbackContext) or context.initiator or context.released:
            return AcceptContextResult(failure(MajorStatus.NO_CONTEXT), call_ctx=call_ctx)
        if context.established:
            return AcceptContextResult(failure(MajorStatus.FAILURE, MINOR_OUT_OF_SEQUENCE), context, call_ctx=call_ctx)

        try:
            fin = FinishToken.parse(input_token)
        except ValueError:
            return AcceptContextResult(failure(MajorStatus.DEFECTIVE_TOKEN), context, call_ctx=call_ctx)

        body = canonical_body_bytes(fin.body_fields())
        if not hmac_verify(context.mic_key(), b"finish" + context.transcript + body, fin.proof):
            return AcceptContextResult(failure(MajorStatus.FAILURE, MINOR_BAD_PROOF), context, call_ctx=call_ctx)

        context.established = True
        context.deleg = fin.deleg if context.flags.delegate else None
        return AcceptContextResult(COMPLETE, context, None, self._delegated(context), call_ctx)

    def _accept_first(self, credential: LoopbackCred, input_token: bytes, call_ctx) -> AcceptContextResult:
        try:
            init = InitToken.parse(input_token)
        except ValueError:
            return AcceptContextResult(failure(MajorStatus.DEFECTIVE_TOKEN), call_ctx=call_ctx)

        if credential.name is not None and not _target_matches(credential.name.display, init.target_name):
            return AcceptContextResult(failure(MajorStatus.BAD_NAME, MINOR_WRONG_TARGET), call_ctx=call_ctx)

        requested = NegotiatedFlags.from_int(init.flags)
        ctx = LoopbackContext(
            initiator=False,
            src_name=init.src_name,
            target_name=init.target_name,
            requested=requested,
            expires_at=time.time() + self.lifetime,
            nonce_c=init.nonce_c,
            flags=requested,
        )
        body = canonical_body_bytes(init.body_fields())

        if init.proof is not None:
            keys = self._context_keys(init.nonce_c, b"")
            if not hmac_verify(keys.bytes()[32:], b"init" + body, init.proof):
                keys.wipe()
                return AcceptContextResult(failure(MajorStatus.FAILURE, MINOR_BAD_PROOF), call_ctx=call_ctx)
            ctx.keys = keys
            ctx.established = True
            ctx.deleg = init.deleg if requested.delegate else None
            return AcceptContextResult(COMPLETE, ctx, None, self._delegated(ctx), call_ctx)

        nonce_s = os.urandom(16)
        ctx.keys = self._context_keys(init.nonce_c, nonce_s)
        acc = AcceptToken(nonce_s=nonce_s, flags=requested.to_int(), proof=b"")
        accept_body = canonical_body_bytes(acc.body_fields())
        proof = hmac_sha256(ctx.mic_key(), b"accept" + body + accept_body)
        ctx.transcript = body + accept_body
        return AcceptContextResult(
            CONTINUE_NEEDED,
            ctx,
            AcceptToken(nonce_s=nonce_s, flags=acc.flags, proof=proof).to_bytes(),
            None,
            call_ctx,
        )

    @staticmethod
    def _delegated(ctx: LoopbackContext) -> Optional[LoopbackCred]:
        if not ctx.deleg:
            return None
        return LoopbackCred(
            name=LoopbackName(ctx.deleg, NameType.USER_NAME),
            usage=CredUsage.INITIATE,
            mechs=(MECH_LOOPBACK,),
        )

    # -------------------------
    # per-message protection
    # -------------------------
    def wrap(self, context: Any, conf_requested: bool, payload: bytes, *, call_ctx=None) -> WrapResult:
        if not self._live_context(context):
            return WrapResult(failure(MajorStatus.NO_CONTEXT), call_ctx=call_ctx)
        conf = bool(conf_requested and context.flags.conf)
        header = bytes([_WRAP_VERSION, 1 if conf else 0, context.direction])
        if conf:
            body = seal(context.enc_key(), bytes(payload), header)
        else:
            body = bytes(payload) + hmac_sha256(context.mic_key(), header + bytes(payload))
        return WrapResult(COMPLETE, conf, header + body, call_ctx)

    def unwrap(self, context: Any, token: bytes, *, call_ctx=None) -> UnwrapResult:
        if not self._live_context(context):
            return UnwrapResult(failure(MajorStatus.NO_CONTEXT), call_ctx=call_ctx)
        tok = bytes(token)
        if len(tok) < 3 or tok[0] != _WRAP_VERSION or tok[1] not in (0, 1):
            return UnwrapResult(failure(MajorStatus.DEFECTIVE_TOKEN), call_ctx=call_ctx)
        if tok[2] != context.peer_direction:
            return UnwrapResult(failure(MajorStatus.DEFECTIVE_TOKEN, MINOR_BAD_DIRECTION), call_ctx=call_ctx)

        header, body = tok[:3], tok[3:]
        if tok[1] == 1:
            try:
                return UnwrapResult(COMPLETE, True, open_sealed(context.enc_key(), body, header), call_ctx)
            except AEADError:
                return UnwrapResult(failure(MajorStatus.BAD_MIC), call_ctx=call_ctx)

        if len(body) < _TAG_LEN:
            return UnwrapResult(failure(MajorStatus.DEFECTIVE_TOKEN), call_ctx=call_ctx)
        payload, tag = body[:-_TAG_LEN], body[-_TAG_LEN:]
        if not hmac_verify(context.mic_key(), header + payload, tag):
            return UnwrapResult(failure(MajorStatus.BAD_MIC), call_ctx=call_ctx)
        return UnwrapResult(COMPLETE, False, payload, call_ctx)

    def get_mic(self, context: Any, payload: bytes, *, call_ctx=None) -> MicResult:
        if not self._live_context(context):
            return MicResult(failure(MajorStatus.NO_CONTEXT), call_ctx=call_ctx)
        tag = hmac_sha256(context.mic_key(), b"mic" + bytes([context.direction]) + bytes(payload))
        return MicResult(COMPLETE, tag, call_ctx)

    def verify_mic(self, context: Any, payload: bytes, token: bytes, *, call_ctx=None) -> StatusResult:
        if not self._live_context(context):
            return StatusResult(failure(MajorStatus.NO_CONTEXT), call_ctx)
        msg = b"mic" + bytes([context.peer_direction]) + bytes(payload)
        if not hmac_verify(context.mic_key(), msg, token):
            return StatusResult(failure(MajorStatus.BAD_MIC), call_ctx)
        return StatusResult(COMPLETE, call_ctx)

    # -------------------------
    # introspection
    # -------------------------
    def inquire_context(self, context: Any, *, call_ctx=None) -> ContextInfo:
        if not isinstance(context, LoopbackContext) or context.released:
            return ContextInfo(failure(MajorStatus.NO_CONTEXT), call_ctx=call_ctx)
        attrs = {}
        if not context.initiator:
            attrs["urn:gssharness:loopback:principal"] = context.src_name.encode("utf-8")
            if context.deleg:
                attrs["urn:gssharness:loopback:delegated"] = context.deleg.encode("utf-8")
        return ContextInfo(
            COMPLETE,
            source_name=context.src_name,
            source_name_type=NameType.USER_NAME.value,
            target_name=context.target_name,
            lifetime=max(0, int(context.expires_at - time.time())),
            mech=context.mech,
            flags=context.flags,
            locally_initiated=context.initiator,
            open=context.established,
            source_attributes=attrs,
            call_ctx=call_ctx,
        )

    def inquire_names_for_mech(self, mech: str, *, call_ctx=None) -> NamesForMechResult:
        if mech not in SUPPORTED_MECHS:
            return NamesForMechResult(failure(MajorStatus.BAD_MECH), call_ctx=call_ctx)
        return NamesForMechResult(COMPLETE, tuple(nt.value for nt in NameType), call_ctx)

    # -------------------------
    # release
    # -------------------------
    def release_context(self, context: Any, *, call_ctx=None) -> StatusResult:
        if not isinstance(context, LoopbackContext) or context.released:
            return StatusResult(failure(MajorStatus.NO_CONTEXT, MINOR_RELEASED), call_ctx)
        if context.keys is not None:
            context.keys.wipe()
        context.released = True
        return StatusResult(COMPLETE, call_ctx)

    def release_credential(self, credential: Any, *, call_ctx=None) -> StatusResult:
        if not isinstance(credential, LoopbackCred) or credential.released:
            return StatusResult(failure(MajorStatus.NO_CRED, MINOR_RELEASED), call_ctx)
        credential.released = True
        return StatusResult(COMPLETE, call_ctx)

    def release_name(self, name: Any, *, call_ctx=None) -> StatusResult:
        if not isinstance(name, LoopbackName) or name.released:
            return StatusResult(failure(MajorStatus.BAD_NAME, MINOR_RELEASED), call_ctx)
        name.released = True
        return StatusResult(COMPLETE, call_ctx)
