"""Caller authentication helpers for the screen time gateway.

Every mutating or reading endpoint is authenticated by a per-request
signature (see :mod:`screentime_gateway.signing`). This module turns the raw
pieces of an HTTP request into an :class:`AuthContext` and holds the master
key configuration used to authorize key registry uploads.

Env vars:
  - SCREENTIME_MASTER_PUBLIC_KEYS: comma-separated base64 public keys
  - SCREENTIME_MASTER_PUBLIC_KEYS_FILE: path to a JSON list of base64 public keys
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple
from urllib.parse import parse_qs

from .crypto import VerifyKey
from .envelope import SignatureData
from .errors import (
    ST_E_ROLE_FORBIDDEN,
    ST_E_SIGNATURE_INVALID,
    ST_E_SIGNATURE_MISSING,
    ST_E_SIGNATURE_OUTDATED,
    EncodingFailure,
    ScreenTimeError,
    st_error,
)
from .keyset import KeySet, KeyType
from .signing import Clock, VerificationResult, resolve_role, verify_signature

logger = logging.getLogger("screentime_gateway")

ENV_MASTER_KEYS = "SCREENTIME_MASTER_PUBLIC_KEYS"
ENV_MASTER_KEYS_FILE = "SCREENTIME_MASTER_PUBLIC_KEYS_FILE"


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity for one signed request."""

    role: KeyType
    result: VerificationResult
    master: bool = False

    @property
    def authenticated(self) -> bool:
        return self.result is VerificationResult.VALID


def parse_envelope(query: str) -> SignatureData:
    """Extract the envelope from a request query string."""
    params = parse_qs(query or "", keep_blank_values=True)
    if "timestamp" not in params and "signature" not in params:
        raise st_error(ST_E_SIGNATURE_MISSING, "request is not signed", http_status=401)
    try:
        return SignatureData.from_query(query)
    except EncodingFailure as e:
        # Malformed envelope is a client error, not an authentication failure.
        raise st_error(e.code, e.message, http_status=400, **e.details) from e


def _failure(result: VerificationResult) -> ScreenTimeError:
    if result is VerificationResult.OUTDATED:
        return st_error(ST_E_SIGNATURE_OUTDATED, "signature timestamp outside the replay window", http_status=401)
    return st_error(ST_E_SIGNATURE_INVALID, "signature does not match any authorized key", http_status=401)


def authenticate(
    components: Sequence[str],
    body: Optional[bytes],
    envelope: SignatureData,
    registry: Optional[KeySet[VerifyKey]],
    *,
    master_keys: Iterable[VerifyKey] = (),
    clock: Clock = time.time,
) -> AuthContext:
    """Resolve the role of a signed request.

    Master keys (if any) are tried first; otherwise the registry is searched in
    admin, user, viewer order. The clock is read once for the whole decision.
    """
    now = float(clock())
    master_keys = tuple(master_keys)
    if master_keys:
        result = verify_signature(components, body, envelope, master_keys, clock=lambda: now)
        if result is VerificationResult.VALID:
            return AuthContext(role=KeyType.NONE, result=result, master=True)
        if result is VerificationResult.OUTDATED:
            return AuthContext(role=KeyType.NONE, result=result)
    if registry is None:
        return AuthContext(role=KeyType.NONE, result=VerificationResult.INVALID)
    role, result = resolve_role(components, body, envelope, registry, clock=lambda: now)
    return AuthContext(role=role, result=result)


def require(ctx: AuthContext, allowed: Iterable[KeyType], *, allow_master: bool = False) -> None:
    """Raise unless ``ctx`` carries one of the ``allowed`` roles."""
    if not ctx.authenticated:
        raise _failure(ctx.result)
    if ctx.master and allow_master:
        return
    if ctx.role in set(allowed):
        return
    raise st_error(
        ST_E_ROLE_FORBIDDEN,
        f"role '{ctx.role.value}' may not perform this operation",
        http_status=403,
    )


@dataclass(frozen=True)
class MasterKeyAuth:
    """Master public keys allowed to upload key registries."""

    keys: Tuple[VerifyKey, ...] = ()
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "MasterKeyAuth":
        """Load master public keys from env/file.

        If configuration is *present* but malformed, return an instance with
        config_error set and no keys so uploads fail closed.
        """
        raw = (os.getenv(ENV_MASTER_KEYS, "") or "").strip()
        file_path = (os.getenv(ENV_MASTER_KEYS_FILE, "") or "").strip()
        if not raw and not file_path:
            return cls()

        try:
            if raw:
                values = [v.strip() for v in raw.split(",") if v.strip()]
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, list):
                    raise ValueError(f"{ENV_MASTER_KEYS_FILE} must contain a JSON list")
                values = [str(v) for v in data]
            keys = tuple(VerifyKey.from_raw_value(v) for v in values)
        except (OSError, ValueError, ScreenTimeError) as e:
            logger.warning("Master key configuration is invalid: %s", e)
            return cls(keys=(), configured=True, config_error="MASTER_KEY_CONFIG_INVALID")

        return cls(keys=keys, configured=True)

    def enabled(self) -> bool:
        return bool(self.keys)
