"""
screentime_gateway.signing: request signing and verification.

Canonical payload
-----------------
The signed bytes for a logical request are::

    utf8(":".join(components + [format_timestamp(timestamp)])) + body

where component 0 is the HTTP method name and the rest are the raw (never
percent-encoded) path segments. Components are joined without escaping, so a
component containing ``:`` is indistinguishable from two components split at
that colon. This is kept for compatibility with existing counterparts.

Replay window
-------------
A verifier accepts an envelope only if ``0 <= now - timestamp <= 2.0``.
Future timestamps are rejected outright; there is no clock-skew allowance.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence, Tuple

from .crypto import SigningKey, VerifyKey
from .envelope import SignatureData, format_timestamp
from .errors import ST_E_ENCODING, ST_E_SIGNING, ScreenTimeError, st_error
from .keyset import KeySet, KeyType

logger = logging.getLogger("screentime_gateway")

REPLAY_WINDOW_SECONDS = 2.0
COMPONENT_SEPARATOR = ":"

Clock = Callable[[], float]


class VerificationResult(Enum):
    """Outcome of a verification. Not an exception: callers must branch on it."""

    VALID = "valid"
    INVALID = "invalid"
    OUTDATED = "outdated"


def build_signing_payload(components: Sequence[str], timestamp: float, body: Optional[bytes] = None) -> bytes:
    """Build the exact bytes that are signed and verified."""
    parts = list(components)
    for i, c in enumerate(parts):
        if not isinstance(c, str):
            raise st_error(ST_E_ENCODING, "request components must be strings", index=i, got=type(c).__name__)
    parts.append(format_timestamp(timestamp))
    try:
        payload = COMPONENT_SEPARATOR.join(parts).encode("utf-8")
    except UnicodeEncodeError as e:
        raise st_error(ST_E_ENCODING, "request components are not valid UTF-8") from e
    if body is not None:
        payload += bytes(body)
    return payload


def sign_request(
    components: Sequence[str],
    body: Optional[bytes],
    private_key: SigningKey,
    *,
    clock: Clock = time.time,
) -> SignatureData:
    """Sign a logical request at the current wall-clock time."""
    timestamp = float(clock())
    payload = build_signing_payload(components, timestamp, body)
    try:
        signature = private_key.sign(payload)
    except ScreenTimeError:
        raise
    except Exception as e:
        raise st_error(ST_E_SIGNING, f"signing failed: {type(e).__name__}") from e
    return SignatureData(timestamp=timestamp, signature=signature)


def is_within_replay_window(timestamp: float, now: float) -> bool:
    age = now - timestamp
    return 0.0 <= age <= REPLAY_WINDOW_SECONDS


def _verify_payload(payload: bytes, signature: bytes, candidate_keys: Iterable[VerifyKey]) -> bool:
    for key in candidate_keys:
        if key.verify(payload, signature):
            return True
    return False


def verify_signature(
    components: Sequence[str],
    body: Optional[bytes],
    envelope: SignatureData,
    candidate_keys: Iterable[VerifyKey],
    *,
    clock: Clock = time.time,
) -> VerificationResult:
    """Verify an envelope against an ordered list of public keys.

    Outdated envelopes are rejected before any signature check. The payload is
    rebuilt with the envelope's own timestamp, and the first matching key wins.
    """
    now = float(clock())
    if not is_within_replay_window(envelope.timestamp, now):
        logger.debug("Envelope outside replay window (age=%.3fs)", now - envelope.timestamp)
        return VerificationResult.OUTDATED

    payload = build_signing_payload(components, envelope.timestamp, body)
    if _verify_payload(payload, envelope.signature, candidate_keys):
        return VerificationResult.VALID
    return VerificationResult.INVALID


def resolve_role(
    components: Sequence[str],
    body: Optional[bytes],
    envelope: SignatureData,
    registry: KeySet[VerifyKey],
    *,
    clock: Clock = time.time,
) -> Tuple[KeyType, VerificationResult]:
    """Find which role of ``registry`` signed the request.

    Admin is checked first, then users, then viewers, so a key duplicated
    across roles resolves to the higher one.
    """
    now = float(clock())
    for role, keys in registry.roles():
        result = verify_signature(components, body, envelope, keys, clock=lambda: now)
        if result is VerificationResult.OUTDATED:
            return KeyType.NONE, result
        if result is VerificationResult.VALID:
            return role, result
    return KeyType.NONE, VerificationResult.INVALID


class RequestSigner:
    """Signs requests with one private key."""

    def __init__(self, private_key: SigningKey, *, clock: Clock = time.time):
        self._private_key = private_key
        self._clock = clock

    @property
    def public_key(self) -> VerifyKey:
        return self._private_key.public_key

    def sign(self, components: Sequence[str], body: Optional[bytes] = None) -> SignatureData:
        return sign_request(components, body, self._private_key, clock=self._clock)


__all__ = [
    "COMPONENT_SEPARATOR",
    "REPLAY_WINDOW_SECONDS",
    "RequestSigner",
    "VerificationResult",
    "build_signing_payload",
    "is_within_replay_window",
    "resolve_role",
    "sign_request",
    "verify_signature",
]
