"""Stable error taxonomy for the screen time protocol.

This module defines machine-readable error codes and the exception types
used across the signer, verifier, client transport and gateway.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.

Verification outcomes (valid / invalid / outdated) are NOT errors; see
:class:`screentime_gateway.signing.VerificationResult`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Type


# Canonicalization / signing
ST_E_ENCODING = "ST_E_ENCODING"
ST_E_SIGNING = "ST_E_SIGNING"
ST_E_KEY_FORMAT = "ST_E_KEY_FORMAT"

# Transport (client side)
ST_E_TRANSPORT = "ST_E_TRANSPORT"
ST_E_HTTP_STATUS = "ST_E_HTTP_STATUS"
ST_E_INVALID_RESPONSE = "ST_E_INVALID_RESPONSE"

# Gateway / authorization
ST_E_SIGNATURE_MISSING = "ST_E_SIGNATURE_MISSING"
ST_E_SIGNATURE_INVALID = "ST_E_SIGNATURE_INVALID"
ST_E_SIGNATURE_OUTDATED = "ST_E_SIGNATURE_OUTDATED"
ST_E_ROLE_FORBIDDEN = "ST_E_ROLE_FORBIDDEN"
ST_E_UNKNOWN_ID = "ST_E_UNKNOWN_ID"
ST_E_BAD_REQUEST = "ST_E_BAD_REQUEST"
ST_E_REQUEST_TOO_LARGE = "ST_E_REQUEST_TOO_LARGE"


@dataclass
class ScreenTimeError(Exception):
    """Base exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class SigningFailure(ScreenTimeError):
    """The signing primitive failed. Fatal: the key is corrupt or invalid."""


class EncodingFailure(SigningFailure):
    """A component, payload or wire value cannot be encoded/decoded."""


class KeyFormatError(ScreenTimeError):
    """Key material is not valid base-64 of the expected raw length."""


class TransportFailure(ScreenTimeError):
    """Non-success HTTP status, connection failure or unusable response."""

    @property
    def status(self) -> int | None:
        return self.details.get("status")


class AuthorizationError(ScreenTimeError):
    """A signed request was rejected by the gateway."""


_ERROR_TYPES: Dict[str, Type[ScreenTimeError]] = {
    ST_E_ENCODING: EncodingFailure,
    ST_E_SIGNING: SigningFailure,
    ST_E_KEY_FORMAT: KeyFormatError,
    ST_E_TRANSPORT: TransportFailure,
    ST_E_HTTP_STATUS: TransportFailure,
    ST_E_INVALID_RESPONSE: TransportFailure,
    ST_E_SIGNATURE_MISSING: AuthorizationError,
    ST_E_SIGNATURE_INVALID: AuthorizationError,
    ST_E_SIGNATURE_OUTDATED: AuthorizationError,
    ST_E_ROLE_FORBIDDEN: AuthorizationError,
    ST_E_UNKNOWN_ID: AuthorizationError,
}


def st_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> ScreenTimeError:
    """Build the exception registered for ``code`` (base type if unknown)."""
    cls = _ERROR_TYPES.get(code, ScreenTimeError)
    return cls(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
