"""Signature envelope carried with every signed request.

Wire format (URL query string, form encoded)::

    timestamp=1700000000.0&signature=<urlsafe base64 of the 64 signature bytes>

The envelope is created fresh per request and never reused; reuse is what the
replay window rejects.
"""

from __future__ import annotations

import base64
import binascii
import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping
from urllib.parse import parse_qs, urlencode

from .errors import ST_E_ENCODING, st_error


def format_timestamp(timestamp: float) -> str:
    """Canonical decimal form of a timestamp (shortest round-trip repr)."""
    return repr(float(timestamp))


def _b64_decode_any(text: str) -> bytes:
    # Accept both the URL-safe and the standard alphabet; restore stripped padding.
    # Form decoding turns an unescaped '+' into a space.
    s = text.strip().replace(" ", "+").replace("-", "+").replace("_", "/")
    s += "=" * (-len(s) % 4)
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise st_error(ST_E_ENCODING, "signature is not valid base64") from e


def _parse_timestamp(value: Any) -> float:
    try:
        ts = float(value)
    except (TypeError, ValueError) as e:
        raise st_error(ST_E_ENCODING, "timestamp must be a decimal number", got=str(value)[:64]) from e
    if not math.isfinite(ts):
        raise st_error(ST_E_ENCODING, "timestamp must be finite")
    return ts


@dataclass(frozen=True)
class SignatureData:
    """The {timestamp, signature} pair accompanying a request."""

    timestamp: float
    signature: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "signature": base64.b64encode(self.signature).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SignatureData":
        if "timestamp" not in data or "signature" not in data:
            raise st_error(ST_E_ENCODING, "envelope requires 'timestamp' and 'signature'")
        sig = data["signature"]
        if not isinstance(sig, str):
            raise st_error(ST_E_ENCODING, "signature must be a base64 string")
        return cls(timestamp=_parse_timestamp(data["timestamp"]), signature=_b64_decode_any(sig))

    def to_query(self) -> str:
        return urlencode(
            {
                "timestamp": format_timestamp(self.timestamp),
                "signature": base64.urlsafe_b64encode(self.signature).decode("ascii"),
            }
        )

    @classmethod
    def from_query(cls, query: str) -> "SignatureData":
        """Parse the query string form. Extra parameters are ignored."""
        params = parse_qs(query or "", keep_blank_values=True)
        values: Dict[str, Any] = {}
        for name in ("timestamp", "signature"):
            got = params.get(name)
            if not got:
                continue
            if len(got) != 1:
                raise st_error(ST_E_ENCODING, f"duplicate '{name}' parameter")
            values[name] = got[0]
        return cls.from_dict(values)
