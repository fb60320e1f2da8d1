"""Screen Time protocol package.

This package provides request signing for the screen time service using:

- Per-request Ed25519 signatures over method, path segments, timestamp and body
- A 2 second replay window on the signed timestamp
- Role resolution against an admin / users / viewers key registry
- An HTTP client and a FastAPI gateway that speak the protocol

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports:

    from screentime_gateway import ScreenTimeClient, create_app

Signing primitives are also re-exported:

    from screentime_gateway import KeySet, KeyType, SigningKey, VerifyKey
    from screentime_gateway import RequestSigner, resolve_role, verify_signature

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "1.0.0"

__all__ = [
    "__version__",
    "KeySet",
    "KeyType",
    "RequestSigner",
    "ScreenTimeClient",
    "ScreenTimeData",
    "ScreenTimeError",
    "ScreenTimeGateway",
    "SignatureData",
    "SigningKey",
    "VerificationResult",
    "VerifyKey",
    "create_app",
    "resolve_role",
    "sign_request",
    "verify_signature",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "KeySet": ("screentime_gateway.keyset", "KeySet"),
    "KeyType": ("screentime_gateway.keyset", "KeyType"),
    "RequestSigner": ("screentime_gateway.signing", "RequestSigner"),
    "ScreenTimeClient": ("screentime_gateway.client", "ScreenTimeClient"),
    "ScreenTimeData": ("screentime_gateway.models", "ScreenTimeData"),
    "ScreenTimeError": ("screentime_gateway.errors", "ScreenTimeError"),
    "ScreenTimeGateway": ("screentime_gateway.server", "ScreenTimeGateway"),
    "SignatureData": ("screentime_gateway.envelope", "SignatureData"),
    "SigningKey": ("screentime_gateway.crypto", "SigningKey"),
    "VerificationResult": ("screentime_gateway.signing", "VerificationResult"),
    "VerifyKey": ("screentime_gateway.crypto", "VerifyKey"),
    "create_app": ("screentime_gateway.server", "create_app"),
    "resolve_role": ("screentime_gateway.signing", "resolve_role"),
    "sign_request": ("screentime_gateway.signing", "sign_request"),
    "verify_signature": ("screentime_gateway.signing", "verify_signature"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'screentime_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
