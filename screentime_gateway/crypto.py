"""
Screen Time Cryptography Module

Ed25519 keys for request signing and verification.

- Devices hold PRIVATE keys (SigningKey) and sign every request.
- The service holds only PUBLIC keys (VerifyKey) grouped by role.

Key wire format: the algorithm's raw fixed-length bytes (32 for both key
kinds), standard base-64 encoded. Decoding is strict: malformed base-64 or a
wrong raw length fails key construction and never truncates.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import ST_E_KEY_FORMAT, ST_E_SIGNING, KeyFormatError, st_error

logger = logging.getLogger("screentime_gateway")

RAW_KEY_BYTES = 32
SIGNATURE_BYTES = 64


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON for request bodies.

    - sort_keys: deterministic key order
    - separators: no whitespace ambiguity
    - ensure_ascii=False: preserve unicode deterministically (UTF-8)
    - allow_nan=False: strict JSON that every counterpart can re-encode
    """

    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def _decode_raw_value(raw_value: str, label: str) -> bytes:
    if not isinstance(raw_value, str):
        raise st_error(ST_E_KEY_FORMAT, f"{label} raw value must be a string", got=type(raw_value).__name__)
    try:
        data = base64.b64decode(raw_value.strip().encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise st_error(ST_E_KEY_FORMAT, f"{label} is not valid base64") from e
    if len(data) != RAW_KEY_BYTES:
        raise st_error(
            ST_E_KEY_FORMAT,
            f"{label} must be {RAW_KEY_BYTES} raw bytes",
            got=len(data),
        )
    return data


@dataclass(frozen=True)
class VerifyKey:
    """Ed25519 public key (raw 32 bytes)."""

    raw: bytes

    def __post_init__(self):
        if not isinstance(self.raw, (bytes, bytearray)) or len(self.raw) != RAW_KEY_BYTES:
            raise st_error(ST_E_KEY_FORMAT, f"public key must be {RAW_KEY_BYTES} raw bytes")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def from_raw_value(cls, raw_value: str) -> "VerifyKey":
        return cls(_decode_raw_value(raw_value, "public key"))

    @property
    def raw_value(self) -> str:
        return base64.b64encode(self.raw).decode("ascii")

    def verify(self, message: bytes, signature: bytes) -> bool:
        """Verify a signature over ``message``; False on any mismatch."""
        if len(signature) != SIGNATURE_BYTES:
            return False
        try:
            Ed25519PublicKey.from_public_bytes(self.raw).verify(bytes(signature), bytes(message))
            return True
        except (InvalidSignature, ValueError):
            return False

    def __repr__(self) -> str:
        return f"VerifyKey({self.raw_value!r})"


@dataclass(frozen=True)
class SigningKey:
    """
    Ed25519 private key (raw 32-byte seed).

    SECURITY: never log or print instances; repr hides the key material.
    """

    raw: bytes

    def __post_init__(self):
        if not isinstance(self.raw, (bytes, bytearray)) or len(self.raw) != RAW_KEY_BYTES:
            raise st_error(ST_E_KEY_FORMAT, f"private key must be {RAW_KEY_BYTES} raw bytes")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def generate(cls) -> "SigningKey":
        """Generate a new Ed25519 key."""
        private_key = Ed25519PrivateKey.generate()
        return cls(
            private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )

    @classmethod
    def from_raw_value(cls, raw_value: str) -> "SigningKey":
        return cls(_decode_raw_value(raw_value, "private key"))

    @property
    def raw_value(self) -> str:
        return base64.b64encode(self.raw).decode("ascii")

    @property
    def public_key(self) -> VerifyKey:
        public_key = Ed25519PrivateKey.from_private_bytes(self.raw).public_key()
        return VerifyKey(
            public_key.public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
        )

    def sign(self, message: bytes) -> bytes:
        """Sign a message. Returns the 64-byte signature."""
        try:
            return Ed25519PrivateKey.from_private_bytes(self.raw).sign(bytes(message))
        except (ValueError, TypeError) as e:
            raise st_error(ST_E_SIGNING, "Ed25519 signing failed") from e

    def __repr__(self) -> str:
        return f"SigningKey(public={self.public_key.raw_value!r})"


# ---------------------------
# Key provisioning
# ---------------------------


def load_signing_key_from_env(env_var: str = "SCREENTIME_MASTER_KEY") -> Optional[SigningKey]:
    """Load a signing key (base-64 raw seed) from an environment variable.

    Returns None if the variable is not set. Malformed material raises
    :class:`KeyFormatError`; a configured-but-broken key must not be ignored.
    """
    raw_value = (os.getenv(env_var, "") or "").strip()
    if not raw_value:
        return None
    return SigningKey.from_raw_value(raw_value)


def load_signing_key_from_file(path: str, require_strict_permissions: bool = True) -> Optional[SigningKey]:
    """
    Load a signing key from file with permission checks.

    The file holds the base-64 raw seed. Files readable by group/other are
    rejected (0600 expected). Returns None if the file doesn't exist.
    """
    key_path = Path(path)
    if not key_path.exists():
        return None

    if require_strict_permissions:
        mode = os.stat(key_path).st_mode
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            raise st_error(
                ST_E_KEY_FORMAT,
                f"Key file {path} has insecure permissions {oct(mode & 0o777)}; run: chmod 600 {path}",
            )

    return SigningKey.from_raw_value(key_path.read_text(encoding="ascii"))


def load_signing_key(env_var: str = "SCREENTIME_MASTER_KEY", file_path: Optional[str] = None) -> Optional[SigningKey]:
    """Environment first, then file."""
    key = load_signing_key_from_env(env_var)
    if key is not None:
        return key
    if file_path:
        return load_signing_key_from_file(file_path)
    return None


def generate_key_file(path: str) -> SigningKey:
    """Generate a new key and write its raw value to ``path`` with 0600 permissions."""
    key = SigningKey.generate()
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, key.raw_value.encode("ascii"))
    finally:
        os.close(fd)
    logger.info("Wrote new signing key to %s (public key %s)", path, key.public_key.raw_value)
    return key


__all__ = [
    "KeyFormatError",
    "RAW_KEY_BYTES",
    "SIGNATURE_BYTES",
    "SigningKey",
    "VerifyKey",
    "canonical_json_dumps",
    "generate_key_file",
    "load_signing_key",
    "load_signing_key_from_env",
    "load_signing_key_from_file",
]
