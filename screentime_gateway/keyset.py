"""Key registry: the admin / users / viewers grouping of keys.

``KeySet`` is generic over the key type so the same shape holds private keys
on a device and public keys on the service::

    private = KeySet(admin=SigningKey.generate(), users=[...], viewers=[])
    public = private.map(lambda k: k.public_key)

The registry is immutable; rotation means replacing the whole registry.
No check is made for a key appearing under more than one role.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, Iterable, Optional, Tuple, TypeVar

from .crypto import SigningKey, VerifyKey
from .errors import ST_E_ENCODING, st_error

K = TypeVar("K")
R = TypeVar("R")


class KeyType(Enum):
    """Role of a key in a registry. ``NONE`` means not recognized."""

    ADMIN = "admin"
    USER = "user"
    VIEWER = "viewer"
    NONE = "none"

    @classmethod
    def parse(cls, token: str) -> Optional["KeyType"]:
        """Parse a lowercase role token; None if it is not one."""
        try:
            return cls(token)
        except ValueError:
            return None


@dataclass(frozen=True)
class KeySet(Generic[K]):
    """One admin key, zero or more user keys, zero or more viewer keys."""

    admin: K
    users: Tuple[K, ...] = ()
    viewers: Tuple[K, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "users", tuple(self.users))
        object.__setattr__(self, "viewers", tuple(self.viewers))

    def map(self, transform: Callable[[K], R]) -> "KeySet[R]":
        """Convert every key, preserving role membership and order."""
        return KeySet(
            admin=transform(self.admin),
            users=tuple(transform(k) for k in self.users),
            viewers=tuple(transform(k) for k in self.viewers),
        )

    def roles(self) -> Iterable[Tuple[KeyType, Tuple[K, ...]]]:
        """Role groups in precedence order: admin, users, viewers."""
        yield KeyType.ADMIN, (self.admin,)
        yield KeyType.USER, self.users
        yield KeyType.VIEWER, self.viewers

    def to_dict(self, encode: Callable[[K], Any]) -> Dict[str, Any]:
        return {
            "admin": encode(self.admin),
            "users": [encode(k) for k in self.users],
            "viewers": [encode(k) for k in self.viewers],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], decode: Callable[[Any], K]) -> "KeySet[K]":
        if not isinstance(data, dict):
            raise st_error(ST_E_ENCODING, "key set must be a JSON object", got=type(data).__name__)
        if "admin" not in data:
            raise st_error(ST_E_ENCODING, "key set is missing 'admin'")
        users = data.get("users", [])
        viewers = data.get("viewers", [])
        if not isinstance(users, list) or not isinstance(viewers, list):
            raise st_error(ST_E_ENCODING, "key set 'users' and 'viewers' must be lists")
        return cls(
            admin=decode(data["admin"]),
            users=tuple(decode(k) for k in users),
            viewers=tuple(decode(k) for k in viewers),
        )


def public_keyset_to_dict(keys: KeySet[VerifyKey]) -> Dict[str, Any]:
    return keys.to_dict(lambda k: k.raw_value)


def public_keyset_from_dict(data: Dict[str, Any]) -> KeySet[VerifyKey]:
    return KeySet.from_dict(data, VerifyKey.from_raw_value)


def private_keyset_to_dict(keys: KeySet[SigningKey]) -> Dict[str, Any]:
    return keys.to_dict(lambda k: k.raw_value)


def private_keyset_from_dict(data: Dict[str, Any]) -> KeySet[SigningKey]:
    return KeySet.from_dict(data, SigningKey.from_raw_value)
