"""screentime_gateway.client

HTTP client for the screen time service.

Every signed call follows the same steps:

1. sign ``[METHOD] + components`` (raw strings) plus the body;
2. percent-encode each component for the URL path;
3. append the envelope as the query string;
4. dispatch and map any non-200 status to :class:`TransportFailure`.

The client never retries. Connection errors and 5xx responses are flagged
``retryable`` so callers can decide.

Env:
  SCREENTIME_SCHEME: http|https (default https)
  SCREENTIME_HOST: host[:port] of the service
  SCREENTIME_TIMEOUT_SECONDS: optional, float (default 10)
"""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import quote

from .crypto import SigningKey, VerifyKey
from .errors import (
    ST_E_ENCODING,
    ST_E_HTTP_STATUS,
    ST_E_INVALID_RESPONSE,
    ST_E_TRANSPORT,
    st_error,
)
from .keyset import KeySet, KeyType, public_keyset_to_dict
from .models import ScreenTimeData
from .signing import Clock, RequestSigner

logger = logging.getLogger("screentime_gateway")

# URL-fragment-allowed characters, minus the ones that would split a path
# segment ("/") or start the query ("?").
_PATH_SAFE = "!$&'()*+,-.:;=@_~"


def encode_path_component(component: str) -> str:
    """Percent-encode one path component for inclusion in a URL."""
    try:
        return quote(component, safe=_PATH_SAFE)
    except (TypeError, UnicodeEncodeError) as e:
        raise st_error(ST_E_ENCODING, "path component cannot be percent-encoded") from e


@dataclass(frozen=True)
class ClientConfig:
    scheme: str = "https"
    host: str = "localhost"
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "ClientConfig":
        scheme = (os.getenv("SCREENTIME_SCHEME", cls.scheme) or cls.scheme).strip().lower()
        host = (os.getenv("SCREENTIME_HOST", cls.host) or cls.host).strip()
        raw_timeout = (os.getenv("SCREENTIME_TIMEOUT_SECONDS", "") or "").strip()
        timeout = cls.timeout_seconds
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                raise RuntimeError("SCREENTIME_TIMEOUT_SECONDS must be a number (seconds)")
        if scheme not in ("http", "https"):
            raise RuntimeError(f"Unsupported SCREENTIME_SCHEME={scheme!r}; expected http|https")
        return cls(scheme=scheme, host=host, timeout_seconds=timeout)


class ScreenTimeClient:
    """Client for the screen time endpoints."""

    def __init__(self, scheme: str, host: str, timeout_seconds: float = 10.0, *, clock: Clock = time.time):
        self.scheme = scheme
        self.host = host
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    @classmethod
    def from_config(cls, config: ClientConfig) -> "ScreenTimeClient":
        return cls(config.scheme, config.host, timeout_seconds=config.timeout_seconds)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def build_url(self, components: Sequence[str], query: Optional[str] = None) -> str:
        path = "/".join(encode_path_component(c) for c in components)
        url = f"{self.scheme}://{self.host}/{path}"
        if query:
            url += f"?{query}"
        return url

    def _dispatch(self, method: str, url: str, body: Optional[bytes]) -> Optional[bytes]:
        headers = {}
        if body is not None:
            headers["Content-Type"] = "application/octet-stream"
        req = urllib.request.Request(url, data=body, headers=headers, method=method)
        logger.debug("%s %s", method, url.split("?", 1)[0])
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                status = resp.status
                resp_bytes = resp.read()
        except urllib.error.HTTPError as e:
            detail = b""
            try:
                detail = e.read()
            except OSError:
                detail = b""
            logger.warning("%s %s failed with HTTP %s", method, url.split("?", 1)[0], e.code)
            raise st_error(
                ST_E_HTTP_STATUS,
                f"HTTP {e.code}",
                retryable=e.code >= 500,
                http_status=502,
                status=e.code,
                body=detail.decode("utf-8", errors="replace")[:200],
            ) from e
        except (urllib.error.URLError, OSError) as e:
            logger.warning("%s %s failed: %s", method, url.split("?", 1)[0], e)
            raise st_error(
                ST_E_TRANSPORT,
                f"{type(e).__name__}: {e}",
                retryable=True,
                http_status=502,
            ) from e

        if status != 200:
            raise st_error(ST_E_HTTP_STATUS, f"HTTP {status}", http_status=502, status=status)
        return resp_bytes or None

    def send_request(self, method: str, *components: str, body: Optional[bytes] = None) -> Optional[bytes]:
        """Send an unsigned request; returns the response body (None if empty)."""
        url = self.build_url(components)
        return self._dispatch(method, url, body)

    def send_signed_request(
        self,
        method: str,
        *components: str,
        body: Optional[bytes] = None,
        key: SigningKey,
    ) -> Optional[bytes]:
        """Sign ``[method] + components`` with ``key`` and send the request."""
        envelope = RequestSigner(key, clock=self.clock).sign([method, *components], body)
        url = self.build_url(components, envelope.to_query())
        return self._dispatch(method, url, body)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------
    def load_screen_time(self, id: str, year: int, day: int, key: SigningKey) -> ScreenTimeData:
        response = self.send_signed_request("GET", "time", id, str(year), str(day), key=key)
        if response is None:
            raise st_error(ST_E_INVALID_RESPONSE, "empty screen time response", http_status=502)
        return ScreenTimeData.from_json_bytes(response)

    def put_screen_time(self, screen_time: ScreenTimeData, id: str, year: int, day: int, key: SigningKey) -> None:
        body = screen_time.to_json_bytes()
        self.send_signed_request("PUT", "time", id, str(year), str(day), body=body, key=key)

    def upload_keys(self, id: str, keys: KeySet[SigningKey], master: SigningKey) -> None:
        """Upload the public half of ``keys``, signed with the master key."""
        public_keys = keys.map(lambda k: k.public_key)
        body = json.dumps(public_keyset_to_dict(public_keys), separators=(",", ":")).encode("utf-8")
        self.send_signed_request("PUT", "keys", id, body=body, key=master)

    def check_key(self, id: str, key: VerifyKey) -> Optional[KeyType]:
        """Ask which role ``key`` has for ``id``.

        Returns None when the service gave no usable answer, which is distinct
        from ``KeyType.NONE`` (the service does not know the key). The body
        must be exactly one role token; surrounding whitespace is not accepted.
        """
        body = json.dumps(key.raw_value).encode("utf-8")
        response = self.send_request("GET", "key", id, body=body)
        if response is None:
            return None
        try:
            token = response.decode("utf-8")
        except UnicodeDecodeError:
            return None
        return KeyType.parse(token)
