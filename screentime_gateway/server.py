"""
Screen Time Gateway Server

FastAPI service that stores per-id key registries and screen time values and
authorizes every request by its signature.

Security Properties:
- No sessions, cookies or bearer tokens: each request carries its own
  Ed25519 signature over method, path segments, timestamp and body
- Envelopes older than 2 seconds (or from the future) are rejected
- The role of the signing key (admin/user/viewer) decides what it may do
- Key registries are replaced only by a master key or the current admin

Endpoints:
    PUT /keys/{id}                  upload a public key registry (master or admin)
    GET /time/{id}/{year}/{day}     read screen time (admin, user, viewer)
    PUT /time/{id}/{year}/{day}     write screen time (admin, user)
    GET /key/{id}                   unsigned probe: role of the key in the body
    GET /v1/health, GET /v1/stats
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote_to_bytes

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

from .auth import AuthContext, MasterKeyAuth, authenticate, parse_envelope, require
from .crypto import VerifyKey
from .errors import (
    ST_E_BAD_REQUEST,
    ST_E_ENCODING,
    ST_E_REQUEST_TOO_LARGE,
    ST_E_UNKNOWN_ID,
    ScreenTimeError,
    st_error,
)
from .keyset import KeySet, KeyType, public_keyset_from_dict
from .metrics import instrument_fastapi, record_verification
from .models import ScreenTimeData
from .ops_stats import OPS_STATS
from .signing import Clock

logger = logging.getLogger("screentime_gateway")

READ_ROLES = (KeyType.ADMIN, KeyType.USER, KeyType.VIEWER)
WRITE_ROLES = (KeyType.ADMIN, KeyType.USER)


@dataclass(frozen=True)
class GatewayConfig:
    max_request_bytes: int = 65536
    stats_token: str = ""

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        raw = (os.getenv("SCREENTIME_MAX_REQUEST_BYTES", "") or "").strip()
        max_bytes = cls.max_request_bytes
        if raw:
            try:
                max_bytes = int(raw)
            except ValueError:
                logger.warning("Invalid SCREENTIME_MAX_REQUEST_BYTES=%r; using %d", raw, max_bytes)
        max_bytes = max(1024, min(max_bytes, 16 * 1024 * 1024))
        stats_token = (os.getenv("SCREENTIME_STATS_TOKEN", "") or "").strip()
        return cls(max_request_bytes=max_bytes, stats_token=stats_token)


class ScreenTimeStore:
    """In-memory store for key registries and screen time values.

    Registries are immutable values; replacing one is a single assignment.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._registries: Dict[str, KeySet[VerifyKey]] = {}
        self._screen_time: Dict[Tuple[str, int, int], ScreenTimeData] = {}

    def get_registry(self, id: str) -> Optional[KeySet[VerifyKey]]:
        with self._lock:
            return self._registries.get(id)

    def put_registry(self, id: str, registry: KeySet[VerifyKey]) -> None:
        with self._lock:
            self._registries[id] = registry

    def get_screen_time(self, id: str, year: int, day: int) -> ScreenTimeData:
        with self._lock:
            return self._screen_time.get((id, year, day), ScreenTimeData())

    def put_screen_time(self, id: str, year: int, day: int, data: ScreenTimeData) -> None:
        with self._lock:
            self._screen_time[(id, year, day)] = data


def _parse_int(label: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise st_error(ST_E_BAD_REQUEST, f"{label} must be an integer", got=value[:32])


def _path_components(request: Request, endpoint: str, count: int) -> List[str]:
    """Path segments after ``/<endpoint>/``, split before percent-decoding.

    The routed path is already decoded, so an encoded "/" inside an id would
    look like a segment boundary there. The raw path keeps it escaped.
    """
    raw = request.scope.get("raw_path") or request.scope["path"].encode("utf-8")
    raw = raw.split(b"?", 1)[0]
    root = (request.scope.get("root_path") or "").encode("utf-8")
    if root and raw.startswith(root):
        raw = raw[len(root):]
    segments = raw.lstrip(b"/").split(b"/")
    if segments[0] != endpoint.encode("ascii") or len(segments) != count + 1:
        raise st_error(ST_E_BAD_REQUEST, f"expected {count} path segment(s) after /{endpoint}/", http_status=404)
    try:
        return [unquote_to_bytes(s).decode("utf-8") for s in segments[1:]]
    except UnicodeDecodeError as e:
        raise st_error(ST_E_ENCODING, "path segment is not valid UTF-8") from e


def _parse_json(body: bytes, what: str):
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise st_error(ST_E_ENCODING, f"{what} is not valid JSON") from e


class ScreenTimeGateway:
    """Authorization and storage logic behind the HTTP endpoints."""

    def __init__(
        self,
        store: Optional[ScreenTimeStore] = None,
        master: Optional[MasterKeyAuth] = None,
        *,
        clock: Clock = time.time,
    ):
        self.store = store or ScreenTimeStore()
        self.master = master or MasterKeyAuth()
        self.clock = clock

    def _authenticate(
        self,
        components: Sequence[str],
        body: bytes,
        query: str,
        registry: Optional[KeySet[VerifyKey]],
        *,
        use_master: bool = False,
    ) -> AuthContext:
        envelope = parse_envelope(query)
        ctx = authenticate(
            components,
            body,
            envelope,
            registry,
            master_keys=self.master.keys if use_master else (),
            clock=self.clock,
        )
        role = "master" if ctx.master else ctx.role.value
        OPS_STATS.record_verification(ctx.result.value, role)
        record_verification(ctx.result.value, role)
        logger.debug("%s verification: %s (%s)", components[0], ctx.result.value, role)
        return ctx

    def _registry_or_404(self, id: str) -> KeySet[VerifyKey]:
        registry = self.store.get_registry(id)
        if registry is None:
            raise st_error(ST_E_UNKNOWN_ID, "no key registry for id", http_status=404)
        return registry

    def upload_keys(self, id: str, body: bytes, query: str) -> None:
        registry = self.store.get_registry(id)
        ctx = self._authenticate(["PUT", "keys", id], body, query, registry, use_master=True)
        require(ctx, (KeyType.ADMIN,), allow_master=True)
        new_registry = public_keyset_from_dict(_parse_json(body, "key registry"))
        self.store.put_registry(id, new_registry)
        OPS_STATS.record_keyset_upload()
        logger.info(
            "Key registry replaced for id (users=%d, viewers=%d, by=%s)",
            len(new_registry.users),
            len(new_registry.viewers),
            "master" if ctx.master else ctx.role.value,
        )

    def load_screen_time(self, id: str, year: str, day: str, body: bytes, query: str) -> ScreenTimeData:
        registry = self._registry_or_404(id)
        ctx = self._authenticate(["GET", "time", id, year, day], body, query, registry)
        require(ctx, READ_ROLES)
        return self.store.get_screen_time(id, _parse_int("year", year), _parse_int("day", day))

    def put_screen_time(self, id: str, year: str, day: str, body: bytes, query: str) -> None:
        registry = self._registry_or_404(id)
        ctx = self._authenticate(["PUT", "time", id, year, day], body, query, registry)
        require(ctx, WRITE_ROLES)
        data = ScreenTimeData.from_json_bytes(body)
        self.store.put_screen_time(id, _parse_int("year", year), _parse_int("day", day), data)

    def check_key(self, id: str, body: bytes) -> KeyType:
        """Role of the public key in ``body`` (a JSON string) for ``id``."""
        raw_value = _parse_json(body, "public key")
        if not isinstance(raw_value, str):
            raise st_error(ST_E_ENCODING, "public key must be a JSON string")
        key = VerifyKey.from_raw_value(raw_value)
        registry = self.store.get_registry(id)
        if registry is None:
            return KeyType.NONE
        for role, keys in registry.roles():
            if key in keys:
                return role
        return KeyType.NONE


class HealthResponse(BaseModel):
    status: str
    version: str


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(gateway: Optional[ScreenTimeGateway] = None, config: Optional[GatewayConfig] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as st_version

    config = config or GatewayConfig.from_env()
    if gateway is None:
        master = MasterKeyAuth.load_from_env()
        if master.config_error:
            logger.warning("Key uploads for new ids are disabled: %s", master.config_error)
        elif not master.enabled():
            logger.warning("No master public keys configured; only existing admins can replace registries")
        gateway = ScreenTimeGateway(master=master)

    app = FastAPI(
        title="Screen Time Gateway",
        description="Signed-request screen time service",
        version=st_version,
    )

    @app.exception_handler(ScreenTimeError)
    async def _st_error_handler(request: Request, exc: ScreenTimeError):
        OPS_STATS.record_rejection(exc.code)
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.code)
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    def _authorize_stats(req: Request) -> bool:
        if not config.stats_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == config.stats_token:
            return True
        return (req.headers.get("X-Stats-Token") or "").strip() == config.stats_token

    instrument_fastapi(app, authorize=_authorize_stats)

    # Request body size limit (checks Content-Length).
    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > config.max_request_bytes
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
            if too_large:
                err = st_error(ST_E_REQUEST_TOO_LARGE, "request body too large", http_status=413)
                return JSONResponse(status_code=413, content=err.as_dict())
        return await call_next(req)

    # Routes match on the decoded path; handlers re-split the raw path so an
    # escaped "/" stays inside its segment.
    @app.put("/keys/{rest:path}")
    async def upload_keys(rest: str, request: Request):
        OPS_STATS.record_request("upload_keys")
        (id,) = _path_components(request, "keys", 1)
        body = await request.body()
        gateway.upload_keys(id, body, request.url.query)
        return Response(status_code=200)

    @app.get("/time/{rest:path}")
    async def load_screen_time(rest: str, request: Request):
        OPS_STATS.record_request("load_screen_time")
        id, year, day = _path_components(request, "time", 3)
        body = await request.body()
        data = gateway.load_screen_time(id, year, day, body, request.url.query)
        return Response(content=data.to_json_bytes(), media_type="application/json")

    @app.put("/time/{rest:path}")
    async def put_screen_time(rest: str, request: Request):
        OPS_STATS.record_request("put_screen_time")
        id, year, day = _path_components(request, "time", 3)
        body = await request.body()
        gateway.put_screen_time(id, year, day, body, request.url.query)
        return Response(status_code=200)

    @app.get("/key/{rest:path}")
    async def check_key(rest: str, request: Request):
        OPS_STATS.record_request("check_key")
        (id,) = _path_components(request, "key", 1)
        body = await request.body()
        role = gateway.check_key(id, body)
        return PlainTextResponse(role.value)

    @app.get("/v1/stats")
    async def stats(request: Request):
        if not _authorize_stats(request):
            return JSONResponse(status_code=401, content={"detail": "STATS_UNAUTHORIZED"})
        return OPS_STATS.snapshot(extra={"master_keys_configured": gateway.master.enabled()})

    @app.get("/v1/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(status="healthy", version=st_version)

    return app


def main():
    """
    Main entry point for the screentime-gateway command.

    Usage:
        screentime-gateway                    # Start on default port 8000
        screentime-gateway --port 9000        # Start on custom port
        screentime-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="Screen Time Gateway - signed-request screen time service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    SCREENTIME_MASTER_PUBLIC_KEYS       Comma-separated base64 master public keys
    SCREENTIME_MASTER_PUBLIC_KEYS_FILE  JSON list of base64 master public keys
    SCREENTIME_MAX_REQUEST_BYTES        Request body limit (default: 65536)
    SCREENTIME_STATS_TOKEN              Token required for /v1/stats and /metrics
    SCREENTIME_METRICS_ENABLED          Set to 0 to disable /metrics
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="info", help="Log level (default: info)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.info("Starting Screen Time Gateway on %s:%d", args.host, args.port)

    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
