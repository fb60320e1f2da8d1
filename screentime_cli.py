#!/usr/bin/env python3
"""
Screen Time - Command Line Interface

Usage:
    screentime keygen [--out FILE]                 Generate a signing key
    screentime pubkey --key-file FILE              Print the public key of a signing key
    screentime sign --key-file FILE METHOD COMPONENT...
                                                   Sign a logical request, print the envelope
    screentime verify --public-key KEY --timestamp TS --signature SIG METHOD COMPONENT...
                                                   Verify an envelope against public keys
    screentime get ID YEAR DAY --key-file FILE     Load screen time
    screentime put ID YEAR DAY --available N --used N --key-file FILE
                                                   Store screen time
    screentime upload-keys ID --keyset FILE        Upload the public half of a key registry
    screentime check-key ID PUBLIC_KEY             Ask which role a public key has

Keys are base-64 raw Ed25519 seeds. When --key-file is not given, the key is
read from SCREENTIME_SIGNING_KEY; the master key for upload-keys comes from
--master-key-file or SCREENTIME_MASTER_KEY. The service is addressed with
SCREENTIME_SCHEME / SCREENTIME_HOST unless --scheme / --host are given.
"""

import argparse
import json
import logging
import sys
from typing import Optional

from screentime_gateway.client import ClientConfig, ScreenTimeClient
from screentime_gateway.crypto import (
    SigningKey,
    VerifyKey,
    generate_key_file,
    load_signing_key,
)
from screentime_gateway.envelope import SignatureData
from screentime_gateway.errors import ScreenTimeError
from screentime_gateway.keyset import private_keyset_from_dict
from screentime_gateway.models import ScreenTimeData
from screentime_gateway.signing import VerificationResult, sign_request, verify_signature

logger = logging.getLogger("screentime_gateway")

ENV_SIGNING_KEY = "SCREENTIME_SIGNING_KEY"
ENV_MASTER_KEY = "SCREENTIME_MASTER_KEY"


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def _require_key(env_var: str, file_path: Optional[str]) -> SigningKey:
    key = load_signing_key(env_var, file_path)
    if key is None:
        where = file_path or env_var
        raise SystemExit(f"error: no signing key found ({where})")
    return key


def _read_body(path: Optional[str]) -> Optional[bytes]:
    if not path:
        return None
    with open(path, "rb") as f:
        return f.read()


def _client(args) -> ScreenTimeClient:
    config = ClientConfig.from_env()
    return ScreenTimeClient(
        args.scheme or config.scheme,
        args.host or config.host,
        timeout_seconds=config.timeout_seconds,
    )


def cmd_keygen(args) -> int:
    """Generate a signing key."""
    if args.out:
        key = generate_key_file(args.out)
        print(key.public_key.raw_value)
    else:
        key = SigningKey.generate()
        print(json.dumps({"private": key.raw_value, "public": key.public_key.raw_value}, indent=2))
    return 0


def cmd_pubkey(args) -> int:
    key = _require_key(ENV_SIGNING_KEY, args.key_file)
    print(key.public_key.raw_value)
    return 0


def cmd_sign(args) -> int:
    """Sign ``METHOD COMPONENT...`` and print the envelope."""
    key = _require_key(ENV_SIGNING_KEY, args.key_file)
    envelope = sign_request([args.method, *args.components], _read_body(args.body_file), key)
    out = envelope.to_dict()
    out["query"] = envelope.to_query()
    print(json.dumps(out, indent=2))
    return 0


def cmd_verify(args) -> int:
    """Verify an envelope; exit 0 only when valid."""
    keys = [VerifyKey.from_raw_value(k) for k in args.public_key]
    envelope = SignatureData.from_dict({"timestamp": args.timestamp, "signature": args.signature})
    result = verify_signature([args.method, *args.components], _read_body(args.body_file), envelope, keys)
    print(result.value)
    return 0 if result is VerificationResult.VALID else 1


def cmd_get(args) -> int:
    key = _require_key(ENV_SIGNING_KEY, args.key_file)
    data = _client(args).load_screen_time(args.id, args.year, args.day, key)
    print(json.dumps(data.to_dict()))
    return 0


def cmd_put(args) -> int:
    key = _require_key(ENV_SIGNING_KEY, args.key_file)
    data = ScreenTimeData(available=args.available, used=args.used)
    _client(args).put_screen_time(data, args.id, args.year, args.day, key)
    print("OK")
    return 0


def cmd_upload_keys(args) -> int:
    """Upload the public half of a private key registry file."""
    master = _require_key(ENV_MASTER_KEY, args.master_key_file)
    with open(args.keyset, "r", encoding="utf-8") as f:
        keys = private_keyset_from_dict(json.load(f))
    _client(args).upload_keys(args.id, keys, master)
    print("OK")
    return 0


def cmd_check_key(args) -> int:
    role = _client(args).check_key(args.id, VerifyKey.from_raw_value(args.public_key))
    if role is None:
        print("unknown")
        return 1
    print(role.value)
    return 0


def _add_client_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--scheme", choices=["http", "https"], help="URL scheme (default: SCREENTIME_SCHEME or https)")
    p.add_argument("--host", help="Service host[:port] (default: SCREENTIME_HOST)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="screentime",
        description="Screen Time CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Generate a signing key")
    keygen_parser.add_argument("--out", help="Write the key to this file (0600) and print its public key")
    keygen_parser.set_defaults(func=cmd_keygen)

    pubkey_parser = subparsers.add_parser("pubkey", help="Print the public key of a signing key")
    pubkey_parser.add_argument("--key-file", help="Signing key file")
    pubkey_parser.set_defaults(func=cmd_pubkey)

    sign_parser = subparsers.add_parser("sign", help="Sign a logical request")
    sign_parser.add_argument("--key-file", help="Signing key file")
    sign_parser.add_argument("--body-file", help="File holding the request body")
    sign_parser.add_argument("method", help="HTTP method (component 0)")
    sign_parser.add_argument("components", nargs="*", help="Raw path components")
    sign_parser.set_defaults(func=cmd_sign)

    verify_parser = subparsers.add_parser("verify", help="Verify a signed request")
    verify_parser.add_argument("--public-key", action="append", required=True, help="Candidate public key (repeatable)")
    verify_parser.add_argument("--timestamp", required=True, help="Envelope timestamp")
    verify_parser.add_argument("--signature", required=True, help="Envelope signature (base64)")
    verify_parser.add_argument("--body-file", help="File holding the request body")
    verify_parser.add_argument("method", help="HTTP method (component 0)")
    verify_parser.add_argument("components", nargs="*", help="Raw path components")
    verify_parser.set_defaults(func=cmd_verify)

    get_parser = subparsers.add_parser("get", help="Load screen time")
    get_parser.add_argument("id")
    get_parser.add_argument("year", type=int)
    get_parser.add_argument("day", type=int)
    get_parser.add_argument("--key-file", help="Signing key file")
    _add_client_args(get_parser)
    get_parser.set_defaults(func=cmd_get)

    put_parser = subparsers.add_parser("put", help="Store screen time")
    put_parser.add_argument("id")
    put_parser.add_argument("year", type=int)
    put_parser.add_argument("day", type=int)
    put_parser.add_argument("--available", type=int, default=0)
    put_parser.add_argument("--used", type=int, default=0)
    put_parser.add_argument("--key-file", help="Signing key file")
    _add_client_args(put_parser)
    put_parser.set_defaults(func=cmd_put)

    upload_parser = subparsers.add_parser("upload-keys", help="Upload a key registry")
    upload_parser.add_argument("id")
    upload_parser.add_argument("--keyset", required=True, help="Private key registry JSON {admin, users, viewers}")
    upload_parser.add_argument("--master-key-file", help="Master signing key file")
    _add_client_args(upload_parser)
    upload_parser.set_defaults(func=cmd_upload_keys)

    check_parser = subparsers.add_parser("check-key", help="Ask which role a public key has")
    check_parser.add_argument("id")
    check_parser.add_argument("public_key", help="Base-64 public key")
    _add_client_args(check_parser)
    check_parser.set_defaults(func=cmd_check_key)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except ScreenTimeError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
