#!/usr/bin/env python3
"""
otagate Command Line Interface

Usage:
    otagate keygen --output <file> [--key-id <kid>] [--rotate] [--retire <kid>]
    otagate mint --keys <file> --path <resource path> [--subject <s>] [--ttl <seconds>] [--content-hash <hex>]
    otagate inspect --keys <file> [--path <resource path>] <token>
    otagate hash --file <file>
    otagate serve {gatekeeper,storage} [--host <host>] [--port <port>]
"""

import argparse
import json
import os
import sys
from datetime import datetime, timezone

from .codec import GrantCodec
from .errors import Expired, GrantError, PathMismatch
from .issuer import build_download_url
from .keys import FileKeyProvider, rotate, retire, write_key_ring
from .util import sha256_stream_hex, utc_rfc3339

DEFAULT_PORTS = {"gatekeeper": 3000, "storage": 4000}


def _load_codec(path: str) -> GrantCodec:
    return GrantCodec(FileKeyProvider(path).load_key_ring())


def cmd_keygen(args):
    """Create a key ring, or rotate/retire generations in an existing one."""
    ring = None
    if os.path.exists(args.output):
        if not (args.rotate or args.retire):
            print(f"{args.output} exists; pass --rotate or --retire to modify it", file=sys.stderr)
            return 1
        ring = FileKeyProvider(args.output).load_key_ring()

    if args.retire:
        if ring is None:
            print(f"{args.output} does not exist", file=sys.stderr)
            return 1
        ring = retire(ring, args.retire)
        print(f"Retired key: {args.retire}", file=sys.stderr)
    else:
        kid = args.key_id or f"k{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"
        ring = rotate(ring, kid)
        print(f"Active key: {kid}", file=sys.stderr)

    write_key_ring(ring, args.output)
    print(f"Key ring saved to: {args.output} (generations: {', '.join(ring.kids)})", file=sys.stderr)
    return 0


def cmd_mint(args):
    """Mint a download grant for a resource path."""
    codec = _load_codec(args.keys)
    token, grant = codec.mint(args.path, args.subject, args.ttl, content_hash=args.content_hash)
    if args.base_url:
        print(build_download_url(args.base_url, args.path, token))
    else:
        print(token)
    print(f"Expires: {utc_rfc3339(grant.expires_at)}", file=sys.stderr)
    return 0


def cmd_inspect(args):
    """Decode a token and report whether it would be accepted."""
    codec = _load_codec(args.keys)
    report = {"valid": False}
    try:
        grant = codec.decode(args.token)
        report.update({
            "kid": grant.kid,
            "resourcePath": grant.resource_path,
            "subject": grant.subject,
            "expiresAt": utc_rfc3339(grant.expires_at),
        })
        if grant.content_hash:
            report["contentHash"] = grant.content_hash
        if grant.is_expired(codec.now()):
            raise Expired()
        if args.path is not None and grant.resource_path != args.path:
            raise PathMismatch()
        report["valid"] = True
    except GrantError as e:
        report["reason"] = e.reason.value

    print(json.dumps(report, indent=2))
    return 0 if report["valid"] else 1


def cmd_hash(args):
    """Compute the contentHash of a bundle file."""
    with open(args.file, "rb") as f:
        digest = sha256_stream_hex(iter(lambda: f.read(64 * 1024), b""))
    print(f"sha256: {digest}")
    return 0


def cmd_serve(args):
    """Run the gatekeeper or storage server."""
    import uvicorn

    factory = {
        "gatekeeper": "otagate.gatekeeper:create_gatekeeper_app",
        "storage": "otagate.storage:create_storage_app",
    }[args.service]
    port = args.port or DEFAULT_PORTS[args.service]
    uvicorn.run(factory, factory=True, host=args.host, port=port, log_config=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="otagate",
        description="otagate OTA update gatekeeper CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  otagate keygen -o secrets/grant_keys.json
  otagate keygen -o secrets/grant_keys.json --rotate
  otagate mint -K secrets/grant_keys.json -p android/bundle.js
  otagate inspect -K secrets/grant_keys.json -p android/bundle.js <token>
  otagate hash -f dist/update.zip
  otagate serve storage --port 4000
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Create or rotate the grant key ring")
    keygen_parser.add_argument("-o", "--output", required=True, help="Key ring JSON file")
    keygen_parser.add_argument("-k", "--key-id", help="Identifier of the new key generation")
    keygen_parser.add_argument("--rotate", action="store_true", help="Add a new active generation")
    keygen_parser.add_argument("--retire", metavar="KID", help="Remove a non-active generation")

    mint_parser = subparsers.add_parser("mint", help="Mint a download grant")
    mint_parser.add_argument("-K", "--keys", required=True, help="Key ring JSON file")
    mint_parser.add_argument("-p", "--path", required=True, help="Resource path")
    mint_parser.add_argument("-s", "--subject", default="operator", help="Grant subject")
    mint_parser.add_argument("-t", "--ttl", type=int, default=300, help="Lifetime in seconds")
    mint_parser.add_argument("-b", "--base-url", help="Print a full download URL on this storage server")
    mint_parser.add_argument("-c", "--content-hash", help="Pin the grant to this SHA-256 of the object")

    inspect_parser = subparsers.add_parser("inspect", help="Decode and check a grant")
    inspect_parser.add_argument("-K", "--keys", required=True, help="Key ring JSON file")
    inspect_parser.add_argument("-p", "--path", help="Resource path the grant must match")
    inspect_parser.add_argument("token", help="Grant token")

    hash_parser = subparsers.add_parser("hash", help="Compute a bundle contentHash")
    hash_parser.add_argument("-f", "--file", required=True, help="Bundle file")

    serve_parser = subparsers.add_parser("serve", help="Run a server")
    serve_parser.add_argument("service", choices=sorted(DEFAULT_PORTS))
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "keygen": cmd_keygen,
        "mint": cmd_mint,
        "inspect": cmd_inspect,
        "hash": cmd_hash,
        "serve": cmd_serve,
    }
    if args.command not in commands:
        parser.print_help()
        return 2
    try:
        return commands[args.command](args)
    except (OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
