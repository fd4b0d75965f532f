"""Command line entry point: run the server or mint/inspect opaque links."""

import argparse
import sys
from typing import Optional, Sequence

from pydantic import ValidationError

from hlsproxy import token_codec
from hlsproxy.config import settings
from hlsproxy.exceptions import InvalidKeyLength, TokenError
from hlsproxy.link_builder import OPAQUE_ROUTE


def _key_from_args(args: argparse.Namespace) -> bytes:
    key = args.key or settings.secret_key
    if not key:
        raise SystemExit("error: no secret key (set SECRET_KEY or pass --key)")
    return key.encode("utf-8")


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "hlsproxy.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level,
    )
    return 0


def cmd_encrypt(args: argparse.Namespace) -> int:
    key = _key_from_args(args)
    try:
        token = token_codec.encode_payload(args.url, args.referer, key)
    except InvalidKeyLength:
        print(f"error: secret key must be {token_codec.KEY_SIZE} bytes", file=sys.stderr)
        return 2
    except ValidationError:
        print("error: --url must be an absolute http(s) URL", file=sys.stderr)
        return 2
    print(f"{args.base_url.rstrip('/')}{OPAQUE_ROUTE}/{token}")
    return 0


def cmd_decrypt(args: argparse.Namespace) -> int:
    key = _key_from_args(args)
    token = args.token.rsplit(f"{OPAQUE_ROUTE}/", 1)[-1]
    try:
        payload = token_codec.decode_payload(token, key)
    except InvalidKeyLength:
        print(f"error: secret key must be {token_codec.KEY_SIZE} bytes", file=sys.stderr)
        return 2
    except TokenError as e:
        print(f"error: {type(e).__name__}: {e.detail}", file=sys.stderr)
        return 1
    print(payload.model_dump_json(indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hlsproxy", description="HLS Referer Proxy")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the proxy server")
    serve.add_argument("--host", type=str, default=None, help=f"Host to bind to (default: {settings.host})")
    serve.add_argument("--port", type=int, default=None, help=f"Port to listen on (default: {settings.port})")
    serve.set_defaults(func=cmd_serve)

    encrypt = subparsers.add_parser("encrypt", help="Print an opaque /video link for a URL")
    encrypt.add_argument("--url", required=True, help="Upstream URL to hide")
    encrypt.add_argument("--referer", default="", help="Referer the origin expects")
    encrypt.add_argument("--base-url", default="", help="Public base URL of the proxy")
    encrypt.add_argument("--key", default=None, help="32-byte secret key (default: SECRET_KEY)")
    encrypt.set_defaults(func=cmd_encrypt)

    decrypt = subparsers.add_parser("decrypt", help="Show the payload of an opaque link or token")
    decrypt.add_argument("token", help="Token or full /video/... link")
    decrypt.add_argument("--key", default=None, help="32-byte secret key (default: SECRET_KEY)")
    decrypt.set_defaults(func=cmd_decrypt)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
