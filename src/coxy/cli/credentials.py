"""CLI to manage the stored OAuth access token used for signed origin requests."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from ..image_proxy.auth import AccessToken, CredentialStore

DEFAULT_PATH = "./coxy-credentials.json"


def _mask(secret: str) -> str:
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]


def save_command(store: CredentialStore, args: argparse.Namespace) -> int:
    store.save(AccessToken(token=args.token, token_secret=args.token_secret))
    print(f"Saved access token to {store.path}")
    return 0


def show_command(store: CredentialStore, args: argparse.Namespace) -> int:
    token = store.load()
    if token is None:
        print(f"No access token stored at {store.path}", file=sys.stderr)
        return 1
    if args.json:
        print(
            json.dumps(
                {
                    "path": str(store.path),
                    "token": token.token,
                    "token_secret": _mask(token.token_secret),
                    "obtained_at": token.obtained_at.isoformat(),
                },
                indent=2,
            )
        )
    else:
        print(f"Path: {store.path}")
        print(f"Token: {token.token}")
        print(f"Token Secret: {_mask(token.token_secret)}")
        print(f"Obtained At: {token.obtained_at.isoformat()}")
    return 0


def delete_command(store: CredentialStore, args: argparse.Namespace) -> int:
    if store.delete():
        print(f"Deleted {store.path}")
        return 0
    print(f"No access token stored at {store.path}", file=sys.stderr)
    return 1


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the image proxy's stored origin access token")
    parser.add_argument(
        "--path",
        default=os.environ.get("COXY_CREDENTIALS_PATH", DEFAULT_PATH),
        help=f"Credential file (default: $COXY_CREDENTIALS_PATH or {DEFAULT_PATH})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    save_parser = subparsers.add_parser("save", help="Store a pre-negotiated access token")
    save_parser.add_argument("--token", required=True, help="OAuth access token")
    save_parser.add_argument("--token-secret", required=True, help="OAuth access token secret")

    show_parser = subparsers.add_parser("show", help="Print the stored access token")
    show_parser.add_argument("--json", action="store_true", help="Output JSON instead of plain text")

    subparsers.add_parser("delete", help="Remove the stored access token")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    store = CredentialStore(Path(args.path))
    if args.command == "save":
        return save_command(store, args)
    if args.command == "show":
        return show_command(store, args)
    if args.command == "delete":
        return delete_command(store, args)
    raise ValueError(f"unknown command {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
