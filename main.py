#!/usr/bin/env python3
"""
keygate -- operator commands for the authentication service.

Usage:
  python main.py keygen
  python main.py purge

Environment variables are read through core.config (SECRET_KEY, DATABASE_URL,
ENCRYPTION_KEY, ...). Run the HTTP API with `uvicorn asgi:app`.
"""

import argparse
from typing import Optional

from auth.cipher import SecretCipher, generate_key
from auth.store import UserStore
from core.config import get_settings


def _cmd_keygen(args: argparse.Namespace) -> int:
    print(generate_key())
    return 0


def _cmd_purge(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = UserStore(settings.database_url, cipher=SecretCipher.from_settings(settings))
    try:
        removed = store.purge_expired()
    finally:
        store.close()
    print(f"  Purged {removed} expired record(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="keygate",
        description="Operator commands for the keygate authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py keygen                  # new ENCRYPTION_KEY value
  python main.py purge                   # delete expired refresh tokens and codes
  DATABASE_URL=sqlite:///auth.db python main.py purge
        """,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    keygen = subparsers.add_parser(
        "keygen",
        help="Print a fresh 256-bit key (64 hex characters) for ENCRYPTION_KEY",
    )
    keygen.set_defaults(func=_cmd_keygen)
    purge = subparsers.add_parser(
        "purge",
        help="Delete expired refresh tokens and authorization codes",
    )
    purge.set_defaults(func=_cmd_purge)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
