#!/usr/bin/env python3
"""
AccessGate -- administration CLI.

Usage:
  python main.py seed
  python main.py create-admin admin@example.com "Site Admin"
  python main.py create-admin admin@example.com "Site Admin" --password 's3cret!'

Settings come from core/config.py like the API server, so SECRET_KEY must be
set unless --db names the database explicitly. DATABASE_URL selects the store
when --db is omitted.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.seed import DEFAULT_PERMISSIONS, DEFAULT_ROLES, create_admin, seed_roles_and_permissions
from auth.store import AccessStore
from auth.tokens import MAX_PASSWORD_BYTES, password_fits

_MIN_PASSWORD_LENGTH = 6


def _open_store(db_url: Optional[str]) -> AccessStore:
    """Open the store named on the command line, falling back to DATABASE_URL."""
    return AccessStore(db_url)


def _read_password(given: Optional[str]) -> str:
    if given:
        return given
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Confirm password: "):
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return password


def cmd_seed(args: argparse.Namespace) -> None:
    store = _open_store(args.db)
    try:
        seed_roles_and_permissions(store)
    finally:
        store.close()
    print(f"  Seeded roles: {', '.join(DEFAULT_ROLES)}")
    print(f"  Seeded permissions: {', '.join(DEFAULT_PERMISSIONS)} (all granted to admin)")


def cmd_create_admin(args: argparse.Namespace) -> None:
    password = _read_password(args.password)
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        sys.exit(1)
    if not password_fits(password):
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
        sys.exit(1)

    store = _open_store(args.db)
    try:
        identity_id = create_admin(store, args.email, args.name, password)
    finally:
        store.close()
    print(f"  Admin ready: {args.email} (id {identity_id})")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="accessgate",
        description="Bootstrap roles, permissions and administrators for AccessGate.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py create-admin admin@example.com "Site Admin"
  DATABASE_URL=sqlite:////var/lib/accessgate.db python main.py seed
        """,
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (overrides DATABASE_URL)",
    )
    sub = parser.add_subparsers(dest="command")

    seed = sub.add_parser("seed", help="Create the default roles and permissions (idempotent)")
    seed.set_defaults(func=cmd_seed)

    admin = sub.add_parser("create-admin", help="Create a verified identity holding the admin role")
    admin.add_argument("email", help="Login email of the administrator")
    admin.add_argument("name", help="Display name")
    admin.add_argument(
        "--password",
        default=None,
        help="Password (prompted for when omitted)",
    )
    admin.set_defaults(func=cmd_create_admin)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
