#!/usr/bin/env python3
"""
SalonBook auth -- operator command line.

Usage:
  python main.py seed
  python main.py create-superadmin admin@example.com "Platform Admin"
  python main.py grant ana@example.com studio-ana owner
  python main.py revoke-sessions ana@example.com
  python main.py purge-tokens
  python main.py purge-tokens --retention-days 0

Configuration comes from the environment / .env (see core/config.py);
DATABASE_URL selects the database.
"""

import argparse
import getpass
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict
from auth.models import GlobalRole, SalonRole
from auth.seed import seed_catalog
from auth.sessions import SessionManager
from auth.store import AuthStore
from core.config import get_settings


def _read_password() -> Optional[str]:
    """Prompt twice for a password without echoing it. Returns None on mismatch."""
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    if len(first) < 6:
        print("  [!] Password must be at least 6 characters.")
        return None
    return first


def cmd_seed(store: AuthStore, args: argparse.Namespace) -> int:
    created = seed_catalog(store)
    print(f"  Catalog seeded ({created} new role-permission link(s)).")
    return 0


def cmd_create_superadmin(store: AuthStore, args: argparse.Namespace) -> int:
    password = _read_password()
    if password is None:
        return 1
    sessions = SessionManager(store)
    try:
        result = sessions.register(args.name, args.email, password, global_role=GlobalRole.super_admin.value)
    except Conflict:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    # The bootstrap session is not needed; the operator logs in normally.
    sessions.logout(result.tokens.refresh_token)
    print(f"  Super admin created (id={result.user.id}).")
    return 0


def cmd_grant(store: AuthStore, args: argparse.Namespace) -> int:
    user = store.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    salon = store.get_salon_by_slug(args.salon)
    if salon is None:
        print(f"  [!] No salon with slug '{args.salon}'.")
        return 1
    role = store.get_role_by_name(args.role)
    if role is None:
        print(f"  [!] Role '{args.role}' is not in the catalog. Run `python main.py seed` first.")
        return 1
    try:
        store.assign_role(user.id, salon.id, role.id)
    except IntegrityError as exc:
        print(f"  [!] Could not grant role: {exc.orig}")
        return 1
    print(f"  Granted {role.name} in {salon.slug} to {user.email}.")
    return 0


def cmd_revoke_sessions(store: AuthStore, args: argparse.Namespace) -> int:
    user = store.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    count = SessionManager(store).logout_all(user.id)
    print(f"  Revoked {count} refresh token(s) for {user.email}.")
    return 0


def cmd_purge_tokens(store: AuthStore, args: argparse.Namespace) -> int:
    days = args.retention_days if args.retention_days is not None else get_settings().refresh_token_retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    count = store.purge_refresh_tokens(cutoff)
    print(f"  Purged {count} refresh token(s) expired more than {days} day(s) ago.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="salonbook-auth",
        description="Operator commands for SalonBook identity, sessions, and roles.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py create-superadmin admin@example.com "Platform Admin"
  python main.py grant ana@example.com studio-ana worker
  python main.py revoke-sessions ana@example.com
  DATABASE_URL=postgresql://user:pw@host/db python main.py purge-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("seed", help="Insert missing roles, permissions, and role-permission links")

    p = sub.add_parser("create-superadmin", help="Create a super_admin account (password prompted)")
    p.add_argument("email")
    p.add_argument("name")

    p = sub.add_parser("grant", help="Grant a salon role to a user")
    p.add_argument("email")
    p.add_argument("salon", metavar="SALON_SLUG")
    p.add_argument("role", choices=[r.value for r in SalonRole])

    p = sub.add_parser("revoke-sessions", help="Revoke every refresh token of a user")
    p.add_argument("email")

    p = sub.add_parser("purge-tokens", help="Delete refresh tokens past the retention window")
    p.add_argument(
        "--retention-days",
        type=int,
        default=None,
        metavar="DAYS",
        help="Keep tokens that expired less than DAYS ago (default: REFRESH_TOKEN_RETENTION_DAYS)",
    )

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    handlers = {
        "seed": cmd_seed,
        "create-superadmin": cmd_create_superadmin,
        "grant": cmd_grant,
        "revoke-sessions": cmd_revoke_sessions,
        "purge-tokens": cmd_purge_tokens,
    }
    store = AuthStore(get_settings().database_url)
    try:
        return handlers[args.command](store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
