#!/usr/bin/env python3
"""
SessionKeeper -- operator CLI for the session lifecycle engine.

Works directly against the configured database (DATABASE_URL), so it can be
run next to a live API process or from a cron job.

Usage:
  python main.py sweep
  python main.py unlock alice
  python main.py revoke-all 42
  python main.py create-user alice alice@example.com --role ROLE_ADMIN

Environment variables:
  DATABASE_URL  SQLAlchemy URL. Defaults to sessionkeeper.db next to the code.
  SECRET_KEY    Required unless DEBUG=true (see core/config.py).
"""

import argparse
import getpass
import logging
import sys
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.maintenance import run_sweeps
from auth.models import Principal
from auth.service import AuthService, build_service
from auth.store import DEFAULT_ROLE, UserStore
from auth.tokens import hash_password
from core.config import get_settings
from core.db import make_engine, release


def _cmd_sweep(service: AuthService, args: argparse.Namespace) -> int:
    settings = get_settings()
    report = run_sweeps(
        service.refresh_tokens,
        lockout=service.lockout,
        retention=timedelta(days=settings.revoked_token_retention_days),
    )
    print(f"  Expired refresh tokens removed:  {report.expired_refresh_tokens}")
    print(f"  Old revoked refresh tokens removed: {report.revoked_refresh_tokens}")
    print(f"  Stale lockout records removed:   {report.lockout_records}")
    return 0


def _cmd_unlock(service: AuthService, args: argparse.Namespace) -> int:
    if service.lockout.unlock(args.username):
        print(f"  Lockout cleared for '{args.username}'.")
        return 0
    print(f"  [!] No lockout record for '{args.username}'.")
    return 1


def _cmd_revoke_all(service: AuthService, args: argparse.Namespace) -> int:
    revoked = service.logout_all(args.user_id)
    print(f"  Revoked {revoked} refresh token(s) for user {args.user_id}.")
    return 0


def _cmd_create_user(service: AuthService, args: argparse.Namespace) -> int:
    users: UserStore = service.users
    password: Optional[str] = args.password
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Repeat password: "):
            print("  [!] Passwords do not match.")
            return 1
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1

    principal = Principal(
        username=args.username,
        email=args.email,
        roles=args.role or [DEFAULT_ROLE],
        hashed_password=hash_password(password),
    )
    try:
        user_id = users.create_user(principal)
    except IntegrityError:
        print(f"  [!] Username '{args.username}' or email '{args.email}' is already in use.")
        return 1
    print(f"  Created user '{args.username}' (id={user_id}, roles={', '.join(sorted(principal.roles))}).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sessionkeeper",
        description="Maintenance and account operations for SessionKeeper.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sweep
  python main.py unlock alice
  python main.py revoke-all 42
  python main.py create-user alice alice@example.com --role ROLE_USER --role ROLE_ADMIN
  DATABASE_URL=postgresql://... python main.py sweep
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        help="Override DATABASE_URL for this invocation",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sweep", help="Delete expired/old revoked refresh tokens and stale lockout records")
    p.set_defaults(func=_cmd_sweep)

    p = sub.add_parser("unlock", help="Clear the failed-login counter and lock for a username")
    p.add_argument("username")
    p.set_defaults(func=_cmd_unlock)

    p = sub.add_parser("revoke-all", help="Revoke every refresh token of a user (logout everywhere)")
    p.add_argument("user_id", type=int)
    p.set_defaults(func=_cmd_revoke_all)

    p = sub.add_parser("create-user", help="Create a user without going through self-registration")
    p.add_argument("username")
    p.add_argument("email")
    p.add_argument(
        "--role",
        action="append",
        metavar="ROLE",
        help=f"Role to grant; repeat for several (default: {DEFAULT_ROLE})",
    )
    p.add_argument(
        "--password",
        help="Password (prompted for when omitted; avoid passing it on the command line)",
    )
    p.set_defaults(func=_cmd_create_user)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    engine = make_engine(args.database_url or settings.database_url)
    try:
        service = build_service(settings, engine=engine)
        return args.func(service, args)
    finally:
        release(engine)


if __name__ == "__main__":
    sys.exit(main())
