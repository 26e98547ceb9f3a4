#!/usr/bin/env python3
"""
authcore -- administration CLI.

Operates directly on the configured database (DATABASE_URL), without going
through the HTTP API. Useful for bootstrapping the first admin account and for
cron-driven cleanup.

Usage:
  python main.py create-user admin@example.com --role admin
  python main.py grant-role alice@example.com editor
  python main.py revoke-role alice@example.com editor
  python main.py set-active alice@example.com --inactive
  python main.py revoke-sessions alice@example.com
  python main.py sweep

Environment variables:
  DATABASE_URL  SQLAlchemy URL (default: SQLite file next to core/database.py)
  JWT_SECRET    Required unless DEBUG=true (Settings validation runs here too)
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import AuthError
from auth.models import User
from auth.passwords import MAX_PASSWORD_BYTES, PasswordHasher
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import get_settings
from core.database import create_db_engine


def _read_password(provided: Optional[str]) -> str:
    """Use --password when given, otherwise prompt twice without echo."""
    if provided is not None:
        return provided
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def _require_user(users: UserStore, email: str) -> User:
    user = users.get_by_email(email)
    if user is None:
        print(f"  [!] No user with email '{email}'.")
        sys.exit(1)
    return user


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authcore",
        description="Administer authcore accounts and sessions.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create an account (verified, active)")
    create.add_argument("email")
    create.add_argument("--password", default=None, help="Read from a prompt when omitted")
    create.add_argument("--role", action="append", default=[], help="Extra role; repeatable")
    create.add_argument("--first-name", default=None)
    create.add_argument("--last-name", default=None)

    grant = sub.add_parser("grant-role", help="Add a role to an account")
    grant.add_argument("email")
    grant.add_argument("role")

    revoke = sub.add_parser("revoke-role", help="Remove a role from an account")
    revoke.add_argument("email")
    revoke.add_argument("role")

    active = sub.add_parser("set-active", help="Activate or deactivate an account")
    active.add_argument("email")
    active.add_argument("--inactive", action="store_true", help="Deactivate instead of activate")

    sessions = sub.add_parser("revoke-sessions", help="Revoke every refresh token of an account")
    sessions.add_argument("email")

    sub.add_parser("sweep", help="Delete used/expired reset tokens and expired refresh tokens")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    engine = create_db_engine(settings.database_url, timeout=settings.db_timeout)
    hasher = PasswordHasher(cost=settings.password_hash_cost)
    users = UserStore(engine)
    sessions = SessionStore(engine, hasher)

    try:
        if args.command == "create-user":
            password = _read_password(args.password)
            if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
                print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes")
                return 1
            violations = hasher.validate_strength(password)
            if violations:
                for v in violations:
                    print(f"  [!] {v.message}")
                return 1
            roles = [settings.default_user_role, *[r.strip().lower() for r in args.role]]
            user = users.create_user(
                User(
                    email=args.email,
                    password_hash=hasher.hash(password),
                    first_name=args.first_name,
                    last_name=args.last_name,
                    roles=roles,
                )
            )
            users.mark_email_verified(user.id)
            print(f"Created user {user.id} <{user.email}> roles={','.join(sorted(set(roles)))}")

        elif args.command == "grant-role":
            user = _require_user(users, args.email)
            added = users.add_role(user.id, args.role)
            print(f"Granted '{args.role}' to {user.email}" if added else f"{user.email} already has '{args.role}'")

        elif args.command == "revoke-role":
            user = _require_user(users, args.email)
            removed = users.remove_role(user.id, args.role)
            print(f"Revoked '{args.role}' from {user.email}" if removed else f"{user.email} did not have '{args.role}'")

        elif args.command == "set-active":
            user = _require_user(users, args.email)
            users.set_active(user.id, not args.inactive)
            print(f"{user.email} is now {'inactive' if args.inactive else 'active'}")

        elif args.command == "revoke-sessions":
            user = _require_user(users, args.email)
            count = sessions.revoke_all_for_user(user.id)
            print(f"Revoked {count} session(s) for {user.email}")

        elif args.command == "sweep":
            resets = sessions.sweep_expired_reset_tokens()
            refresh = sessions.sweep_expired_refresh_tokens()
            print(f"Removed {resets} reset token(s) and {refresh} refresh token(s)")

    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
