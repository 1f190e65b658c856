#!/usr/bin/env python3
"""
VaultPass -- Operator command line for the account-security core.

Talks to the same database as the API (DATABASE_URL) without going through
HTTP. Outbound email and location lookups run inline.

Usage:
  python main.py check-password 'correct horse battery staple'
  python main.py check-password --json 'Tr0ub4dor&3'
  python main.py create-user admin@example.com --role admin
  python main.py unlock alice@example.com
  python main.py summary alice@example.com
  python main.py sweep-sessions

Environment variables:
  DATABASE_URL          SQLAlchemy URL (default: sqlite:///vaultpass.db beside this file)
  SECRET_KEY            Required unless DEBUG=true
  REFRESH_SECRET_KEY    Required unless DEBUG=true
"""

import argparse
import getpass
import json
import logging
import sys
from typing import Optional

from audit.store import SecurityEventLog
from auth.models import Principal
from auth.passwords import check_password_strength
from auth.service import AuthService
from auth.store import UserStore
from cache.store import LocationCache
from core.background import TaskDispatcher
from core.config import get_settings
from core.errors import VaultPassError
from core.geolocation import LocationResolver
from core.notifier import build_notifier
from risk.engine import RiskEngine
from sessions.store import SessionRegistry


def _build_service() -> AuthService:
    """Wire the service over the configured database with an inline dispatcher."""
    settings = get_settings()
    dispatcher = TaskDispatcher(inline=True)
    resolver = LocationResolver(
        settings.geo_lookup_url,
        timeout=settings.geo_timeout_seconds,
        cache=LocationCache(ttl=settings.geo_cache_ttl_seconds),
    )
    events = SecurityEventLog(db_url=settings.database_url, resolver=resolver, dispatcher=dispatcher)
    return AuthService.from_settings(
        settings,
        users=UserStore(db_url=settings.database_url),
        sessions=SessionRegistry(db_url=settings.database_url),
        events=events,
        risk=RiskEngine(events, resolver=resolver if resolver.enabled else None),
        notifier=build_notifier(settings),
        dispatcher=dispatcher,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_check_password(args: argparse.Namespace) -> int:
    strength = check_password_strength(args.password)
    if args.json:
        print(json.dumps(strength.to_dict(), indent=2))
        return 0 if not strength.is_weak else 1

    print(f"\n  Strength: {strength.band} ({strength.score}/100)")
    for name, met in strength.requirements.items():
        print(f"    [{'x' if met else ' '}] {name}")
    for line in strength.feedback:
        print(f"  - {line}")
    print()
    return 0 if not strength.is_weak else 1


def cmd_create_user(args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("  Password: ")
    service = _build_service()
    user = service.provision_user(args.email, password, role=args.role, verified=not args.unverified)
    print(f"  Created {user.role} account {user.email} (id {user.id}).")
    return 0


def cmd_unlock(args: argparse.Namespace) -> int:
    user = _build_service().unlock_account(args.email)
    print(f"  Unlocked {user.email}.")
    return 0


def cmd_summary(args: argparse.Namespace) -> int:
    service = _build_service()
    user = service.users.get_by_email(args.email)
    if user is None:
        print(f"  [!] No account for '{args.email}'.")
        return 1
    summary = service.security_summary(Principal(user.id, user.email, user.role))

    print(f"\n  Security summary for {user.email}")
    print("  " + "-" * 40)
    print(f"  Total events:             {summary.total_events}")
    print(f"  Successful logins:        {summary.successful_logins}")
    print(f"  Failed logins:            {summary.failed_logins}")
    print(f"  Suspicious (last 30 days): {summary.suspicious_last_30_days}")
    if summary.recent:
        print("\n  Recent activity:")
    for ev in summary.recent:
        when = ev.created_at.strftime("%Y-%m-%d %H:%M:%S") if ev.created_at else "-"
        print(f"    {when}  {ev.action.value:<20} {ev.status.value:<8} {ev.ip_address}")
    print()
    return 0


def cmd_sweep_sessions(args: argparse.Namespace) -> int:
    count = _build_service().sweep_expired_sessions()
    print(f"  Deactivated {count} expired session(s).")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vaultpass",
        description="Operator tools for the VaultPass account-security service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py check-password 'hunter2'
  python main.py create-user admin@example.com --role admin
  python main.py unlock alice@example.com
  python main.py summary alice@example.com
  python main.py sweep-sessions
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("check-password", help="Score a candidate password (exit 1 if weak)")
    p.add_argument("password")
    p.add_argument("--json", action="store_true", help="Output the breakdown as JSON")
    p.set_defaults(func=cmd_check_password)

    p = sub.add_parser("create-user", help="Provision an account without the email round trip")
    p.add_argument("email")
    p.add_argument("--password", help="Initial password (prompted when omitted)")
    p.add_argument("--role", choices=["user", "moderator", "admin"], default="user")
    p.add_argument("--unverified", action="store_true", help="Leave the email address unverified")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("unlock", help="Clear failed attempts and lockout for an account")
    p.add_argument("email")
    p.set_defaults(func=cmd_unlock)

    p = sub.add_parser("summary", help="Print the security summary for an account")
    p.add_argument("email")
    p.set_defaults(func=cmd_summary)

    p = sub.add_parser("sweep-sessions", help="Deactivate sessions past their expiry")
    p.set_defaults(func=cmd_sweep_sessions)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command is None:
        parser.print_help()
        return 2

    try:
        return args.func(args)
    except VaultPassError as e:
        print(f"  [!] {e.message}")
        if e.detail:
            print(f"      {e.detail}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
