#!/usr/bin/env python3
"""
AuthGate admin CLI -- inspect and repair authentication state without the API.

Usage:
  python main.py stats --email alice@example.com
  python main.py unblock --email alice@example.com
  python main.py unblock --email alice@example.com --client 203.0.113.7
  python main.py purge
  python main.py create-user --username alice --email alice@example.com

Environment variables:
  DATABASE_URL  Same value the API uses. Empty means the default sqlite files.
  SECRET_KEY    Required unless DEBUG=true (the token module validates it on import).
"""

import argparse
import getpass
import sys

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from api.models import RegisterRequest
from auth.maintenance import purge_expired
from auth.models import Account
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import get_settings
from ratelimit.models import Purpose
from ratelimit.store import RateLimitStore


def _open_stores() -> tuple[AccountStore, RateLimitStore]:
    url = get_settings().database_url
    if url:
        return AccountStore(url), RateLimitStore(url)
    return AccountStore(), RateLimitStore()


def cmd_stats(args: argparse.Namespace, accounts: AccountStore, rates: RateLimitStore) -> int:
    email = args.email.strip().lower()
    account = accounts.get_by_email(email)
    if account is None:
        print(f"  No account for {email} (rate-limit records may still exist).")
    else:
        print(f"  Account #{account.id}  {account.username}  verified={account.is_verified}")

    records = rates.list_for_account(email)
    if not records:
        print("  No rate-limit records.")
        return 0
    print(f"  {'PURPOSE':<15} {'CLIENT':<40} {'ATTEMPTS':>8} {'BLOCKS':>6}  BLOCKED UNTIL")
    for rec in records:
        until = rec.blocked_until.isoformat() if rec.blocked_until else "-"
        print(
            f"  {rec.key.purpose.value:<15} {rec.key.client_identity:<40} "
            f"{rec.attempt_count:>8} {rec.block_count:>6}  {until}"
        )
    return 0


def cmd_unblock(args: argparse.Namespace, accounts: AccountStore, rates: RateLimitStore) -> int:
    email = args.email.strip().lower()
    purposes = [Purpose(p) for p in args.purpose] if args.purpose else list(Purpose)
    if args.client:
        removed = rates.delete_for(args.client, email, purposes)
    else:
        removed = 0
        for rec in rates.list_for_account(email):
            if rec.key.purpose in purposes and rates.delete(rec.key):
                removed += 1
    print(f"  Removed {removed} rate-limit record(s) for {email}.")
    return 0


def cmd_purge(args: argparse.Namespace, accounts: AccountStore, rates: RateLimitStore) -> int:
    retention = args.retention_hours or get_settings().rate_limit_retention_hours
    counts = purge_expired(accounts, rates, retention)
    for name, count in counts.items():
        print(f"  {name}: {count} removed")
    return 0


def cmd_create_user(args: argparse.Namespace, accounts: AccountStore, rates: RateLimitStore) -> int:
    password = args.password or getpass.getpass("Password: ")
    try:
        req = RegisterRequest(username=args.username, email=args.email, password=password, confirm_password=password)
    except ValidationError as exc:
        for err in exc.errors():
            print(f"  [!] {'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}")
        return 1
    account = Account(
        username=req.username,
        email=req.email,
        hashed_password=hash_password(req.password),
        is_verified=args.verified,
    )
    try:
        user_id = accounts.create_account(account)
    except IntegrityError:
        print("  [!] Username or email already exists.")
        return 1
    print(f"  Created user #{user_id} ({req.username}).")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="Administrative tasks for the AuthGate authentication service.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_stats = sub.add_parser("stats", help="Show rate-limit state for an account")
    p_stats.add_argument("--email", required=True)
    p_stats.set_defaults(func=cmd_stats)

    p_unblock = sub.add_parser("unblock", help="Delete rate-limit records for an account")
    p_unblock.add_argument("--email", required=True)
    p_unblock.add_argument("--client", help="Only this client identity (default: every client)")
    p_unblock.add_argument(
        "--purpose",
        action="append",
        choices=[p.value for p in Purpose],
        help="Limit to a purpose; repeatable (default: all)",
    )
    p_unblock.set_defaults(func=cmd_unblock)

    p_purge = sub.add_parser("purge", help="Delete expired codes and stale rate-limit records")
    p_purge.add_argument("--retention-hours", type=int, default=0, metavar="N")
    p_purge.set_defaults(func=cmd_purge)

    p_create = sub.add_parser("create-user", help="Create an account")
    p_create.add_argument("--username", required=True)
    p_create.add_argument("--email", required=True)
    p_create.add_argument("--password", help="Prompted for when omitted")
    p_create.add_argument("--verified", action="store_true", help="Mark the email as already verified")
    p_create.set_defaults(func=cmd_create_user)

    args = parser.parse_args(argv)
    accounts, rates = _open_stores()
    try:
        return args.func(args, accounts, rates)
    finally:
        accounts.close()
        rates.close()


if __name__ == "__main__":
    sys.exit(main())
