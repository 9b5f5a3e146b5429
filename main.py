#!/usr/bin/env python3
"""
Precinct admin -- operator CLI for local credentials and account approval.

Usage:
  python main.py hash                      (prompts for the password)
  echo -n 'secret' | python main.py hash --stdin
  python main.py check-strength
  python main.py needs-rehash '$pbkdf2-sha256$600000$...'
  python main.py audit
  python main.py add-admin Chief --role super_admin --display-name "Chief of Police"
  python main.py remove-admin Chief
  python main.py google-accounts
  python main.py assign-google google-1234 --role 111 --role 222

Environment variables:
  DOCSTORE_URL  SQLAlchemy URL of the document store (default: local SQLite file).
"""

from __future__ import annotations

import argparse
import getpass
import sys
from typing import Optional

from auth.models import INTERNAL_ROLES, AdminAccount
from auth.passwords import hash_password, is_legacy_plaintext, needs_rehash, validate_password_complexity
from auth.store import GOOGLE_STATUSES, AccountStore
from docstore.store import DocumentStore


def _read_password(from_stdin: bool, confirm: bool = False) -> Optional[str]:
    """Read a password from stdin (first line) or an interactive prompt."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    password = getpass.getpass("  Password: ")
    if confirm and getpass.getpass("  Confirm:  ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def _store(args: argparse.Namespace) -> AccountStore:
    return AccountStore(DocumentStore(args.db_url))


# ---------------------------------------------------------------------------
# Commands -- each returns the process exit code
# ---------------------------------------------------------------------------


def cmd_hash(args: argparse.Namespace) -> int:
    password = _read_password(args.stdin, confirm=not args.stdin)
    if not password:
        print("  [!] Empty password.")
        return 1
    print(hash_password(password))
    return 0


def cmd_check_strength(args: argparse.Namespace) -> int:
    password = _read_password(args.stdin)
    problems = validate_password_complexity(password or "")
    if not problems:
        print("  Password meets the complexity rules.")
        return 0
    for problem in problems:
        print(f"  [!] {problem}")
    return 1


def cmd_needs_rehash(args: argparse.Namespace) -> int:
    """Exit 0 when the stored value is current, 1 when it should be upgraded."""
    if needs_rehash(args.stored):
        kind = "legacy plaintext" if is_legacy_plaintext(args.stored) else "outdated parameters"
        print(f"  Needs rehash ({kind}).")
        return 1
    print("  Hash is current.")
    return 0


def cmd_audit(args: argparse.Namespace) -> int:
    """List local admin accounts whose stored credential is not a current hash."""
    accounts = _store(args).list_admins()
    flagged = [a for a in accounts if needs_rehash(a.password_hash)]
    print(f"  {len(accounts)} local admin account(s), {len(flagged)} need attention.")
    for account in flagged:
        kind = "PLAINTEXT" if is_legacy_plaintext(account.password_hash) else "outdated"
        print(f"  [!] {account.username:<24} {kind}")
    return 1 if flagged else 0


def cmd_add_admin(args: argparse.Namespace) -> int:
    password = _read_password(args.stdin, confirm=not args.stdin)
    if password is None:
        return 1
    problems = validate_password_complexity(password)
    if problems:
        for problem in problems:
            print(f"  [!] {problem}")
        return 1
    account = _store(args).save_admin(
        AdminAccount(
            username=args.username,
            password_hash=hash_password(password),
            display_name=args.display_name or args.username,
            role=args.role,
            permissions=list(args.permission or []),
        )
    )
    print(f"  Saved {account.username} ({account.role}) as {account.id}.")
    return 0


def cmd_remove_admin(args: argparse.Namespace) -> int:
    if _store(args).delete_admin(args.username):
        print(f"  Removed {args.username}.")
        return 0
    print(f"  [!] No local admin account named '{args.username}'.")
    return 1


def cmd_google_accounts(args: argparse.Namespace) -> int:
    accounts = _store(args).list_google_accounts()
    if not accounts:
        print("  No Google accounts registered.")
        return 0
    for account in accounts:
        roles = ", ".join(account.roles) or "-"
        print(f"  {account.id:<32} {account.status:<8} {account.email:<32} roles: {roles}")
    return 0


def cmd_assign_google(args: argparse.Namespace) -> int:
    account = _store(args).assign_google_roles(args.account_id, list(args.role or []), status=args.status)
    if account is None:
        print(f"  [!] No Google account '{args.account_id}'. The user must sign in once first.")
        return 1
    print(f"  {account.email}: status={account.status} roles={', '.join(account.roles) or '-'}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="precinct-admin",
        description="Operator tools for Precinct admin panel credentials and accounts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py hash
  python main.py audit
  python main.py add-admin Chief --role super_admin
  python main.py assign-google google-1234 --role 111 --status active
        """,
    )
    parser.add_argument(
        "--db-url",
        metavar="URL",
        default=None,
        help="Document store URL (defaults to DOCSTORE_URL or the local SQLite file)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("hash", help="Hash a password for storage")
    p.add_argument("--stdin", action="store_true", help="Read the password from stdin instead of prompting")
    p.set_defaults(func=cmd_hash)

    p = sub.add_parser("check-strength", help="Check a password against the complexity rules")
    p.add_argument("--stdin", action="store_true", help="Read the password from stdin instead of prompting")
    p.set_defaults(func=cmd_check_strength)

    p = sub.add_parser("needs-rehash", help="Report whether a stored value should be re-hashed")
    p.add_argument("stored", help="The stored password value")
    p.set_defaults(func=cmd_needs_rehash)

    p = sub.add_parser("audit", help="List local admin accounts with plaintext or outdated credentials")
    p.set_defaults(func=cmd_audit)

    p = sub.add_parser("add-admin", help="Create or replace a local admin account")
    p.add_argument("username")
    p.add_argument("--role", choices=INTERNAL_ROLES, default="custom")
    p.add_argument("--display-name", default=None)
    p.add_argument("--permission", action="append", metavar="ID", help="Permission id (repeatable)")
    p.add_argument("--stdin", action="store_true", help="Read the password from stdin instead of prompting")
    p.set_defaults(func=cmd_add_admin)

    p = sub.add_parser("remove-admin", help="Delete a local admin account")
    p.add_argument("username")
    p.set_defaults(func=cmd_remove_admin)

    p = sub.add_parser("google-accounts", help="List registered Google accounts")
    p.set_defaults(func=cmd_google_accounts)

    p = sub.add_parser("assign-google", help="Set the role ids and status of a Google account")
    p.add_argument("account_id", metavar="ACCOUNT_ID", help='Registry id, e.g. "google-1234"')
    p.add_argument("--role", action="append", metavar="ROLE_ID", help="Role id (repeatable)")
    p.add_argument("--status", choices=GOOGLE_STATUSES, default="active")
    p.set_defaults(func=cmd_assign_google)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
