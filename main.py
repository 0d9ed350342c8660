#!/usr/bin/env python3
"""
FlowForge accounts -- operator CLI.

Provision users and API keys directly against the account store, without
going through the HTTP API. The CLI acts as the SYSTEM actor, so the Policy
Gate's system bypass covers every command.

Usage:
  python main.py create-user alice@example.com
  python main.py create-user bot@example.com --no-password
  python main.py list-users
  python main.py delete-user alice@example.com
  python main.py issue-key alice@example.com --ttl 86400
  python main.py list-keys alice@example.com
  python main.py destroy-key 6f1c...
  python main.py check-key < key.txt
  python main.py purge-tokens

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account store.
  SECRET_KEY    Must match the API server, or issued keys will not validate there.
"""

from __future__ import annotations

import argparse
import getpass
import sys
from typing import Optional

from auth.api_keys import ApiKeyManager
from auth.errors import AuthError, Unauthenticated
from auth.models import User
from auth.policy import SYSTEM, default_gate
from auth.sessions import SessionService
from auth.store import AccountStore
from core.config import get_settings


def _require_user(store: AccountStore, email: str) -> User:
    user = store.get_user_by_email(email)
    if user is None:
        raise SystemExit(f"  [!] No user with email '{email}'.")
    return user


def _read_password() -> str:
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowforge-accounts",
        description="Operator commands for FlowForge users and API keys.",
    )
    parser.add_argument("--database-url", metavar="URL", help="Override DATABASE_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a user (prompts for a password)")
    create.add_argument("email")
    create.add_argument("--no-password", action="store_true", help="Create a password-less user")
    create.add_argument("--confirmed", action="store_true", help="Mark the email as confirmed")

    sub.add_parser("list-users", help="List all users")

    delete = sub.add_parser("delete-user", help="Delete a user with their keys and sessions")
    delete.add_argument("email")

    issue = sub.add_parser("issue-key", help="Issue an API key and print it once")
    issue.add_argument("email")
    issue.add_argument("--ttl", type=int, default=None, metavar="SECONDS", help="Lifetime in seconds")

    list_keys = sub.add_parser("list-keys", help="List a user's API keys")
    list_keys.add_argument("email")

    destroy = sub.add_parser("destroy-key", help="Destroy an API key by id")
    destroy.add_argument("key_id")

    sub.add_parser("check-key", help="Read an API key from stdin and print its owner")
    sub.add_parser("purge-tokens", help="Delete expired session and single-use token records")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    store = AccountStore(args.database_url or settings.database_url)
    sessions = SessionService(store)
    api_keys = ApiKeyManager(store)
    gate = default_gate()

    try:
        if args.command == "create-user":
            password = None if args.no_password else _read_password()
            user = sessions.register(args.email, password)
            if args.confirmed:
                store.confirm_user(user.id)
            print(f"  Created user {user.email} ({user.id})")

        elif args.command == "list-users":
            for user in store.list_users():
                status = "confirmed" if user.is_confirmed else "unconfirmed"
                print(f"  {user.id}  {user.email}  {status}")

        elif args.command == "delete-user":
            user = _require_user(store, args.email)
            gate.ensure(SYSTEM, "destroy", user)
            sessions.delete_account(user.id)
            print(f"  Deleted {user.email}")

        elif args.command == "issue-key":
            user = _require_user(store, args.email)
            gate.ensure(SYSTEM, "issue_api_key", user)
            ttl = args.ttl if args.ttl is not None else settings.api_key_default_ttl_seconds
            raw_key, record = api_keys.issue(user.id, ttl)
            print(f"  Key id:     {record.id}")
            print(f"  Expires at: {record.expires_at.isoformat()}")
            print("  This key is shown once and cannot be retrieved later:")
            print(raw_key)

        elif args.command == "list-keys":
            user = _require_user(store, args.email)
            for key in api_keys.list_for_user(user.id):
                state = "valid" if key.valid else "expired"
                print(f"  {key.id}  expires {key.expires_at.isoformat()}  {state}")

        elif args.command == "destroy-key":
            key = api_keys.get(args.key_id)
            gate.ensure(SYSTEM, "destroy", key)
            api_keys.destroy(key.id)
            print(f"  Destroyed key {key.id}")

        elif args.command == "check-key":
            raw_key = sys.stdin.readline().strip()
            try:
                user_id = api_keys.validate(raw_key)
            except Unauthenticated as exc:
                print(f"  [!] Key rejected ({exc.code}).")
                return 1
            print(f"  Key belongs to user {user_id}")

        elif args.command == "purge-tokens":
            print(f"  Purged {sessions.purge_expired()} expired token record(s)")

    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
