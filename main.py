#!/usr/bin/env python3
"""
Bookshelf auth -- host-side administration for the passkey credential store.

Usage:
  python main.py init-db
  python main.py status
  python main.py invite alice
  python main.py purge

Reads the same environment as the API (DATABASE_URL, RP_ID, RP_ORIGIN,
APP_URL, ...) through core.config, so links printed here match the ones
the web app would mint.
"""

import argparse
import sys
from datetime import timedelta
from typing import Optional

from auth.devices import DeviceManager
from auth.relying_party import RelyingParty
from auth.store import CredentialStore
from cache.store import MemoryChallengeCache
from core.config import get_settings


def _cmd_init_db(store: CredentialStore, args: argparse.Namespace) -> int:
    # CredentialStore creates any missing tables on construction.
    print(f"  Schema ready ({store.count_users()} user(s)).")
    return 0


def _cmd_status(store: CredentialStore, args: argparse.Namespace) -> int:
    users = store.count_users()
    print(f"  Users: {users}")
    print(f"  Passkeys: {store.count_credentials()}")
    if users == 0:
        print("  No account yet. The first registration will not need an invitation.")
    else:
        print("  Registration requires an invitation.")
    return 0


def _cmd_invite(store: CredentialStore, args: argparse.Namespace) -> int:
    """Mint an invitation on behalf of an existing user."""
    settings = get_settings()
    inviter = store.get_user_by_username(args.username)
    if inviter is None:
        print(f"  [!] No user named '{args.username}'.")
        return 1
    devices = DeviceManager(
        store,
        MemoryChallengeCache(),
        RelyingParty.from_settings(settings),
        app_url=settings.app_url,
        invitation_ttl=timedelta(seconds=settings.invitation_ttl_seconds),
    )
    link = devices.generate_invitation(inviter.id)
    print(f"  Invitation from {inviter.username}, expires {link.expires_at}")
    print(f"  {link.url}")
    return 0


def _cmd_purge(store: CredentialStore, args: argparse.Namespace) -> int:
    days = args.days if args.days is not None else get_settings().token_retention_days
    removed = store.purge_stale_tokens(timedelta(days=days))
    print(f"  Removed {removed} stale invitation/setup token(s) older than {days} day(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="bookshelf-auth",
        description="Administer the Bookshelf passkey credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py invite alice
  DATABASE_URL=sqlite:////var/lib/bookshelf/auth.db python main.py purge --days 7
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("init-db", help="Create the credential store schema if missing")
    sub.add_parser("status", help="Show how many accounts exist")

    invite = sub.add_parser("invite", help="Mint an invitation link on behalf of an existing user")
    invite.add_argument("username", help="Existing user the invitation is issued by")

    purge = sub.add_parser("purge", help="Delete expired or used tokens past the retention window")
    purge.add_argument(
        "--days",
        type=int,
        default=None,
        metavar="N",
        help="Retention window in days (default: TOKEN_RETENTION_DAYS)",
    )

    args = parser.parse_args(argv)
    handlers = {
        "init-db": _cmd_init_db,
        "status": _cmd_status,
        "invite": _cmd_invite,
        "purge": _cmd_purge,
    }
    if args.command not in handlers:
        parser.print_help()
        return 2

    store = CredentialStore(get_settings().database_url)
    try:
        return handlers[args.command](store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
