#!/usr/bin/env python3
"""
admin-auth -- operator command line for the authentication service.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py create-admin --username root --email root@example.com [--password ...]
  python main.py purge-sessions
  python main.py unlock alice
  python main.py deactivate alice | activate alice

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. Signs tokens and anti-forgery tokens.
  DATABASE_URL  SQLAlchemy URL of the auth database (default: sqlite file in auth/).
  DEBUG         true enables dev mode (auto-generated SECRET_KEY, /docs).
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.models import Role
from auth.service import AuthService, password_policy_errors
from auth.store import create_auth_engine
from core.errors import AuthError


def _service() -> AuthService:
    return AuthService.from_engine(create_auth_engine())


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _cmd_create_admin(args: argparse.Namespace) -> int:
    """Create an admin account, prompting for the password unless --password was given."""
    password = args.password if args.password is not None else getpass.getpass("Password: ")
    problems = password_policy_errors(password)
    if problems:
        for problem in problems:
            print(f"  [!] {problem}")
        return 1
    if args.password is None and getpass.getpass("Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        return 1
    try:
        user = _service().register(args.username, args.email, password, role=Role.admin)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        if isinstance(exc.details, list):
            for item in exc.details:
                print(f"      {item['field']}: {item['message']}")
        return 1
    print(f"  Admin '{user.username}' created (id={user.id}).")
    return 0


def _cmd_purge_sessions(args: argparse.Namespace) -> int:
    service = _service()
    purged = service.purge_expired_sessions()
    print(f"  {purged} expired or revoked session(s) removed.")
    print(f"  {service.active_session_count()} active session(s) remain.")
    return 0


def _cmd_unlock(args: argparse.Namespace) -> int:
    if not _service().unlock(args.identifier):
        print(f"  [!] No user matches '{args.identifier}'.")
        return 1
    print(f"  Lockout cleared for '{args.identifier}'.")
    return 0


def _cmd_set_active(args: argparse.Namespace) -> int:
    active = args.command == "activate"
    if not _service().set_active(args.identifier, active):
        print(f"  [!] No user matches '{args.identifier}'.")
        return 1
    if active:
        print(f"  Account '{args.identifier}' activated.")
    else:
        print(f"  Account '{args.identifier}' deactivated; its sessions were revoked.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="admin-auth",
        description="Operator commands for the admin authentication service.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only).")
    serve.set_defaults(func=_cmd_serve)

    create_admin = sub.add_parser("create-admin", help="Create an admin account.")
    create_admin.add_argument("--username", required=True)
    create_admin.add_argument("--email", required=True)
    create_admin.add_argument("--password", help="Skip the prompt (visible in shell history; scripts only).")
    create_admin.set_defaults(func=_cmd_create_admin)

    purge = sub.add_parser("purge-sessions", help="Delete revoked and expired session rows.")
    purge.set_defaults(func=_cmd_purge_sessions)

    unlock = sub.add_parser("unlock", help="Clear failed-login lockout for a user.")
    unlock.add_argument("identifier", help="Username or email.")
    unlock.set_defaults(func=_cmd_unlock)

    deactivate = sub.add_parser("deactivate", help="Disable an account and revoke its sessions.")
    deactivate.add_argument("identifier", help="Username or email.")
    deactivate.set_defaults(func=_cmd_set_active)

    activate = sub.add_parser("activate", help="Re-enable a deactivated account.")
    activate.add_argument("identifier", help="Username or email.")
    activate.set_defaults(func=_cmd_set_active)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
