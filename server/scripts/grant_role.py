"""Admin CLI: Grant a role to an existing user.

Used to bootstrap the first super admin; after that, roles are managed from
the admin API. Assigning "user" removes a staff role.

Usage examples:
  python scripts/grant_role.py --email owner@example.com --role super_admin
  python scripts/grant_role.py --email helper@example.com --role moderator
"""

import argparse
import asyncio
import os
import sys


ROLES = ("user", "moderator", "admin", "super_admin")


def _ensure_import_path() -> None:
    server_root = os.path.dirname(os.path.dirname(__file__))
    if server_root not in sys.path:
        sys.path.insert(0, server_root)


async def _run(email: str, role: str) -> int:
    _ensure_import_path()

    from weshop.settings import DATABASE_URL
    from weshop.errors import NotFoundError
    from weshop import accounts, db

    if not DATABASE_URL:
        print("ERROR: DATABASE_URL is not set.")
        return 2

    await db.init_db()
    try:
        try:
            assigned = await accounts.set_user_role_by_email(email, role)
        except NotFoundError as e:
            print(f"ERROR: {e.message}. The user must sign up first.")
            return 1

        print("user_id:", assigned.user_id)
        print("role_id:", assigned.id)
        print("role:", assigned.role)
        return 0
    finally:
        await db.close_db()


def main() -> int:
    parser = argparse.ArgumentParser(description="Grant a role to a user by email.")
    parser.add_argument("--email", required=True, help="Email the user signed up with")
    parser.add_argument("--role", choices=ROLES, default="super_admin", help="Role to assign")
    args = parser.parse_args()

    return asyncio.run(_run(args.email, args.role))


if __name__ == "__main__":
    raise SystemExit(main())
