"""Admin CLI: Create the WeShop tables and change-feed triggers.

Safe to run more than once; every statement is idempotent.

Usage:
  DATABASE_URL=postgresql://... python scripts/init_schema.py
"""

import asyncio
import os
import sys


def _ensure_import_path() -> None:
    server_root = os.path.dirname(os.path.dirname(__file__))
    if server_root not in sys.path:
        sys.path.insert(0, server_root)


async def _run() -> int:
    _ensure_import_path()

    from weshop.settings import DATABASE_URL
    from weshop import db

    if not DATABASE_URL:
        print("ERROR: DATABASE_URL is not set.")
        return 2

    await db.init_schema(DATABASE_URL)
    print("Schema applied.")
    return 0


def main() -> int:
    return asyncio.run(_run())


if __name__ == "__main__":
    raise SystemExit(main())
