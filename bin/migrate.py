#!/usr/bin/env python3
"""Minimal SQL migration runner for the webhook relay."""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

import asyncpg

from webhook_relay.db.migrations import apply_migrations, load_migrations, pending_migrations
from webhook_relay.logging_config import configure_logging


def _default_migrations_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "migrations"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply SQL migrations sequentially.")
    parser.add_argument(
        "--database-url",
        "-d",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string. Defaults to DATABASE_URL env variable.",
    )
    parser.add_argument(
        "--migrations-dir",
        "-m",
        type=Path,
        default=_default_migrations_dir(),
        help="Directory with *.sql migrations (sorted lexicographically).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list pending migrations without applying.",
    )
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    if not args.database_url:
        print("DATABASE_URL is not set", file=sys.stderr)
        return 2
    if not args.migrations_dir.exists():
        print(f"Migrations directory does not exist: {args.migrations_dir}", file=sys.stderr)
        return 2
    conn = await asyncpg.connect(args.database_url)
    try:
        if args.dry_run:
            pending = await pending_migrations(conn, load_migrations(args.migrations_dir))
            for _, path, _, _ in pending:
                print(path.name)
            print(f"{len(pending)} pending migration(s)")
            return 0
        applied = await apply_migrations(conn, args.migrations_dir)
        print(f"Applied {applied} migration(s)")
        return 0
    finally:
        await conn.close()


def main() -> None:
    configure_logging()
    sys.exit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
