"""
DM Concierge - Maintenance CLI.

  python maintenance.py cleanup [--days N]   delete conversation logs older than N days
  python maintenance.py reset-limits         clear every user's rate-limit window
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timedelta, timezone

logger = logging.getLogger("maintenance")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DM concierge maintenance tasks")
    parser.add_argument("--db", default=None, help="SQLite path (default: DATABASE_PATH from .env)")
    sub = parser.add_subparsers(dest="command", required=True)

    cleanup = sub.add_parser("cleanup", help="Delete conversation logs past the retention window")
    cleanup.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention in days (default: CONVERSATION_RETENTION_DAYS, 30)",
    )

    sub.add_parser("reset-limits", help="Clear all rate-limit records")
    return parser


def run_cleanup(database, days: int) -> int:
    from src.data.db import ConversationDB

    cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days)
    logger.info("Deleting conversations older than %s", cutoff.isoformat())
    deleted = ConversationDB(database).delete_older_than(cutoff)
    logger.info("Deleted %d old conversations", deleted)
    return deleted


def run_reset_limits(database) -> int:
    from src.data.db import RateLimitDB

    cleared = RateLimitDB(database).reset_all()
    logger.info("Reset rate limits for %d users", cleared)
    return cleared


def main(args: list[str] | None = None) -> int:
    parser = build_parser()
    opts = parser.parse_args(args=args)

    from src.config import settings
    from src.data.db import Database

    if opts.command == "cleanup":
        days = opts.days if opts.days is not None else settings.CONVERSATION_RETENTION_DAYS
        if days < 1:
            parser.error("--days must be at least 1")

    try:
        with Database(opts.db) as database:
            if opts.command == "cleanup":
                run_cleanup(database, days)
            else:
                run_reset_limits(database)
    except Exception:
        logger.exception("Maintenance task %r failed", opts.command)
        return 1
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    sys.exit(main())
