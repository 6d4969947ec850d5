#!/usr/bin/env python3
"""
Synapse Billing - Usage record retention sweep.

Deletes usage records older than the retention window (USAGE_RETENTION_DAYS,
default 90). Billing cycles keep their aggregates; only the per-turn ledger
is removed.

Usage:
    # Run once (cron: Sundays 03:00 UTC)
    python3 scripts/cleanup_usage_records.py

    # Override the retention window
    python3 scripts/cleanup_usage_records.py --retention-days 30
"""

import argparse
import asyncio
import sys

from app.db.session import close_engines
from app.jobs import run_usage_retention_job
from app.observability import get_logger, setup_logging

logger = get_logger(__name__)


async def _run(retention_days: int | None) -> int:
    try:
        deleted = await run_usage_retention_job(retention_days)
        print(f"deleted={deleted}")
        return 0
    finally:
        await close_engines()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Delete usage records past the retention window",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Days of usage records to keep (default: USAGE_RETENTION_DAYS)",
    )
    args = parser.parse_args()

    setup_logging()
    try:
        return asyncio.run(_run(args.retention_days))
    except Exception as e:
        logger.error("usage_retention_job_failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
