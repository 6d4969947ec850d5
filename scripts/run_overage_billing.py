#!/usr/bin/env python3
"""
Synapse Billing - Overage invoicing batch.

Closes every active billing cycle whose period has ended and invoices any
overage above the configured minimum. Safe to re-run: cycles that failed
stay active and are retried on the next run.

Usage:
    # Run once (cron: hourly)
    python3 scripts/run_overage_billing.py

    # List the cycles that would be settled, without touching them
    python3 scripts/run_overage_billing.py --dry-run
"""

import argparse
import asyncio
import sys

from app.db.session import close_engines
from app.jobs import list_expired_cycles, run_overage_billing_job
from app.observability import get_logger, setup_logging

logger = get_logger(__name__)


async def _run(dry_run: bool) -> int:
    try:
        if dry_run:
            cycles = await list_expired_cycles()
            for cycle in cycles:
                print(
                    f"{cycle.billing_cycle_id}  user={cycle.user_id}  "
                    f"period_end={cycle.period_end.isoformat()}  overage={cycle.overage_amount}"
                )
            print(f"{len(cycles)} expired cycle(s)")
            return 0

        result = await run_overage_billing_job()
        print(f"processed={result.processed} invoiced={result.invoiced} errors={result.errors}")
        return 0
    finally:
        await close_engines()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Settle expired billing cycles and invoice overage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List expired cycles without settling them",
    )
    args = parser.parse_args()

    setup_logging()
    try:
        return asyncio.run(_run(args.dry_run))
    except Exception as e:
        logger.error("overage_billing_job_failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
