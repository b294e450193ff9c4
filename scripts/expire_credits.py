#!/usr/bin/env python3
"""
Expire aged one-time credit purchases.

Deducts the unused remainder of each expirable purchase older than
PURCHASED_CREDIT_EXPIRY_DAYS. Safe to re-run: purchases already handled are
skipped.

Usage:
    # Expire now (for cron)
    python3 scripts/expire_credits.py

    # Report what would expire without changing anything
    python3 scripts/expire_credits.py --dry-run
"""

import argparse
import asyncio
import sys

from app.db.session import close_engines, get_session
from app.exceptions import PersistenceError
from app.observability.logging import get_logger, setup_logging
from app.services.credit_ledger import CreditLedger

logger = get_logger("expire_credits")


async def run(dry_run: bool) -> int:
    try:
        async with get_session() as session:
            summary = await CreditLedger(session).expire_aged_purchased_credits(dry_run=dry_run)
    except PersistenceError as e:
        logger.error("credit_expiry_failed", error=e.message)
        return 1
    finally:
        await close_engines()

    print(
        f"{'Would expire' if dry_run else 'Expired'} {summary.expired_credits} credits "
        f"from {summary.processed_purchases} purchases "
        f"across {summary.affected_users} users"
    )
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Expire aged one-time credit purchases",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s              # Expire aged purchases
  %(prog)s --dry-run    # Report candidates only
        """,
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Report what would expire without changing data"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    setup_logging(log_level="DEBUG" if args.verbose else None)
    return asyncio.run(run(args.dry_run))


if __name__ == "__main__":
    sys.exit(main())
