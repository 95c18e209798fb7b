#!/usr/bin/env python3
"""
Stripe to Supabase Payment Sync Script

Scans every Stripe customer and makes sure each paying customer has a
Supabase user and a PAID user_payments record. Customers without an
active subscription or a paid charge are left alone.

Usage:
    python scripts/sync_stripe_payments.py
    python scripts/sync_stripe_payments.py --page-size 50
    python scripts/sync_stripe_payments.py --json
"""

import argparse
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from src.config import Config  # noqa: E402
from src.config.logging_config import configure_logging  # noqa: E402
from src.services.reconciliation import ReconciliationJob  # noqa: E402


def main(argv=None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Sync Stripe payments into Supabase")
    parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help=f"Customers fetched per Stripe page, 1-100 (default: {Config.STRIPE_SYNC_PAGE_SIZE})",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the statistics as JSON after the summary",
    )
    args = parser.parse_args(argv)

    configure_logging()

    try:
        Config.validate()
        job = ReconciliationJob.from_config(page_size=args.page_size)
        print("\nStarting Stripe to Supabase sync...\n")
        stats = job.run()
    except Exception as e:
        print(f"\nFatal error: {e}", file=sys.stderr)
        return 1

    print()
    print(stats.format_summary())
    if args.json:
        print(stats.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
