#!/usr/bin/env python3
"""
Billing Sweeps Script

Cron entry point for the time-driven parts of the subscription lifecycle:
expiring grace periods, starting renewals for ended periods (or completing
scheduled cancellations), and sending renewal reminders.

Usage:
    python scripts/run_billing_sweeps.py
    python scripts/run_billing_sweeps.py --only grace --limit 500
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from billing_engine.api.dependencies import get_subscription_service
from billing_engine.config.settings import settings
from billing_engine.infrastructure.db.database import close_db, init_db

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


SWEEPS = ("grace", "renewals", "reminders")


async def run_sweeps(only=None, limit=None, within_days=None) -> dict:
    """
    Run the selected sweeps once.

    Grace expiry runs before renewals so a subscription whose grace window
    has closed is expired rather than charged again.

    Returns:
        Dict with per-sweep counts
    """
    service = get_subscription_service()
    selected = [only] if only else list(SWEEPS)
    stats = {}

    if "grace" in selected:
        expired = await service.sweep_grace_expiries(limit)
        stats["expired"] = len(expired)

    if "renewals" in selected:
        started = await service.run_due_renewals(
            limit,
            timeout=settings.payment_gateway_timeout_seconds,
        )
        stats["renewals_started"] = sum(1 for item in started if item.created)
        stats["cancelled_at_period_end"] = sum(
            1 for item in started if item.subscription.status.is_terminal
        )

    if "reminders" in selected:
        stats["reminders_sent"] = await service.send_renewal_reminders(
            within_days if within_days is not None else settings.renewal_reminder_days,
            limit,
        )

    logger.info(f"Sweeps complete: {stats}")
    return stats


async def main():
    parser = argparse.ArgumentParser(description="Run billing lifecycle sweeps")
    parser.add_argument(
        "--only",
        choices=SWEEPS,
        default=None,
        help="Run a single sweep instead of all of them"
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help=f"Maximum subscriptions per sweep (default: {settings.sweep_batch_size})"
    )
    parser.add_argument(
        "--within-days",
        type=int,
        default=None,
        help=f"Reminder horizon in days (default: {settings.renewal_reminder_days})"
    )
    args = parser.parse_args()

    await init_db()
    try:
        stats = await run_sweeps(only=args.only, limit=args.limit, within_days=args.within_days)
    finally:
        await close_db()

    print("\n=== Billing Sweeps Complete ===")
    for key, value in stats.items():
        print(f"{key}: {value}")


if __name__ == "__main__":
    asyncio.run(main())
