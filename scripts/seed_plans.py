#!/usr/bin/env python3
"""
Seed Plans Script

Publishes a default plan catalog. Plans that already exist by name are
left alone, so the script can be re-run safely.

Usage:
    python scripts/seed_plans.py
    python scripts/seed_plans.py --create-tables
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from billing_engine.config.settings import settings
from billing_engine.domain.plans import FiniteLimit, PlanCreate, UnlimitedLimit
from billing_engine.infrastructure.db.database import close_db, get_db_manager
from billing_engine.infrastructure.db.repositories import PlanRepository
from billing_engine.services.plan_catalog import PlanCatalog

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def default_plans(currency: str):
    """Starter catalog, prices in minor units."""
    return [
        PlanCreate(
            name="Free",
            monthly_price=0,
            annual_price=0,
            currency=currency,
            features={
                "projects": FiniteLimit(value=1),
                "api_calls": FiniteLimit(value=1000),
            },
        ),
        PlanCreate(
            name="Starter",
            monthly_price=999,
            annual_price=9990,
            currency=currency,
            features={
                "projects": FiniteLimit(value=5),
                "api_calls": FiniteLimit(value=50000),
                "email_support": UnlimitedLimit(),
            },
        ),
        PlanCreate(
            name="Pro",
            monthly_price=2999,
            annual_price=29990,
            currency=currency,
            features={
                "projects": UnlimitedLimit(),
                "api_calls": FiniteLimit(value=1000000),
                "email_support": UnlimitedLimit(),
                "priority_support": UnlimitedLimit(),
            },
        ),
    ]


async def seed_plans(currency: str, create_tables: bool = False) -> dict:
    db = get_db_manager()
    if create_tables:
        await db.create_tables()

    catalog = PlanCatalog(PlanRepository(db.session_factory))
    existing = {plan.name for plan in await catalog.list_plans(include_inactive=True)}

    stats = {"created": 0, "skipped": 0}
    for data in default_plans(currency):
        if data.name in existing:
            logger.info(f"Plan {data.name} already exists, skipping")
            stats["skipped"] += 1
            continue
        plan = await catalog.create_plan(data)
        logger.info(f"Created plan {plan.name} ({plan.id})")
        stats["created"] += 1

    return stats


async def main():
    parser = argparse.ArgumentParser(description="Seed the default plan catalog")
    parser.add_argument(
        "--currency",
        default=settings.default_currency,
        help=f"ISO currency code for the plans (default: {settings.default_currency})"
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create tables from the models first (development databases only)"
    )
    args = parser.parse_args()

    try:
        stats = await seed_plans(args.currency.upper(), create_tables=args.create_tables)
    finally:
        await close_db()

    print("\n=== Seeding Complete ===")
    print(f"Created: {stats['created']}")
    print(f"Skipped: {stats['skipped']}")


if __name__ == "__main__":
    asyncio.run(main())
