#!/usr/bin/env python3
"""
Expired Period Rollover Sweep

Resets the usage counter of active paid subscriptions whose billing period
ended while the renewal webhook has not arrived yet. Uses the same
conditional rollover as the entitlement check, so it is safe to run next to
request traffic and to run twice.

Run as a cron job or manually: python -m scripts.rollover_expired_periods

Usage:
    python -m scripts.rollover_expired_periods              # Sweep up to 500 records
    python -m scripts.rollover_expired_periods --limit 100  # Sweep up to 100 records
"""

import asyncio
import argparse
import logging
from typing import Optional

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.domain.subscription import utcnow
from app.infrastructure.db.database import close_db, get_session_context, init_db
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.services.billing_service import BillingService

logger = logging.getLogger(__name__)


async def rollover_expired_periods(
    limit: int = 500,
    billing_service: Optional[BillingService] = None,
) -> dict:
    """
    Apply the lazy rollover to every lapsed paid period.

    Args:
        limit: Maximum number of records to sweep
        billing_service: Service performing the rollover

    Returns:
        Dict with sweep statistics
    """
    billing_service = billing_service or BillingService()
    stats = {
        "started_at": utcnow().isoformat(),
        "candidates": 0,
        "rolled_over": 0,
    }

    logger.info(f"Starting rollover sweep (limit: {limit})...")

    async with get_session_context() as session:
        candidates = await SubscriptionRepository(session).list_rollover_candidates(limit=limit)
    stats["candidates"] = len(candidates)

    if not candidates:
        logger.info("No lapsed paid periods found")
        return stats

    for subscription in candidates:
        refreshed = await billing_service.rollover_if_needed(subscription)
        if refreshed.usage_reset_at and refreshed.usage_reset_at >= subscription.current_period_end:
            stats["rolled_over"] += 1

    stats["completed_at"] = utcnow().isoformat()
    logger.info(f"Rollover sweep complete: {stats}")
    return stats


async def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Reset usage for lapsed paid billing periods")
    parser.add_argument(
        "--limit",
        type=int,
        default=500,
        help="Maximum number of subscriptions to sweep (default: 500)"
    )
    args = parser.parse_args()

    await init_db()
    try:
        stats = await rollover_expired_periods(limit=args.limit)
    finally:
        await close_db()

    print("\n=== Rollover Sweep Complete ===")
    print(f"Candidates: {stats['candidates']}")
    print(f"Rolled over: {stats['rolled_over']}")


if __name__ == "__main__":
    asyncio.run(main())
