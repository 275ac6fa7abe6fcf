"""
Scheduled Tasks for Account Linking

Periodic background tasks:
1. Linking token sweep - delete expired, never-redeemed linking codes

Uses APScheduler for in-process scheduling. With several web workers, enable
the scheduler on one of them only (ENABLE_SCHEDULER=false on the rest).
"""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from clixen.services.errors import StoreError
from clixen.services.linking_service import LinkingTokenService

logger = logging.getLogger("clixen.scheduler")

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def run_linking_token_sweep(linking: LinkingTokenService) -> int:
    """Remove expired linking tokens. Errors are logged; the next run retries."""
    logger.info("Starting linking token sweep...")
    try:
        removed = await linking.sweep_expired()
    except StoreError as e:
        logger.error(f"Linking token sweep failed: {e.detail}")
        return 0
    logger.info(f"Linking token sweep complete: {removed} expired tokens removed")
    return removed


def setup_scheduler(
    linking: LinkingTokenService,
    sweep_interval_minutes: int = 15,
) -> AsyncIOScheduler:
    """
    Set up the APScheduler with linking maintenance tasks.

    Args:
        linking: Service whose expired tokens are swept
        sweep_interval_minutes: How often to sweep (default: every 15 minutes)

    Returns:
        Configured scheduler instance
    """
    global scheduler

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_linking_token_sweep,
        trigger=IntervalTrigger(minutes=sweep_interval_minutes),
        args=[linking],
        id="linking_token_sweep",
        name="Linking Token Expiry Sweep",
        replace_existing=True,
    )

    logger.info(f"Scheduler configured: linking token sweep every {sweep_interval_minutes}min")
    return scheduler


def start_scheduler(linking: LinkingTokenService, sweep_interval_minutes: int = 15):
    """Start the scheduler if not already running."""
    global scheduler

    if scheduler is None:
        scheduler = setup_scheduler(linking, sweep_interval_minutes)

    if not scheduler.running:
        scheduler.start()
        logger.info("Linking maintenance scheduler started")


def stop_scheduler():
    """Stop the scheduler if running."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Linking maintenance scheduler stopped")
    scheduler = None


# Run the sweep manually against the configured database
if __name__ == "__main__":
    async def main():
        from clixen.config import settings
        from clixen.db import async_session_maker
        from clixen.services.audit_service import AuditLogger

        linking = LinkingTokenService(
            async_session_maker,
            AuditLogger(async_session_maker),
            ttl_minutes=settings.linking_token_ttl_minutes,
        )
        removed = await run_linking_token_sweep(linking)
        print(f"Removed {removed} expired linking tokens")

    asyncio.run(main())
