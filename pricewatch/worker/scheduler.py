"""APScheduler job definitions."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pricewatch.config import settings
from pricewatch.worker.monitor import CheckRunner, check_runner

logger = logging.getLogger(__name__)


def setup_scheduler(runner: Optional[CheckRunner] = None) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Per-product timing lives in products.next_check_at, so a single poll job
    is enough and the scheduler holds no state across restarts.

    Returns:
        Configured scheduler instance
    """
    runner = runner or check_runner
    scheduler = AsyncIOScheduler()
    poll_seconds = max(1, int(settings.scheduler_poll_seconds))

    scheduler.add_job(
        runner.run_due_checks,
        IntervalTrigger(seconds=poll_seconds),
        id="due_product_checks",
        name="Check due products",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=poll_seconds * 5,
        replace_existing=True,
    )

    logger.info(f"Scheduler configured: due-product poll every {poll_seconds}s")
    return scheduler
