"""
Scheduler service for the diagram gateway.
Runs dependency health polling and idle rate-window eviction on APScheduler
interval jobs, independent of request traffic.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import HEALTH_POLL_INTERVAL_SECONDS, RATE_WINDOW_EVICTION_INTERVAL_SECONDS
from services.health_aggregator import HealthAggregator
from services.rate_controller import RateController

logger = logging.getLogger(__name__)

HEALTH_POLL_JOB_ID = "health-poll"
RATE_EVICTION_JOB_ID = "rate-window-eviction"

_scheduler: Optional[AsyncIOScheduler] = None


def _get_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler()
        logger.info("APScheduler initialized successfully")
    return _scheduler


async def start_scheduler(
    aggregator: HealthAggregator,
    rate_controller: RateController,
    poll_interval: float = HEALTH_POLL_INTERVAL_SECONDS,
):
    """Start the scheduler on application startup, after one immediate health poll."""
    await _poll_health(aggregator)

    scheduler = _get_scheduler()
    scheduler.add_job(
        _poll_health,
        "interval",
        id=HEALTH_POLL_JOB_ID,
        kwargs={"aggregator": aggregator},
        seconds=poll_interval,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        rate_controller.evict_idle,
        "interval",
        id=RATE_EVICTION_JOB_ID,
        seconds=RATE_WINDOW_EVICTION_INTERVAL_SECONDS,
        replace_existing=True,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started (health poll every {poll_interval:g}s)")


async def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
        _scheduler = None


async def _poll_health(aggregator: HealthAggregator):
    dependencies = await aggregator.poll_once()
    summary = ", ".join(f"{dep.name}={dep.status.value}" for dep in dependencies)
    logger.debug(f"Health poll complete: {summary}")
