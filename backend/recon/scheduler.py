"""APScheduler configuration for pipeline recovery jobs."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging

logger = logging.getLogger(__name__)

# Create scheduler instance
scheduler = AsyncIOScheduler()


async def run_recovery(coordinator):
    """
    Recovery sweep - called by APScheduler.

    1. Requeues jobs whose worker lease expired (crashed or killed workers)
    2. Re-runs convergence for every pending target, covering evaluations
       that failed on a store error
    """
    try:
        stats = await coordinator.recover()
        if stats["requeued"] or stats["converged"]:
            logger.info(f"Recovery sweep: {stats}")
    except Exception as e:
        logger.error(f"Error in recovery sweep: {e}")


def start_scheduler(coordinator, interval_seconds: int = 60, sched: AsyncIOScheduler = None):
    """Register the recovery job and start the scheduler."""
    sched = sched or scheduler
    if sched.running:
        logger.info("Scheduler already running")
        return sched

    sched.add_job(
        run_recovery,
        trigger=IntervalTrigger(seconds=interval_seconds),
        args=[coordinator],
        id="pipeline_recovery",
        name="Pipeline Recovery",
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    sched.start()
    logger.info(f"Scheduled: Pipeline Recovery (every {interval_seconds}s)")
    return sched


def stop_scheduler(sched: AsyncIOScheduler = None):
    """Stop the scheduler gracefully."""
    sched = sched or scheduler
    if sched.running:
        sched.shutdown(wait=False)
        logger.info("Scheduler stopped")
