# tests/test_scheduler.py
"""Recovery sweep scheduling"""

from unittest.mock import AsyncMock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from recon.scheduler import run_recovery, start_scheduler, stop_scheduler


@pytest.mark.asyncio
async def test_recovery_job_registered():
    sched = AsyncIOScheduler()
    coordinator = AsyncMock()

    start_scheduler(coordinator, interval_seconds=30, sched=sched)
    try:
        job = sched.get_job("pipeline_recovery")
        assert job is not None
        assert job.args == (coordinator,)
        assert job.trigger.interval.total_seconds() == 30
    finally:
        stop_scheduler(sched)


@pytest.mark.asyncio
async def test_run_recovery_calls_coordinator():
    coordinator = AsyncMock()
    coordinator.recover.return_value = {"requeued": 2, "converged": 1}

    await run_recovery(coordinator)

    coordinator.recover.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_recovery_swallows_errors():
    coordinator = AsyncMock()
    coordinator.recover.side_effect = RuntimeError("database is locked")

    await run_recovery(coordinator)
