# backend/recon/services/stage_queue.py
"""
Stage Queue - durable, at-least-once job queue with per-stage worker pools

Jobs live in the stage_jobs table. Guarantees:
- At-least-once: a job is only removed from the runnable set by an explicit
  success/failure write; a crashed worker's lease expires and
  requeue_expired() makes the job runnable again.
- Dedupe: while a job is queued or active its active_key holds
  "<stage>:<dedupe_key>" under a unique index, so a second logically
  identical job resolves to the existing handle. Completion clears the key,
  so the same work can be queued again later.
- Bounded concurrency: process() starts exactly `concurrency` worker loops
  for a stage; each loop runs one job at a time.
- No implicit retries: a failed handler is retried only if the stage was
  given a RetryPolicy with max_attempts > 1.
- Re-run on demand: enqueue(..., rerun_if_active=True) against a job that is
  already running flags it; when the running delivery finishes, the same row
  goes back to queued with a fresh attempt budget instead of completing.
- Completion writes are guarded by the delivery (locked_by, attempts), so a
  worker whose lease expired cannot finish a later delivery of its job.
"""

import asyncio
import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from recon.database import dialect_insert
from recon.errors import EnqueueFailure
from recon.models import StageJob
from recon.status import JobStatus
from recon.utils.time import utc_now

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Pipeline stages, each with its own queue and concurrency limit"""
    DNS = "dns"
    SOURCE_SCRAPING = "source-scraping"
    PROFILE_GENERATION = "profile-generation"
    PRETEXT_GENERATION = "pretext-generation"


@dataclass
class RetryPolicy:
    """max_attempts=1 means a failed job is terminal immediately"""
    max_attempts: int = 1
    backoff_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        # Exponential: backoff, 2x backoff, 4x backoff, ...
        return self.backoff_seconds * (2 ** max(attempt - 1, 0))


@dataclass
class StageConfig:
    concurrency: int = 1
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    job_timeout: Optional[float] = None


@dataclass
class JobHandle:
    """
    Reference returned by enqueue()

    created=False means an unfinished duplicate existed; rerun=True means that
    duplicate was running and will run again once it finishes.
    """
    id: int
    stage: str
    dedupe_key: Optional[str]
    created: bool
    rerun: bool = False


@dataclass
class QueuedJob:
    """A claimed delivery handed to a stage handler"""
    id: int
    stage: str
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int
    dedupe_key: Optional[str] = None
    locked_by: Optional[str] = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts


Handler = Callable[[QueuedJob], Awaitable[Optional[Dict[str, Any]]]]
Listener = Callable[[QueuedJob, Any], Awaitable[None]]


class StageQueue:
    """
    Durable work queue shared by all pipeline stages

    Usage:
        queue = StageQueue(session_factory)
        await queue.enqueue(Stage.DNS, {"domain": "acme.com"}, dedupe_key="acme.com")
        queue.process(Stage.DNS, concurrency=20, handler=dns_worker.handle)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        poll_interval: float = 1.0,
        lease_seconds: int = 600,
        worker_id: Optional[str] = None
    ):
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.worker_id = worker_id or f"recon-{socket.gethostname()}-{os.getpid()}"

        self._configs: Dict[str, StageConfig] = {}
        self._tasks: Dict[str, List[asyncio.Task]] = {}
        self._active: Dict[str, int] = {}
        self._peak_active: Dict[str, int] = {}
        self._listeners: Dict[str, List[Listener]] = {"failed": [], "succeeded": []}
        self._stop_event = asyncio.Event()
        self._wakeup: Dict[str, asyncio.Event] = {}

    # ========================================================================
    # CONFIGURATION & EVENTS
    # ========================================================================

    def configure(self, stage, config: StageConfig) -> None:
        self._configs[_stage_name(stage)] = config

    def config_for(self, stage) -> StageConfig:
        return self._configs.get(_stage_name(stage), StageConfig())

    def on(self, event: str, listener: Listener) -> None:
        """Register a listener for 'failed' or 'succeeded' job events"""
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    async def _emit(self, event: str, job: QueuedJob, detail: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                await listener(job, detail)
            except Exception as e:
                logger.error(f"Queue '{event}' listener failed for job {job.id}: {e}")

    # ========================================================================
    # PRODUCER SIDE
    # ========================================================================

    async def enqueue(
        self,
        stage,
        payload: Dict[str, Any],
        dedupe_key: Optional[str] = None,
        delay_seconds: float = 0,
        rerun_if_active: bool = False
    ) -> JobHandle:
        """
        Add a job, or return the unfinished job that already has this dedupe key.

        With rerun_if_active, a duplicate that is currently running is flagged
        to run once more (with this payload) after it finishes, so work
        requested mid-run is never folded into a delivery that started before
        the request.

        Raises EnqueueFailure if the queue storage is unavailable.
        """
        stage_name = _stage_name(stage)
        active_key = f"{stage_name}:{dedupe_key}" if dedupe_key is not None else None
        max_attempts = max(1, self.config_for(stage_name).retry.max_attempts)

        try:
            # A duplicate can finish between our insert and our lookup; retry then
            for _ in range(3):
                async with self.session_factory() as session:
                    async with session.begin():
                        insert = dialect_insert(session, StageJob).values(
                            stage=stage_name,
                            payload=payload,
                            dedupe_key=dedupe_key,
                            active_key=active_key,
                            status=JobStatus.QUEUED.value,
                            attempts=0,
                            max_attempts=max_attempts,
                            available_at=utc_now() + timedelta(seconds=delay_seconds),
                        )
                        if active_key is not None:
                            insert = insert.on_conflict_do_nothing(index_elements=[StageJob.active_key])
                        result = await session.execute(insert.returning(StageJob.id))
                        job_id = result.scalar_one_or_none()

                        if job_id is not None:
                            self._notify(stage_name)
                            return JobHandle(job_id, stage_name, dedupe_key, created=True)

                        existing = (await session.execute(
                            select(StageJob.id, StageJob.status).where(StageJob.active_key == active_key)
                        )).one_or_none()

                        if existing is None:
                            continue

                        if rerun_if_active and existing.status == JobStatus.ACTIVE.value:
                            flagged = await session.execute(
                                update(StageJob)
                                .where(and_(
                                    StageJob.id == existing.id,
                                    StageJob.status == JobStatus.ACTIVE.value
                                ))
                                .values(rerun_requested=True, payload=payload)
                                .execution_options(synchronize_session=False)
                            )
                            if flagged.rowcount != 1:
                                # No longer running; look again
                                continue
                            logger.info(f"Job {existing.id} ({active_key}) is running; re-run requested")
                            return JobHandle(existing.id, stage_name, dedupe_key, created=False, rerun=True)

                        logger.debug(f"Dedupe hit for {active_key}: job {existing.id}")
                        return JobHandle(existing.id, stage_name, dedupe_key, created=False)
        except SQLAlchemyError as e:
            logger.error(f"Failed to enqueue {stage_name} job: {e}")
            raise EnqueueFailure(str(e)) from e

        raise EnqueueFailure(f"Could not enqueue {stage_name} job for {dedupe_key}")

    async def clear(self, stage) -> int:
        """Delete all queued (not yet running) jobs of a stage"""
        stage_name = _stage_name(stage)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(StageJob).where(and_(
                        StageJob.stage == stage_name,
                        StageJob.status == JobStatus.QUEUED.value
                    ))
                )
                cleared = result.rowcount or 0

        logger.info(f"Cleared {cleared} queued jobs from {stage_name}")
        return cleared

    async def stats(self, stage) -> Dict[str, int]:
        stage_name = _stage_name(stage)
        async with self.session_factory() as session:
            result = await session.execute(
                select(StageJob.status, func.count(StageJob.id))
                .where(StageJob.stage == stage_name)
                .group_by(StageJob.status)
            )
            counts = {status.value: 0 for status in JobStatus}
            counts.update({row[0]: row[1] for row in result.all()})
            return counts

    async def get_job(self, job_id: int) -> Optional[StageJob]:
        async with self.session_factory() as session:
            return await session.get(StageJob, job_id)

    async def requeue_expired(self) -> int:
        """Make jobs whose worker lease ran out runnable again"""
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(StageJob)
                    .where(and_(
                        StageJob.status == JobStatus.ACTIVE.value,
                        StageJob.lease_expires_at < now
                    ))
                    .values(
                        status=JobStatus.QUEUED.value,
                        locked_by=None,
                        locked_at=None,
                        lease_expires_at=None,
                        available_at=now,
                        last_error="Lease expired; job requeued",
                        rerun_requested=False,
                    )
                    .execution_options(synchronize_session=False)
                )
                requeued = result.rowcount or 0

        if requeued:
            logger.warning(f"Requeued {requeued} jobs with expired leases")
            for stage_name in self._wakeup:
                self._notify(stage_name)
        return requeued

    # ========================================================================
    # CONSUMER SIDE
    # ========================================================================

    def process(self, stage, concurrency: Optional[int], handler: Handler) -> None:
        """Start `concurrency` worker loops pulling jobs for a stage"""
        stage_name = _stage_name(stage)
        if stage_name in self._tasks:
            raise RuntimeError(f"Stage {stage_name} is already being processed")

        config = self.config_for(stage_name)
        if concurrency is None:
            concurrency = config.concurrency
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        config.concurrency = concurrency
        self._configs[stage_name] = config

        self._stop_event.clear()
        self._wakeup.setdefault(stage_name, asyncio.Event())
        self._active[stage_name] = 0
        self._peak_active[stage_name] = 0
        self._tasks[stage_name] = [
            asyncio.create_task(
                self._worker_loop(stage_name, handler, f"{self.worker_id}:{stage_name}:{n}"),
                name=f"{stage_name}-worker-{n}"
            )
            for n in range(concurrency)
        ]
        logger.info(f"Processing stage {stage_name} with concurrency {concurrency}")

    def active_jobs(self, stage) -> int:
        return self._active.get(_stage_name(stage), 0)

    def peak_active_jobs(self, stage) -> int:
        return self._peak_active.get(_stage_name(stage), 0)

    async def run_once(self, stage, handler: Handler, worker_id: Optional[str] = None) -> bool:
        """Claim and run a single job if one is available"""
        stage_name = _stage_name(stage)
        job = await self._claim(stage_name, worker_id or self.worker_id)
        if job is None:
            return False
        await self._run(stage_name, job, handler)
        return True

    async def stop(self, grace_seconds: float = 10.0) -> None:
        """Stop all worker loops; in-flight jobs get a grace period, then are cancelled"""
        self._stop_event.set()
        for event in self._wakeup.values():
            event.set()

        tasks = [task for stage_tasks in self._tasks.values() for task in stage_tasks]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._tasks.clear()
        logger.info("Stage queue stopped")

    async def _worker_loop(self, stage_name: str, handler: Handler, worker_id: str) -> None:
        wakeup = self._wakeup[stage_name]
        while not self._stop_event.is_set():
            try:
                job = await self._claim(stage_name, worker_id)
            except SQLAlchemyError as e:
                logger.error(f"[{worker_id}] Failed to claim job: {e}")
                job = None

            if job is not None:
                await self._run(stage_name, job, handler)
                continue

            wakeup.clear()
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue

    async def _claim(self, stage_name: str, worker_id: str) -> Optional[QueuedJob]:
        """
        Claim the oldest runnable job.

        The UPDATE is conditioned on status='queued', so when two workers
        race for the same row exactly one of them wins.
        """
        for _ in range(5):
            now = utc_now()
            async with self.session_factory() as session:
                async with session.begin():
                    candidate = (await session.execute(
                        select(StageJob.id)
                        .where(and_(
                            StageJob.stage == stage_name,
                            StageJob.status == JobStatus.QUEUED.value,
                            StageJob.available_at <= now
                        ))
                        .order_by(StageJob.available_at, StageJob.id)
                        .limit(1)
                    )).scalar_one_or_none()

                    if candidate is None:
                        return None

                    result = await session.execute(
                        update(StageJob)
                        .where(and_(
                            StageJob.id == candidate,
                            StageJob.status == JobStatus.QUEUED.value
                        ))
                        .values(
                            status=JobStatus.ACTIVE.value,
                            attempts=StageJob.attempts + 1,
                            locked_by=worker_id,
                            locked_at=now,
                            lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        continue

                    row = (await session.execute(
                        select(StageJob).where(StageJob.id == candidate)
                    )).scalar_one()

                    return QueuedJob(
                        id=row.id,
                        stage=row.stage,
                        payload=dict(row.payload or {}),
                        attempts=row.attempts,
                        max_attempts=row.max_attempts,
                        dedupe_key=row.dedupe_key,
                        locked_by=row.locked_by,
                    )
        return None

    async def _run(self, stage_name: str, job: QueuedJob, handler: Handler) -> None:
        config = self.config_for(stage_name)
        self._active[stage_name] = self._active.get(stage_name, 0) + 1
        self._peak_active[stage_name] = max(
            self._peak_active.get(stage_name, 0), self._active[stage_name]
        )
        try:
            if config.job_timeout:
                result = await asyncio.wait_for(handler(job), timeout=config.job_timeout)
            else:
                result = await handler(job)
        except asyncio.CancelledError:
            # Shutdown: leave the job active so its lease expires and it is redelivered
            logger.warning(f"Job {job.id} ({stage_name}) cancelled during shutdown")
            raise
        except asyncio.TimeoutError:
            await self._fail(job, config, TimeoutError(f"Job timed out after {config.job_timeout}s"))
        except Exception as e:
            await self._fail(job, config, e)
        else:
            await self._succeed(job, result)
        finally:
            self._active[stage_name] -= 1

    async def _succeed(self, job: QueuedJob, result: Optional[Dict[str, Any]]) -> None:
        outcome = await self._complete(job, dict(
            status=JobStatus.SUCCEEDED.value,
            active_key=None,
            result=result,
            locked_by=None,
            lease_expires_at=None,
            finished_at=utc_now(),
        ))
        if outcome == "done":
            await self._emit("succeeded", job, result)

    async def _fail(self, job: QueuedJob, config: StageConfig, error: BaseException) -> None:
        message = str(error) or error.__class__.__name__
        now = utc_now()
        retrying = job.attempts < job.max_attempts

        if retrying:
            delay = config.retry.delay_for(job.attempts)
            values = dict(
                status=JobStatus.QUEUED.value,
                available_at=now + timedelta(seconds=delay),
                last_error=message,
                locked_by=None,
                locked_at=None,
                lease_expires_at=None,
            )
        else:
            values = dict(
                status=JobStatus.FAILED.value,
                active_key=None,
                last_error=message,
                locked_by=None,
                lease_expires_at=None,
                finished_at=now,
            )

        outcome = await self._complete(job, values)
        if outcome != "done":
            return

        if retrying:
            logger.warning(
                f"Job {job.id} ({job.stage}) attempt {job.attempts}/{job.max_attempts} "
                f"failed: {message}; retrying in {delay:.0f}s"
            )
        else:
            logger.error(f"Job {job.id} ({job.stage}) failed with error: {message}")
            await self._emit("failed", job, error)

    async def _complete(self, job: QueuedJob, values: Dict[str, Any]) -> str:
        """
        Record the end of a delivery.

        Returns "done" when `values` were written, "rerun" when a re-run was
        requested mid-delivery and the job went back to queued instead, and
        "stale" when this delivery no longer owns the row (its lease expired
        and the job was handed to another worker).
        """
        owned = and_(
            StageJob.id == job.id,
            StageJob.status == JobStatus.ACTIVE.value,
            StageJob.locked_by == job.locked_by,
            StageJob.attempts == job.attempts,
        )
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(StageJob)
                    .where(and_(owned, StageJob.rerun_requested.is_(False)))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return "done"

                result = await session.execute(
                    update(StageJob)
                    .where(and_(owned, StageJob.rerun_requested.is_(True)))
                    .values(
                        status=JobStatus.QUEUED.value,
                        attempts=0,
                        rerun_requested=False,
                        available_at=utc_now(),
                        locked_by=None,
                        locked_at=None,
                        lease_expires_at=None,
                        last_error=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                rerun = result.rowcount == 1

        if rerun:
            logger.info(f"Job {job.id} ({job.stage}) re-queued: re-run requested while it was running")
            self._notify(job.stage)
            return "rerun"

        logger.warning(
            f"Job {job.id} ({job.stage}) delivery {job.attempts} by {job.locked_by} "
            f"no longer holds the job; result discarded"
        )
        return "stale"

    def _notify(self, stage_name: str) -> None:
        event = self._wakeup.get(stage_name)
        if event is not None:
            event.set()


def _stage_name(stage) -> str:
    return stage.value if isinstance(stage, Enum) else str(stage)
