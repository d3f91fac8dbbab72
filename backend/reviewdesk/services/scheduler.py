"""
Scheduler Service

Periodic review pipeline jobs:
- incremental review sync for the least recently synced sources
- reply retry queue (the only sender of queued and autopilot replies)
- AI draft sweep for recent reviews that missed autopilot during sync

Each tick takes a Postgres advisory lock keyed by job, so with several
backend replicas only one of them does the work. SCHEDULER_ENABLED=false
keeps the scheduler off (tests, one-off workers).
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from reviewdesk.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock keys (arbitrary int64, one per job)
LOCK_REVIEW_SYNC = 910_001
LOCK_REPLY_QUEUE = 910_002
LOCK_DRAFT_SWEEP = 910_003

JobBody = Callable[[AsyncSession], Awaitable[dict]]


@dataclass(frozen=True)
class ReviewJob:
    id: str
    name: str
    lock_key: int
    interval_setting: str


REVIEW_JOBS = (
    ReviewJob("review_sync", "Incremental review sync", LOCK_REVIEW_SYNC, "sync_interval_minutes"),
    ReviewJob("reply_queue", "Send queued review replies", LOCK_REPLY_QUEUE, "reply_queue_interval_minutes"),
    ReviewJob("draft_sweep", "AI draft sweep", LOCK_DRAFT_SWEEP, "draft_sweep_interval_minutes"),
)


class SchedulerService:
    """Runs the review pipeline jobs on fixed intervals, one leader per tick."""

    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker | None = None
        self._pipeline = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, database_url: str, pipeline=None):
        """Point the jobs at a database and (optionally) an assembled pipeline."""
        self._engine = create_async_engine(database_url, echo=False)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        if pipeline is not None:
            self._pipeline = pipeline

    @property
    def pipeline(self):
        if self._pipeline is None:
            from reviewdesk.services.pipeline import build_pipeline

            self._pipeline = build_pipeline(get_settings())
        return self._pipeline

    def _ensure_configured(self) -> None:
        if not self._session_factory:
            self.configure(get_settings().async_database_url)

    def _job_body(self, job_id: str) -> JobBody:
        if job_id == "review_sync":
            coordinator = self.pipeline.coordinator

            async def review_sync(session: AsyncSession) -> dict:
                # a revoked integration fails the tick instead of erroring every source
                await coordinator.verify_credentials()
                return await coordinator.run_incremental(session)

            return review_sync
        if job_id == "reply_queue":
            return self.pipeline.reply_queue.run
        if job_id == "draft_sweep":
            return self.pipeline.autopilot.sweep
        raise KeyError(job_id)

    async def _try_lock(self, conn: AsyncConnection, lock_key: int) -> bool:
        locked = await conn.scalar(text(f"SELECT pg_try_advisory_lock({lock_key})"))
        await conn.commit()
        return bool(locked)

    async def _unlock(self, conn: AsyncConnection, lock_key: int) -> None:
        await conn.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))
        await conn.commit()

    async def _tick(self, job: ReviewJob) -> dict | None:
        """Run one job if this instance wins its advisory lock; None when skipped.

        The lock lives on its own connection for the whole tick; the job runs
        on a separate session whose commits return connections to the pool.
        """
        self._ensure_configured()
        async with self._engine.connect() as lock_conn:
            if not await self._try_lock(lock_conn, job.lock_key):
                logger.debug("[%s] lock held by another instance, skipping tick", job.id)
                return None
            try:
                logger.info("[%s] leader, running", job.id)
                async with self._session_factory() as session:
                    result = await self._job_body(job.id)(session)
                logger.info("[%s] done: %s", job.id, {k: v for k, v in result.items() if k != "results"})
                return result
            finally:
                await self._unlock(lock_conn, job.lock_key)

    def start(self):
        """Register the review jobs and start (no-op when SCHEDULER_ENABLED=false)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler disabled by SCHEDULER_ENABLED=false")
            return
        if self._running:
            return

        for job in REVIEW_JOBS:
            self.scheduler.add_job(
                self._tick,
                IntervalTrigger(minutes=getattr(settings, job.interval_setting)),
                args=[job],
                id=job.id,
                name=job.name,
                replace_existing=True,
            )
        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started with %d review jobs", len(REVIEW_JOBS))

    def stop(self):
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    def get_jobs(self) -> list[dict]:
        """Registered jobs with their next run time (empty until started)."""
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]

    async def run_now(self, job_id: str) -> dict[str, Any]:
        """Run one review job immediately, still under its advisory lock."""
        job = next((j for j in REVIEW_JOBS if j.id == job_id), None)
        if job is None:
            return {"error": f"Job {job_id} not found"}
        try:
            result = await self._tick(job)
        except Exception as exc:
            logger.error("[%s] manual run failed: %s", job_id, exc)
            return {"error": str(exc)}
        if result is None:
            return {"ok": False, "skipped": True}
        return {"ok": True, "result": result}


scheduler_service = SchedulerService.get_instance()
