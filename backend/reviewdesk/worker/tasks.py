"""
Celery tasks for review pipeline runs.

Each task builds its own engine and pipeline and runs the async code in a
fresh event loop with asyncio.run().
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reviewdesk.worker.celery_app import celery_app

logger = logging.getLogger(__name__)

BACKFILL_TIME_LIMIT = 4 * 3600


async def _run_with_pipeline(job: Callable[..., Awaitable[dict]]) -> dict:
    from reviewdesk.services.pipeline import build_pipeline
    from reviewdesk.settings import get_settings

    settings = get_settings()
    engine = create_async_engine(settings.async_database_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    pipeline = build_pipeline(settings)
    try:
        async with session_factory() as session:
            return await job(pipeline, session)
    finally:
        await engine.dispose()


async def _incremental_sync(pipeline, session: AsyncSession) -> dict:
    await pipeline.coordinator.verify_credentials()
    return await pipeline.coordinator.run_incremental(session)


@celery_app.task(bind=True, name="reviews.incremental_sync", queue="reviews")
def incremental_sync(self) -> dict:
    logger.info("[worker] incremental sync (celery_id=%s)", self.request.id)
    result = asyncio.run(_run_with_pipeline(_incremental_sync))
    logger.info("[worker] incremental sync done: %d sources, %d reviews", result["sources"], result["synced"])
    return result


@celery_app.task(
    bind=True,
    name="reviews.backfill",
    queue="reviews",
    time_limit=BACKFILL_TIME_LIMIT,
    soft_time_limit=BACKFILL_TIME_LIMIT - 300,
)
def backfill(self, source_ids: list[int] | None = None, limit: int | None = None) -> dict:
    logger.info("[worker] backfill source_ids=%s limit=%s (celery_id=%s)", source_ids, limit, self.request.id)

    async def job(pipeline, session: AsyncSession) -> dict:
        await pipeline.coordinator.verify_credentials()
        return await pipeline.coordinator.run_backfill(session, source_ids=source_ids, limit=limit)

    result = asyncio.run(_run_with_pipeline(job))
    logger.info("[worker] backfill done: %d sources, %d reviews", result["sources"], result["synced"])
    return result


@celery_app.task(bind=True, name="reviews.process_reply_queue", queue="reviews")
def process_reply_queue(self) -> dict:
    async def job(pipeline, session: AsyncSession) -> dict:
        return await pipeline.reply_queue.run(session)

    return asyncio.run(_run_with_pipeline(job))


@celery_app.task(bind=True, name="reviews.draft_sweep", queue="reviews")
def draft_sweep(self) -> dict:
    async def job(pipeline, session: AsyncSession) -> dict:
        return await pipeline.autopilot.sweep(session)

    return asyncio.run(_run_with_pipeline(job))
