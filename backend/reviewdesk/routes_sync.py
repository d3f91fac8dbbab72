"""
Review sync API Routes

Machine-triggered entry points: scheduled sync, backfill, the Google push
webhook, manual ingest and the cron passes for the reply queue and the
AI draft sweep.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from .deps import PipelineDep, SessionDep, SettingsDep, require_cron_secret, require_review_sync_key
from .integrations.review_platform import PlatformAuthError
from .schemas import BackfillRequest, ManualSyncRequest, ReplyQueueRunRead, SyncRunRead

logger = logging.getLogger(__name__)

router = APIRouter(tags=["review-sync"])


async def _verify_or_401(pipeline) -> None:
    try:
        await pipeline.coordinator.verify_credentials()
    except PlatformAuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Google integration requires reconnection",
        ) from exc


@router.api_route(
    "/api/google/reviews/sync",
    methods=["GET", "POST"],
    response_model=SyncRunRead,
    dependencies=[Depends(require_review_sync_key)],
)
async def sync_google_reviews(session: SessionDep, pipeline: PipelineDep):
    """Incremental sync of the least recently synced sources."""
    await _verify_or_401(pipeline)
    return await pipeline.coordinator.run_incremental(session)


@router.post("/api/google/reviews/backfill", dependencies=[Depends(require_review_sync_key)])
async def backfill_google_reviews(
    session: SessionDep,
    pipeline: PipelineDep,
    settings: SettingsDep,
    payload: BackfillRequest | None = None,
):
    """Paginate every page for new (or the listed) sources."""
    payload = payload or BackfillRequest()
    if settings.celery_enabled:
        from .worker.tasks import backfill

        result = backfill.apply_async(kwargs={"source_ids": payload.source_ids, "limit": payload.limit})
        logger.info("[review_sync] backfill enqueued as %s", result.id)
        return {"ok": True, "queued": True, "task_id": result.id}

    await _verify_or_401(pipeline)
    return {"ok": True, **await pipeline.coordinator.run_backfill(session, payload.source_ids, payload.limit)}


@router.post("/api/google/reviews/webhook")
async def google_reviews_webhook(request: Request, session: SessionDep, pipeline: PipelineDep):
    """Pub/Sub push. Always acknowledged so the message is not redelivered."""
    try:
        envelope = await request.json()
    except ValueError:
        logger.warning("[webhook] body is not JSON, acknowledged")
        return {"ok": True}
    return await pipeline.coordinator.handle_push(session, envelope)


@router.post("/api/reviews/sync", dependencies=[Depends(require_review_sync_key)])
async def ingest_reviews(payload: ManualSyncRequest, session: SessionDep, pipeline: PipelineDep):
    """Push already-normalized reviews for a source through the pipeline."""
    return await pipeline.coordinator.ingest_manual(session, payload.source_id, payload.reviews, payload.trigger)


@router.get(
    "/api/cron/reply-queue",
    response_model=ReplyQueueRunRead,
    dependencies=[Depends(require_cron_secret)],
)
async def cron_reply_queue(session: SessionDep, pipeline: PipelineDep):
    """One retry-queue pass. 401 without touching any item when Google needs reconnecting."""
    try:
        return await pipeline.reply_queue.run(session)
    except PlatformAuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Google integration requires reconnection",
        ) from exc


@router.get("/api/cron/ai-drafts", dependencies=[Depends(require_review_sync_key)])
async def cron_ai_drafts(session: SessionDep, pipeline: PipelineDep):
    return {"ok": True, **await pipeline.autopilot.sweep(session)}
