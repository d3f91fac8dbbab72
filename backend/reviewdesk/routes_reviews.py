"""
Review API Routes

User actions on reviews. The acting user id comes from the auth gateway
(``X-User-Id``); location access is checked by the dispatcher.
"""
from __future__ import annotations

from fastapi import APIRouter, Response, status

from .deps import ActorDep, PipelineDep, SessionDep
from .schemas import (
    BulkReplyRequest,
    BulkReplyResult,
    DraftResult,
    ReplyRequest,
    ReplyResult,
    StatusUpdateRequest,
    StatusUpdateResult,
)
from .services.reply_dispatcher import POSTED_VIA_QUEUED

router = APIRouter(prefix="/api/reviews", tags=["reviews"])


@router.post("/bulk-reply", response_model=BulkReplyResult)
async def bulk_reply(payload: BulkReplyRequest, session: SessionDep, pipeline: PipelineDep, actor: ActorDep):
    return await pipeline.dispatcher.bulk_reply(session, payload.review_ids, payload.reply_body, actor)


@router.post("/{review_id}/reply", response_model=ReplyResult)
async def reply_to_review(
    review_id: int,
    payload: ReplyRequest,
    response: Response,
    session: SessionDep,
    pipeline: PipelineDep,
    actor: ActorDep,
):
    """Post a reply. 202 means the platform refused it and it was queued for retry."""
    result = await pipeline.dispatcher.reply(session, review_id, payload.reply_body, actor)
    if result["posted_via"] == POSTED_VIA_QUEUED:
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@router.patch("/{review_id}/status", response_model=StatusUpdateResult)
async def update_review_status(
    review_id: int,
    payload: StatusUpdateRequest,
    session: SessionDep,
    pipeline: PipelineDep,
    actor: ActorDep,
):
    return await pipeline.dispatcher.update_status(
        session, review_id, payload.status, actor, clear_draft=payload.clear_draft
    )


@router.post("/{review_id}/ai-draft", response_model=DraftResult)
async def generate_ai_draft(review_id: int, session: SessionDep, pipeline: PipelineDep, actor: ActorDep):
    return await pipeline.dispatcher.generate_draft(session, review_id, actor)
