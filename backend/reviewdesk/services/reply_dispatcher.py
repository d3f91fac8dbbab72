"""
Reply dispatcher.

Posts a user's reply to the review platform when the platform has an API
client, otherwise records it as posted by hand. A platform rejection is a
soft success: the reply goes to the retry queue and the caller is told it
was queued.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reviewdesk.integrations.review_platform import ReviewPlatformClient
from reviewdesk.models import (
    AutopilotConfig,
    Location,
    QueueSource,
    QueueStatus,
    RepliedVia,
    ReplyQueueItem,
    Review,
    ReviewStatus,
)
from reviewdesk.services.access import can_access_location, ensure_location_access
from reviewdesk.services.reply_generator import DEFAULT_TONE, ReplyContext, ReplyGenerator

logger = logging.getLogger(__name__)

POSTED_VIA_API = "api"
POSTED_VIA_QUEUED = "queued"
POSTED_VIA_MANUAL = "manual"


class MissingReplyTarget(ValueError):
    """Review has no stored platform handle to reply to."""


def reply_target(review: Review) -> str | None:
    return (review.platform_metadata or {}).get("resource_name")


def record_reply(review: Review, text: str, actor: str, via: str, now: datetime | None = None) -> None:
    review.reply_body = text
    review.reply_published_at = now or datetime.now(timezone.utc)
    review.replied_by = actor
    review.replied_via = via
    review.status = ReviewStatus.responded.value


class ReplyDispatcher:
    def __init__(
        self,
        clients: dict[str, ReviewPlatformClient],
        generator: ReplyGenerator | None = None,
    ):
        self.clients = clients
        self.generator = generator

    async def _load_review(self, session: AsyncSession, review_id: int) -> Review:
        review = await session.get(Review, review_id)
        if not review:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Review not found")
        return review

    async def _dispatch(self, session: AsyncSession, review: Review, text: str, actor: str) -> str:
        client = self.clients.get(review.platform)
        if client is None:
            record_reply(review, text, actor, RepliedVia.manual.value)
            session.add(review)
            return POSTED_VIA_MANUAL

        target = reply_target(review)
        if not target:
            raise MissingReplyTarget(f"review {review.id} has no reply target")

        try:
            await client.post_reply(target, text)
        except Exception as e:
            logger.warning("[reply] review %s post failed, queued for retry: %s", review.id, e)
            session.add(ReplyQueueItem(
                review_id=review.id,
                reply_body=text,
                status=QueueStatus.pending.value,
                source=QueueSource.manual_retry.value,
                scheduled_for=None,
                queued_by=actor,
            ))
            return POSTED_VIA_QUEUED

        record_reply(review, text, actor, RepliedVia.api.value)
        session.add(review)
        return POSTED_VIA_API

    async def reply(self, session: AsyncSession, review_id: int, text: str, actor: str) -> dict:
        text = (text or "").strip()
        if not text:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Reply text is required")

        review = await self._load_review(session, review_id)
        await ensure_location_access(session, actor, review.location_id)

        try:
            posted_via = await self._dispatch(session, review, text, actor)
        except MissingReplyTarget:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Review is missing its platform reply target; re-sync the source",
            )
        await session.commit()
        logger.info("[reply] review %s replied by %s via %s", review_id, actor, posted_via)
        return {"ok": True, "review_id": review_id, "posted_via": posted_via}

    async def bulk_reply(self, session: AsyncSession, review_ids: list[int], text: str, actor: str) -> dict:
        text = (text or "").strip()
        if not text:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Reply text is required")
        if not review_ids:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No reviews selected")

        reviews = (
            await session.execute(select(Review).where(Review.id.in_(set(review_ids))).order_by(Review.id))
        ).scalars().all()
        if not reviews:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No reviews found")

        # authorize everything before touching anything
        for location_id in sorted({r.location_id for r in reviews}):
            location = await session.get(Location, location_id)
            if location is None or not await can_access_location(session, actor, location):
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

        counts = {"posted": 0, "queued": 0, "stored": 0, "failed": 0}
        for review in reviews:
            try:
                posted_via = await self._dispatch(session, review, text, actor)
            except MissingReplyTarget:
                logger.warning("[reply] bulk: review %s has no reply target", review.id)
                counts["failed"] += 1
                continue
            await session.commit()
            if posted_via == POSTED_VIA_API:
                counts["posted"] += 1
            elif posted_via == POSTED_VIA_QUEUED:
                counts["queued"] += 1
            else:
                counts["stored"] += 1

        logger.info("[reply] bulk by %s: %s", actor, counts)
        return {"ok": True, **counts}

    async def update_status(
        self,
        session: AsyncSession,
        review_id: int,
        new_status: str,
        actor: str,
        *,
        clear_draft: bool = False,
    ) -> dict:
        valid = {s.value for s in ReviewStatus}
        if new_status not in valid:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status. Must be one of: {', '.join(sorted(valid))}",
            )

        review = await self._load_review(session, review_id)
        await ensure_location_access(session, actor, review.location_id)

        review.status = new_status
        if clear_draft:
            review.ai_draft = None
            review.ai_draft_generated_at = None
        session.add(review)
        await session.commit()
        return {"ok": True, "review_id": review_id, "status": new_status}

    async def generate_draft(self, session: AsyncSession, review_id: int, actor: str) -> dict:
        if self.generator is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="AI drafts are not configured")

        review = await self._load_review(session, review_id)
        location = await ensure_location_access(session, actor, review.location_id)

        config = (
            await session.execute(select(AutopilotConfig).where(AutopilotConfig.location_id == review.location_id))
        ).scalar_one_or_none()
        ctx = ReplyContext(
            business_name=location.name,
            reviewer_name=review.reviewer_name,
            rating=review.rating,
            body=review.body,
            tone=(config.tone if config and config.tone else DEFAULT_TONE),
            business_context=config.business_context if config else None,
        )
        try:
            draft = await self.generator.generate(ctx)
        except Exception as e:
            logger.error("[reply] draft generation for review %s failed: %s", review_id, e)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Draft generation failed") from e

        now = datetime.now(timezone.utc)
        review.ai_draft = draft
        review.ai_draft_generated_at = now
        session.add(review)
        await session.commit()
        return {"ok": True, "review_id": review_id, "ai_draft": draft, "generated_at": now.isoformat()}
