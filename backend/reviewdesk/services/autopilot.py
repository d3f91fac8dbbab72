"""
Autopilot: AI reply drafts and humanized auto-send scheduling.

For locations with autopilot enabled, eligible reviews get an AI draft.
When the location does not require approval, the draft is also queued for
sending with a random not-before delay inside the configured window, so
replies do not arrive with a machine-like latency. The retry queue
processor is what actually sends them.
"""
from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reviewdesk.models import (
    AutopilotConfig,
    Location,
    QueueSource,
    QueueStatus,
    ReplyQueueItem,
    Review,
    ReviewStatus,
)
from reviewdesk.services.reply_generator import DEFAULT_TONE, ReplyContext, ReplyGenerator

logger = logging.getLogger(__name__)

# queued_by for rows created without a human actor
SYSTEM_ACTOR_ID = "00000000-0000-0000-0000-000000000000"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def random_send_delay(config: AutopilotConfig, rng: random.Random | None = None) -> timedelta:
    """Uniform delay between the config's min and max minutes, at millisecond resolution."""
    rng = rng or random
    low = min(config.delay_min_minutes, config.delay_max_minutes)
    high = max(config.delay_min_minutes, config.delay_max_minutes)
    minutes = rng.uniform(low, high)
    return timedelta(milliseconds=int(minutes * 60_000))


async def has_pending_queue_item(session: AsyncSession, review_id: int) -> bool:
    row = (
        await session.execute(
            select(ReplyQueueItem.id)
            .where(
                ReplyQueueItem.review_id == review_id,
                ReplyQueueItem.status == QueueStatus.pending.value,
            )
            .limit(1)
        )
    ).first()
    return row is not None


class AutopilotScheduler:
    def __init__(
        self,
        generator: ReplyGenerator | None,
        *,
        max_drafts_per_run: int = 10,
        sweep_max_reviews: int = 50,
        sweep_lookback_days: int = 7,
        dispatch_platforms: Iterable[str] = ("google",),
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.generator = generator
        self.max_drafts_per_run = max_drafts_per_run
        self.sweep_max_reviews = sweep_max_reviews
        self.sweep_lookback_days = sweep_lookback_days
        self.dispatch_platforms = frozenset(dispatch_platforms)
        self.rng = rng or random.Random()
        self.clock = clock

    async def process(
        self,
        session: AsyncSession,
        reviews: list[Review],
        *,
        limit: int | None = None,
    ) -> dict:
        """Draft (and maybe queue) replies for ``reviews`` in order, at most ``limit`` drafts.

        Commits after each draft, so nothing stays locked while the next one is
        generated. Generation failures are logged per review.
        """
        result = {"drafted": 0, "queued": 0, "skipped": 0, "errors": 0}
        if self.generator is None or not reviews:
            result["skipped"] = len(reviews)
            return result

        limit = self.max_drafts_per_run if limit is None else limit
        configs: dict[int, AutopilotConfig | None] = {}

        for review in reviews:
            if result["drafted"] >= limit:
                result["skipped"] += 1
                continue

            if review.location_id not in configs:
                configs[review.location_id] = (
                    await session.execute(
                        select(AutopilotConfig).where(AutopilotConfig.location_id == review.location_id)
                    )
                ).scalar_one_or_none()
            config = configs[review.location_id]
            if config is None or not config.enabled:
                result["skipped"] += 1
                continue

            if not await self._is_eligible(session, review, config):
                result["skipped"] += 1
                continue

            try:
                queued = await self._draft_one(session, review, config)
            except Exception as e:
                logger.error("[autopilot] draft for review %s failed: %s", review.id, e)
                result["errors"] += 1
                continue

            result["drafted"] += 1
            if queued:
                result["queued"] += 1
        return result

    async def _is_eligible(self, session: AsyncSession, review: Review, config: AutopilotConfig) -> bool:
        ratings = set(config.auto_reply_ratings or [])
        if review.rating is None or review.rating not in ratings:
            return False
        if review.ai_draft:
            return False
        return not await has_pending_queue_item(session, review.id)

    async def _draft_one(self, session: AsyncSession, review: Review, config: AutopilotConfig) -> bool:
        location = await session.get(Location, review.location_id)
        ctx = ReplyContext(
            business_name=location.name if location else "our business",
            reviewer_name=review.reviewer_name,
            rating=review.rating,
            body=review.body,
            tone=config.tone or DEFAULT_TONE,
            business_context=config.business_context,
        )
        text = await self.generator.generate(ctx)

        now = self.clock()
        review.ai_draft = text
        review.ai_draft_generated_at = now
        session.add(review)

        queued = False
        if not config.require_approval:
            scheduled_for = now + random_send_delay(config, self.rng)
            session.add(ReplyQueueItem(
                review_id=review.id,
                reply_body=text,
                status=QueueStatus.pending.value,
                source=QueueSource.ai_autopilot.value,
                scheduled_for=scheduled_for,
                queued_by=SYSTEM_ACTOR_ID,
            ))
            queued = True
            logger.info("[autopilot] review %s drafted, send not before %s", review.id, scheduled_for.isoformat())
        else:
            logger.info("[autopilot] review %s drafted, awaiting approval", review.id)

        await session.commit()
        return queued

    async def sweep(self, session: AsyncSession) -> dict:
        """Catch up on recent unreplied reviews that never got a draft. Commits per location."""
        totals = {"locations": 0, "reviews": 0, "drafted": 0, "queued": 0, "errors": 0}
        if self.generator is None:
            logger.info("[autopilot] no reply generator configured, sweep skipped")
            return totals

        since = self.clock() - timedelta(days=self.sweep_lookback_days)
        configs = (
            await session.execute(
                select(AutopilotConfig).where(AutopilotConfig.enabled.is_(True)).order_by(AutopilotConfig.id)
            )
        ).scalars().all()

        remaining = self.sweep_max_reviews
        for config in configs:
            if remaining <= 0:
                break
            ratings = list(config.auto_reply_ratings or [])
            if not ratings:
                continue

            reviews = (
                await session.execute(
                    select(Review)
                    .where(
                        Review.location_id == config.location_id,
                        Review.status == ReviewStatus.new.value,
                        Review.platform.in_(self.dispatch_platforms),
                        Review.reply_body.is_(None),
                        Review.ai_draft.is_(None),
                        Review.published_at >= since,
                        Review.rating.in_(ratings),
                    )
                    .order_by(Review.published_at.asc())
                    .limit(remaining)
                )
            ).scalars().all()
            if not reviews:
                continue

            totals["locations"] += 1
            totals["reviews"] += len(reviews)
            remaining -= len(reviews)

            result = await self.process(session, list(reviews), limit=len(reviews))
            await session.commit()
            totals["drafted"] += result["drafted"]
            totals["queued"] += result["queued"]
            totals["errors"] += result["errors"]

        logger.info(
            "[autopilot] sweep done: %d reviews in %d locations, %d drafted, %d queued, %d errors",
            totals["reviews"], totals["locations"], totals["drafted"], totals["queued"], totals["errors"],
        )
        return totals
