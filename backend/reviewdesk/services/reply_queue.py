"""
Reply retry queue processor.

The only path that actually sends queued replies: manual replies the
platform rejected and autopilot replies whose not-before time has passed.
Every failed attempt pushes ``scheduled_for`` out exponentially; after
``max_attempts`` the item is marked failed.

Before posting, a runner claims the item by moving ``scheduled_for`` one
lease ahead with a conditional UPDATE. A concurrent runner (cron endpoint
vs scheduler tick) then no longer sees it as due, and an item whose
runner died becomes due again when the lease runs out.

A pass starts with a credential check. A revoked integration aborts the
pass with ``PlatformAuthError`` and no item loses an attempt.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reviewdesk.integrations.review_platform import PlatformAuthError, ReviewPlatformClient
from reviewdesk.models import QueueStatus, RepliedVia, ReplyQueueItem, Review
from reviewdesk.services.reply_dispatcher import record_reply, reply_target

logger = logging.getLogger(__name__)

CLAIM_LEASE = timedelta(minutes=10)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReplyQueueProcessor:
    def __init__(
        self,
        clients: dict[str, ReviewPlatformClient],
        *,
        batch_size: int = 20,
        max_attempts: int = 5,
        backoff_base_minutes: int = 5,
        backoff_max_minutes: int = 240,
        claim_lease: timedelta = CLAIM_LEASE,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.clients = clients
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_base_minutes = backoff_base_minutes
        self.backoff_max_minutes = backoff_max_minutes
        self.claim_lease = claim_lease
        self.clock = clock

    def backoff(self, attempts: int) -> timedelta:
        minutes = self.backoff_base_minutes * (2 ** max(attempts - 1, 0))
        return timedelta(minutes=min(minutes, self.backoff_max_minutes))

    def _due(self, now: datetime):
        return (
            ReplyQueueItem.status == QueueStatus.pending.value,
            or_(ReplyQueueItem.scheduled_for.is_(None), ReplyQueueItem.scheduled_for <= now),
            ReplyQueueItem.attempts < self.max_attempts,
        )

    async def due_item_ids(self, session: AsyncSession, now: datetime) -> list[int]:
        rows = await session.execute(
            select(ReplyQueueItem.id)
            .where(*self._due(now))
            .order_by(ReplyQueueItem.created_at.asc(), ReplyQueueItem.id.asc())
            .limit(self.batch_size)
        )
        return [row[0] for row in rows.all()]

    async def claim(self, session: AsyncSession, item_id: int, now: datetime) -> bool:
        """Take the item for this runner if it is still due. Commits the claim."""
        claimed = await session.execute(
            update(ReplyQueueItem)
            .where(ReplyQueueItem.id == item_id, *self._due(now))
            .values(scheduled_for=now + self.claim_lease)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return claimed.rowcount == 1

    async def verify_credentials(self) -> None:
        for client in self.clients.values():
            await client.verify_credentials()

    async def run(self, session: AsyncSession) -> dict:
        """Process one batch of due items, committing after each.

        Raises ``PlatformAuthError`` when the integration needs reconnecting.
        """
        try:
            await self.verify_credentials()
        except PlatformAuthError as e:
            logger.warning("[reply_queue] integration needs reconnection, pass skipped: %s", e)
            raise

        now = self.clock()
        result = {"processed": 0, "sent": 0, "failed": 0, "retrying": 0}

        for item_id in await self.due_item_ids(session, now):
            try:
                outcome = await self._process_item(session, item_id, now)
                await session.commit()
            except PlatformAuthError as e:
                logger.warning("[reply_queue] item %s: integration needs reconnection, pass aborted: %s", item_id, e)
                await session.rollback()
                raise
            except Exception as e:
                logger.error("[reply_queue] item %s crashed: %s", item_id, e)
                await session.rollback()
                continue
            if outcome is None:
                continue
            result["processed"] += 1
            result[outcome] += 1

        logger.info(
            "[reply_queue] processed=%d sent=%d failed=%d retrying=%d",
            result["processed"], result["sent"], result["failed"], result["retrying"],
        )
        return result

    async def _process_item(self, session: AsyncSession, item_id: int, now: datetime) -> str | None:
        item = await session.get(ReplyQueueItem, item_id, populate_existing=True)
        if item is None:
            return None
        not_before = item.scheduled_for
        if not await self.claim(session, item_id, now):
            # picked up by a concurrent run
            return None
        item = await session.get(ReplyQueueItem, item_id, populate_existing=True)

        review = await session.get(Review, item.review_id)
        if review is None:
            return self._fail(item, "review not found")

        client = self.clients.get(review.platform)
        if client is None:
            record_reply(review, item.reply_body, item.queued_by, RepliedVia.manual.value, now)
            return self._mark_sent(session, item, review, now)

        target = reply_target(review)
        if not target:
            logger.warning("[reply_queue] item %s: review %s has no reply target", item.id, review.id)
            return self._fail(item, "review is missing its platform reply target")

        try:
            await client.post_reply(target, item.reply_body)
        except PlatformAuthError:
            # not the item's fault: give the claim back untouched
            item.scheduled_for = not_before
            session.add(item)
            await session.commit()
            raise
        except Exception as e:
            item.attempts = (item.attempts or 0) + 1
            item.last_error = str(e)[:1000]
            if item.attempts >= self.max_attempts:
                logger.error("[reply_queue] item %s gave up after %d attempts: %s", item.id, item.attempts, e)
                item.status = QueueStatus.failed.value
                session.add(item)
                return "failed"
            item.scheduled_for = now + self.backoff(item.attempts)
            logger.warning(
                "[reply_queue] item %s attempt %d failed, next try at %s: %s",
                item.id, item.attempts, item.scheduled_for.isoformat(), e,
            )
            session.add(item)
            return "retrying"

        item.attempts = (item.attempts or 0) + 1
        record_reply(review, item.reply_body, item.queued_by, RepliedVia.api.value, now)
        return self._mark_sent(session, item, review, now)

    def _mark_sent(self, session: AsyncSession, item: ReplyQueueItem, review: Review, now: datetime) -> str:
        item.status = QueueStatus.sent.value
        item.sent_at = now
        item.last_error = None
        session.add(item)
        session.add(review)
        logger.info("[reply_queue] item %s sent for review %s", item.id, review.id)
        return "sent"

    def _fail(self, item: ReplyQueueItem, message: str) -> str:
        item.status = QueueStatus.failed.value
        item.last_error = message
        return "failed"
