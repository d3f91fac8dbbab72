from datetime import timedelta

import pytest

from conftest import FIXED_NOW, FakePlatformClient, aware, google_review
from reviewdesk.integrations.google_business import GoogleAuthError
from reviewdesk.integrations.review_platform import PlatformAuthError
from reviewdesk.models import ReplyQueueItem, Review, ReviewSource
from reviewdesk.services.reply_queue import CLAIM_LEASE, ReplyQueueProcessor
from reviewdesk.services.review_normalizer import normalize_google_review
from reviewdesk.services.review_store import ReviewStore


async def _queued(session, source_id, *, scheduled_for=None, source="manual_retry", queued_by="user-1"):
    src = await session.get(ReviewSource, source_id)
    result = await ReviewStore().upsert(session, src, normalize_google_review(google_review("r1")))
    item = ReplyQueueItem(
        review_id=result.review_id,
        reply_body="Thanks Jane!",
        source=source,
        scheduled_for=scheduled_for,
        queued_by=queued_by,
    )
    session.add(item)
    await session.commit()
    return result.review_id, item.id


def _processor(platform, clock=lambda: FIXED_NOW, **kwargs):
    return ReplyQueueProcessor({"google": platform}, clock=clock, **kwargs)


class TestBackoff:
    def test_doubles_and_caps(self):
        processor = ReplyQueueProcessor({}, backoff_base_minutes=5, backoff_max_minutes=240)
        assert processor.backoff(1) == timedelta(minutes=5)
        assert processor.backoff(2) == timedelta(minutes=10)
        assert processor.backoff(4) == timedelta(minutes=40)
        assert processor.backoff(10) == timedelta(minutes=240)


class TestReplyQueue:
    async def test_due_item_is_sent(self, session, seeded):
        platform = FakePlatformClient()
        review_id, item_id = await _queued(session, seeded.source_id, queued_by="user-9")

        result = await _processor(platform).run(session)

        assert result == {"processed": 1, "sent": 1, "failed": 0, "retrying": 0}
        assert platform.replies == [("accounts/111/locations/222/reviews/r1", "Thanks Jane!")]
        item = await session.get(ReplyQueueItem, item_id, populate_existing=True)
        assert item.status == "sent"
        assert item.sent_at is not None
        review = await session.get(Review, review_id, populate_existing=True)
        assert review.status == "responded"
        assert review.replied_via == "api"
        assert review.replied_by == "user-9"

    async def test_not_before_is_respected(self, session, seeded):
        platform = FakePlatformClient()
        _, item_id = await _queued(
            session, seeded.source_id, scheduled_for=FIXED_NOW + timedelta(minutes=45), source="ai_autopilot"
        )

        result = await _processor(platform).run(session)
        assert result["processed"] == 0
        assert platform.replies == []

        later = _processor(platform, clock=lambda: FIXED_NOW + timedelta(minutes=46))
        result = await later.run(session)
        assert result["sent"] == 1

    async def test_failures_back_off_then_give_up(self, session, seeded):
        platform = FakePlatformClient()
        platform.reply_error = RuntimeError("Failed to reply to review: 500")
        _, item_id = await _queued(session, seeded.source_id)
        now = FIXED_NOW

        result = await _processor(platform, clock=lambda: now, max_attempts=3).run(session)
        assert result["retrying"] == 1
        item = await session.get(ReplyQueueItem, item_id, populate_existing=True)
        assert item.attempts == 1
        assert item.status == "pending"
        assert "500" in item.last_error
        assert aware(item.scheduled_for) == FIXED_NOW + timedelta(minutes=5)

        # not due yet: nothing happens
        result = await _processor(platform, clock=lambda: FIXED_NOW + timedelta(minutes=1), max_attempts=3).run(session)
        assert result["processed"] == 0

        result = await _processor(platform, clock=lambda: FIXED_NOW + timedelta(minutes=5), max_attempts=3).run(session)
        assert result["retrying"] == 1
        item = await session.get(ReplyQueueItem, item_id, populate_existing=True)
        assert item.attempts == 2
        assert aware(item.scheduled_for) == FIXED_NOW + timedelta(minutes=15)

        result = await _processor(platform, clock=lambda: FIXED_NOW + timedelta(hours=1), max_attempts=3).run(session)
        assert result["failed"] == 1
        item = await session.get(ReplyQueueItem, item_id, populate_existing=True)
        assert item.status == "failed"
        assert item.attempts == 3

        result = await _processor(platform, clock=lambda: FIXED_NOW + timedelta(days=1), max_attempts=3).run(session)
        assert result["processed"] == 0

    async def test_missing_reply_target_fails_immediately(self, session, seeded):
        platform = FakePlatformClient()
        review_id, item_id = await _queued(session, seeded.source_id)
        review = await session.get(Review, review_id)
        review.platform_metadata = {}
        await session.commit()

        result = await _processor(platform).run(session)

        assert result["failed"] == 1
        item = await session.get(ReplyQueueItem, item_id, populate_existing=True)
        assert item.status == "failed"
        assert item.attempts == 0
        assert platform.replies == []

    async def test_batch_size_limits_work(self, session, seeded):
        platform = FakePlatformClient()
        review_id, _ = await _queued(session, seeded.source_id)
        for _ in range(3):
            session.add(ReplyQueueItem(review_id=review_id, reply_body="Again", queued_by="user-1"))
        await session.commit()

        result = await _processor(platform, batch_size=2).run(session)

        assert result["processed"] == 2


class TestAuthOutage:
    async def test_revoked_grant_aborts_before_any_item(self, session, seeded):
        platform = FakePlatformClient()
        platform.auth_error = GoogleAuthError("Google integration requires reconnection")
        _, item_id = await _queued(session, seeded.source_id)

        with pytest.raises(PlatformAuthError):
            await _processor(platform).run(session)

        item = await session.get(ReplyQueueItem, item_id, populate_existing=True)
        assert item.status == "pending"
        assert item.attempts == 0
        assert item.scheduled_for is None
        assert platform.replies == []

    async def test_auth_failure_on_post_does_not_use_attempts(self, session, seeded):
        platform = FakePlatformClient()
        platform.reply_error = GoogleAuthError("Google integration requires reconnection")
        _, item_id = await _queued(session, seeded.source_id)

        for hours in range(6):
            processor = _processor(platform, clock=lambda h=hours: FIXED_NOW + timedelta(hours=5 * h))
            with pytest.raises(PlatformAuthError):
                await processor.run(session)

        item = await session.get(ReplyQueueItem, item_id, populate_existing=True)
        assert item.status == "pending"
        assert item.attempts == 0
        assert item.scheduled_for is None

        platform.reply_error = None
        result = await _processor(platform, clock=lambda: FIXED_NOW + timedelta(days=2)).run(session)
        assert result["sent"] == 1


class TestClaim:
    async def test_an_item_is_claimed_by_one_runner(self, session, seeded):
        platform = FakePlatformClient()
        _, item_id = await _queued(session, seeded.source_id)
        mine, theirs = _processor(platform), _processor(platform)

        assert await mine.claim(session, item_id, FIXED_NOW) is True
        assert await theirs.claim(session, item_id, FIXED_NOW) is False

        result = await theirs.run(session)
        assert result["processed"] == 0
        assert platform.replies == []

    async def test_claim_of_a_dead_runner_expires(self, session, seeded):
        platform = FakePlatformClient()
        _, item_id = await _queued(session, seeded.source_id)
        await _processor(platform).claim(session, item_id, FIXED_NOW)

        later = _processor(platform, clock=lambda: FIXED_NOW + CLAIM_LEASE + timedelta(seconds=1))
        result = await later.run(session)

        assert result["sent"] == 1
        assert len(platform.replies) == 1
