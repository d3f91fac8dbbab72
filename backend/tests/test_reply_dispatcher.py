import pytest
from fastapi import HTTPException
from sqlalchemy import select

from conftest import FakePlatformClient, FakeReplyGenerator, google_review
from reviewdesk.models import Location, Organization, OrgMember, ReplyQueueItem, Review, ReviewSource
from reviewdesk.services.reply_dispatcher import ReplyDispatcher
from reviewdesk.services.review_normalizer import normalize_canonical_review, normalize_google_review
from reviewdesk.services.review_store import ReviewStore


async def _google_review(session, source_id, review_id="r1", rating=5):
    source = await session.get(ReviewSource, source_id)
    result = await ReviewStore().upsert(
        session, source, normalize_google_review(google_review(review_id, rating=rating))
    )
    await session.commit()
    return result.review_id


async def _yelp_review(session, location_id):
    source = ReviewSource(location_id=location_id, platform="yelp", meta={})
    session.add(source)
    await session.flush()
    result = await ReviewStore().upsert(session, source, normalize_canonical_review({
        "platform_review_id": "y1",
        "rating": 4,
        "published_at": "2026-02-01T09:30:00Z",
    }))
    await session.commit()
    return result.review_id


async def _queue(session, review_id):
    return (
        await session.execute(select(ReplyQueueItem).where(ReplyQueueItem.review_id == review_id))
    ).scalars().all()


class TestReply:
    async def test_posts_through_platform(self, session, seeded, platform):
        review_id = await _google_review(session, seeded.source_id)
        dispatcher = ReplyDispatcher({"google": platform})

        result = await dispatcher.reply(session, review_id, "  Thanks Jane!  ", "user-1")

        assert result["posted_via"] == "api"
        assert platform.replies == [("accounts/111/locations/222/reviews/r1", "Thanks Jane!")]
        review = await session.get(Review, review_id, populate_existing=True)
        assert review.reply_body == "Thanks Jane!"
        assert review.replied_via == "api"
        assert review.replied_by == "user-1"
        assert review.status == "responded"

    async def test_platform_failure_queues_retry(self, session, seeded, platform):
        review_id = await _google_review(session, seeded.source_id)
        platform.reply_error = RuntimeError("Failed to reply to review: 503")
        dispatcher = ReplyDispatcher({"google": platform})

        result = await dispatcher.reply(session, review_id, "Thanks!", "user-1")

        assert result["posted_via"] == "queued"
        review = await session.get(Review, review_id, populate_existing=True)
        assert review.reply_body is None
        assert review.status == "new"
        items = await _queue(session, review_id)
        assert len(items) == 1
        assert items[0].status == "pending"
        assert items[0].source == "manual_retry"
        assert items[0].scheduled_for is None
        assert items[0].queued_by == "user-1"

    async def test_missing_reply_target_is_a_client_error(self, session, seeded, platform):
        review_id = await _google_review(session, seeded.source_id)
        review = await session.get(Review, review_id)
        review.platform_metadata = {}
        await session.commit()

        with pytest.raises(HTTPException) as exc:
            await ReplyDispatcher({"google": platform}).reply(session, review_id, "Thanks!", "user-1")

        assert exc.value.status_code == 400
        assert platform.replies == []
        assert await _queue(session, review_id) == []

    async def test_platform_without_api_is_stored_manually(self, session, seeded, platform):
        review_id = await _yelp_review(session, seeded.location_id)

        result = await ReplyDispatcher({"google": platform}).reply(session, review_id, "Thank you!", "user-1")

        assert result["posted_via"] == "manual"
        review = await session.get(Review, review_id, populate_existing=True)
        assert review.replied_via == "manual"
        assert review.status == "responded"

    @pytest.mark.parametrize("text", ["", "   ", None])
    async def test_blank_reply_rejected(self, session, seeded, platform, text):
        review_id = await _google_review(session, seeded.source_id)
        with pytest.raises(HTTPException) as exc:
            await ReplyDispatcher({"google": platform}).reply(session, review_id, text, "user-1")
        assert exc.value.status_code == 400

    async def test_unknown_review_is_404(self, session, seeded, platform):
        with pytest.raises(HTTPException) as exc:
            await ReplyDispatcher({"google": platform}).reply(session, 999, "Thanks", "user-1")
        assert exc.value.status_code == 404

    async def test_outsider_is_forbidden_and_nothing_is_posted(self, session, seeded, platform):
        review_id = await _google_review(session, seeded.source_id)

        with pytest.raises(HTTPException) as exc:
            await ReplyDispatcher({"google": platform}).reply(session, review_id, "Thanks", "stranger")

        assert exc.value.status_code == 403
        assert platform.replies == []

    async def test_agency_admin_of_another_org_may_reply(self, session, seeded, platform):
        agency = Organization(name="Agency")
        session.add(agency)
        await session.flush()
        session.add(OrgMember(org_id=agency.id, user_id="agent-7", is_agency_admin=True))
        await session.commit()
        review_id = await _google_review(session, seeded.source_id)

        result = await ReplyDispatcher({"google": platform}).reply(session, review_id, "Thanks", "agent-7")

        assert result["posted_via"] == "api"


class TestBulkReply:
    async def test_counts_by_outcome(self, session, seeded):
        platform = FakePlatformClient()
        ok_id = await _google_review(session, seeded.source_id, "ok")
        broken_id = await _google_review(session, seeded.source_id, "broken")
        broken = await session.get(Review, broken_id)
        broken.platform_metadata = {}
        await session.commit()
        yelp_id = await _yelp_review(session, seeded.location_id)

        result = await ReplyDispatcher({"google": platform}).bulk_reply(
            session, [ok_id, broken_id, yelp_id, 12345], "Thanks for visiting!", "user-1"
        )

        assert result == {"ok": True, "posted": 1, "queued": 0, "stored": 1, "failed": 1}

    async def test_queued_count_when_platform_rejects(self, session, seeded):
        platform = FakePlatformClient()
        platform.reply_error = RuntimeError("503")
        review_id = await _google_review(session, seeded.source_id)

        result = await ReplyDispatcher({"google": platform}).bulk_reply(session, [review_id], "Thanks!", "user-1")

        assert result["queued"] == 1

    async def test_any_forbidden_location_rejects_the_batch(self, session, seeded, platform):
        other_org = Organization(name="Other")
        session.add(other_org)
        await session.flush()
        other_location = Location(org_id=other_org.id, name="Elsewhere")
        session.add(other_location)
        await session.flush()
        other_source = ReviewSource(
            location_id=other_location.id, platform="google", external_resource="accounts/9/locations/9", meta={}
        )
        session.add(other_source)
        await session.commit()
        mine = await _google_review(session, seeded.source_id, "mine")
        theirs = await _google_review(session, other_source.id, "theirs")

        with pytest.raises(HTTPException) as exc:
            await ReplyDispatcher({"google": platform}).bulk_reply(session, [mine, theirs], "Thanks", "user-1")

        assert exc.value.status_code == 403
        assert platform.replies == []

    async def test_validation(self, session, seeded, platform):
        dispatcher = ReplyDispatcher({"google": platform})
        with pytest.raises(HTTPException) as exc:
            await dispatcher.bulk_reply(session, [1], " ", "user-1")
        assert exc.value.status_code == 400
        with pytest.raises(HTTPException) as exc:
            await dispatcher.bulk_reply(session, [], "Thanks", "user-1")
        assert exc.value.status_code == 400
        with pytest.raises(HTTPException) as exc:
            await dispatcher.bulk_reply(session, [404], "Thanks", "user-1")
        assert exc.value.status_code == 404


class TestStatusAndDrafts:
    async def test_status_update_clears_draft(self, session, seeded, platform):
        review_id = await _google_review(session, seeded.source_id)
        review = await session.get(Review, review_id)
        review.ai_draft = "Draft"
        await session.commit()

        result = await ReplyDispatcher({"google": platform}).update_status(
            session, review_id, "archived", "user-1", clear_draft=True
        )

        assert result["status"] == "archived"
        review = await session.get(Review, review_id, populate_existing=True)
        assert review.status == "archived"
        assert review.ai_draft is None

    async def test_invalid_status_rejected(self, session, seeded, platform):
        review_id = await _google_review(session, seeded.source_id)
        with pytest.raises(HTTPException) as exc:
            await ReplyDispatcher({"google": platform}).update_status(session, review_id, "deleted", "user-1")
        assert exc.value.status_code == 400

    async def test_on_demand_draft(self, session, seeded, platform):
        review_id = await _google_review(session, seeded.source_id)
        generator = FakeReplyGenerator("Thanks Jane, see you soon!")

        result = await ReplyDispatcher({"google": platform}, generator).generate_draft(session, review_id, "user-1")

        assert result["ai_draft"] == "Thanks Jane, see you soon!"
        assert generator.calls[0].tone == "professional and friendly"
        review = await session.get(Review, review_id, populate_existing=True)
        assert review.ai_draft == "Thanks Jane, see you soon!"

    async def test_draft_without_generator_is_503(self, session, seeded, platform):
        review_id = await _google_review(session, seeded.source_id)
        with pytest.raises(HTTPException) as exc:
            await ReplyDispatcher({"google": platform}).generate_draft(session, review_id, "user-1")
        assert exc.value.status_code == 503
