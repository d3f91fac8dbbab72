import base64
import json

import httpx
import pytest
from sqlalchemy import select

from conftest import GBP_LOCATION, google_review
from reviewdesk.db import get_session
from reviewdesk.integrations.google_business import GoogleAuthError
from reviewdesk.main import app
from reviewdesk.models import IntegrationMapping, ReplyQueueItem, ReviewSource
from reviewdesk.services.review_normalizer import normalize_google_review
from reviewdesk.services.review_store import ReviewStore
from reviewdesk.settings import get_settings


@pytest.fixture
async def client(session_factory, pipeline):
    async def _session():
        async with session_factory() as s:
            yield s

    original_pipeline = app.state.pipeline
    app.dependency_overrides[get_session] = _session
    app.state.pipeline = pipeline
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    app.state.pipeline = original_pipeline


def _use_settings(**update):
    configured = get_settings().model_copy(update=update)
    app.dependency_overrides[get_settings] = lambda: configured


async def _stored_review(session, source_id, review_id="r1"):
    source = await session.get(ReviewSource, source_id)
    result = await ReviewStore().upsert(session, source, normalize_google_review(google_review(review_id)))
    await session.commit()
    return result.review_id


class TestSyncRoutes:
    async def test_ping(self, client):
        response = await client.get("/ping")
        assert response.json() == {"status": "ok"}

    async def test_sync_runs_without_key_in_dev(self, client, seeded, platform):
        platform.set_pages(GBP_LOCATION, [google_review("a")])

        response = await client.post("/api/google/reviews/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["sources"] == 1
        assert body["synced"] == 1

    async def test_sync_requires_bearer_when_configured(self, client, seeded):
        _use_settings(review_sync_api_key="s3cret")

        missing = await client.get("/api/google/reviews/sync")
        wrong = await client.get("/api/google/reviews/sync", headers={"Authorization": "Bearer nope"})
        right = await client.get("/api/google/reviews/sync", headers={"Authorization": "Bearer s3cret"})

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200

    async def test_revoked_google_grant_is_401(self, client, seeded, platform):
        platform.auth_error = GoogleAuthError("invalid_grant")

        response = await client.post("/api/google/reviews/sync")

        assert response.status_code == 401
        assert response.json()["detail"] == "Google integration requires reconnection"
        assert platform.fetch_calls == []

    async def test_inline_backfill(self, client, seeded, platform):
        platform.set_pages(GBP_LOCATION, [google_review("a")], [google_review("b")])

        response = await client.post("/api/google/reviews/backfill", json={})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["synced"] == 2

    async def test_webhook_always_acknowledges(self, client, seeded, platform):
        garbage = await client.post("/api/google/reviews/webhook", content=b"not json at all")
        bad_data = await client.post("/api/google/reviews/webhook", json={"message": {"data": "%%%"}})

        assert garbage.status_code == 200 and garbage.json() == {"ok": True}
        assert bad_data.status_code == 200 and bad_data.json() == {"ok": True}
        assert platform.fetch_calls == []

    async def test_webhook_with_location(self, client, session, seeded, platform):
        session.add(IntegrationMapping(
            resource_type="gbp_location", external_resource_id=GBP_LOCATION, location_id=seeded.location_id
        ))
        await session.commit()
        data = base64.b64encode(json.dumps({"location_name": GBP_LOCATION}).encode()).decode()

        response = await client.post("/api/google/reviews/webhook", json={"message": {"data": data}})

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert len(platform.fetch_calls) == 1

    async def test_manual_ingest_unknown_source(self, client, seeded):
        response = await client.post("/api/reviews/sync", json={"source_id": 999, "reviews": [{"platform_review_id": "x"}]})
        assert response.status_code == 404

    async def test_cron_reply_queue_checks_secret(self, client, seeded):
        _use_settings(cron_secret="cron-key")

        denied = await client.get("/api/cron/reply-queue")
        allowed = await client.get("/api/cron/reply-queue", headers={"Authorization": "Bearer cron-key"})

        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert allowed.json() == {"processed": 0, "sent": 0, "failed": 0, "retrying": 0}

    async def test_cron_reply_queue_with_revoked_grant_is_401(self, client, session, seeded, platform):
        review_id = await _stored_review(session, seeded.source_id)
        session.add(ReplyQueueItem(review_id=review_id, reply_body="Thanks", queued_by="user-1"))
        await session.commit()
        platform.auth_error = GoogleAuthError("invalid_grant")

        response = await client.get("/api/cron/reply-queue")

        assert response.status_code == 401
        assert response.json()["detail"] == "Google integration requires reconnection"
        item = (await session.execute(select(ReplyQueueItem))).scalar_one()
        assert item.attempts == 0
        assert item.status == "pending"

    async def test_cron_ai_drafts(self, client, seeded):
        response = await client.get("/api/cron/ai-drafts")
        assert response.status_code == 200
        assert response.json()["ok"] is True


class TestReviewRoutes:
    async def test_reply_requires_user(self, client, session, seeded):
        review_id = await _stored_review(session, seeded.source_id)

        response = await client.post(f"/api/reviews/{review_id}/reply", json={"reply_body": "Thanks"})

        assert response.status_code == 401

    async def test_reply_posted(self, client, session, seeded, platform):
        review_id = await _stored_review(session, seeded.source_id)

        response = await client.post(
            f"/api/reviews/{review_id}/reply", json={"reply_body": "Thanks"}, headers={"X-User-Id": "user-1"}
        )

        assert response.status_code == 200
        assert response.json()["posted_via"] == "api"
        assert len(platform.replies) == 1

    async def test_reply_queued_is_202(self, client, session, seeded, platform):
        review_id = await _stored_review(session, seeded.source_id)
        platform.reply_error = RuntimeError("Failed to reply to review: 503")

        response = await client.post(
            f"/api/reviews/{review_id}/reply", json={"reply_body": "Thanks"}, headers={"X-User-Id": "user-1"}
        )

        assert response.status_code == 202
        assert response.json()["posted_via"] == "queued"

    async def test_reply_forbidden_for_outsider(self, client, session, seeded):
        review_id = await _stored_review(session, seeded.source_id)

        response = await client.post(
            f"/api/reviews/{review_id}/reply", json={"reply_body": "Thanks"}, headers={"X-User-Id": "stranger"}
        )

        assert response.status_code == 403

    async def test_invalid_status_is_400(self, client, session, seeded):
        review_id = await _stored_review(session, seeded.source_id)

        response = await client.patch(
            f"/api/reviews/{review_id}/status", json={"status": "deleted"}, headers={"X-User-Id": "user-1"}
        )

        assert response.status_code == 400

    async def test_bulk_reply(self, client, session, seeded):
        ids = [await _stored_review(session, seeded.source_id, f"r{i}") for i in range(2)]

        response = await client.post(
            "/api/reviews/bulk-reply",
            json={"review_ids": ids, "reply_body": "Thank you!"},
            headers={"X-User-Id": "user-1"},
        )

        assert response.status_code == 200
        assert response.json()["posted"] == 2

    async def test_ai_draft(self, client, session, seeded, generator):
        review_id = await _stored_review(session, seeded.source_id)

        response = await client.post(f"/api/reviews/{review_id}/ai-draft", headers={"X-User-Id": "user-1"})

        assert response.status_code == 200
        assert response.json()["ai_draft"] == generator.text


class TestSchedulerRoutes:
    async def test_status_when_not_started(self, client):
        response = await client.get("/api/scheduler/status")

        assert response.status_code == 200
        assert response.json()["running"] is False

    async def test_unknown_job_is_404(self, client):
        response = await client.post("/api/scheduler/jobs/nope/run")
        assert response.status_code == 404
