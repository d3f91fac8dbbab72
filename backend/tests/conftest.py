"""
Shared fixtures: in-memory SQLite database, seeded tenancy and fakes for
the platform, reply generator and e-mail collaborators.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["CELERY_ENABLED"] = "false"
os.environ.pop("REVIEW_SYNC_API_KEY", None)
os.environ.pop("CRON_SECRET", None)
os.environ.pop("ANTHROPIC_API_KEY", None)
os.environ.pop("RESEND_API_KEY", None)

import random
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reviewdesk.db import Base
from reviewdesk.integrations.review_platform import ReviewPage, ReviewPlatformClient
from reviewdesk.models import Location, Organization, OrgMember, ReviewSource
from reviewdesk.services.email_sender import EmailSender
from reviewdesk.services.pipeline import assemble_pipeline
from reviewdesk.services.reply_generator import ReplyGenerator
from reviewdesk.settings import get_settings

FIXED_NOW = datetime(2026, 2, 7, 12, 0, tzinfo=timezone.utc)
GBP_LOCATION = "accounts/111/locations/222"


def aware(dt):
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def google_review(review_id, rating=5, comment="Great service", *, location=GBP_LOCATION,
                  create_time="2026-02-06T10:00:00Z", update_time=None, reply=None, reviewer="Jane Doe"):
    stars = {1: "ONE", 2: "TWO", 3: "THREE", 4: "FOUR", 5: "FIVE"}
    raw = {
        "name": f"{location}/reviews/{review_id}",
        "reviewId": review_id,
        "reviewer": {"displayName": reviewer, "profilePhotoUrl": None, "isAnonymous": False},
        "createTime": create_time,
        "updateTime": update_time or create_time,
    }
    if rating is not None:
        raw["starRating"] = stars[rating]
    if comment is not None:
        raw["comment"] = comment
    if reply:
        raw["reviewReply"] = {"comment": reply, "updateTime": create_time}
    return raw


class FakePlatformClient(ReviewPlatformClient):
    platform = "google"

    def __init__(self):
        self.pages: dict[str, list[ReviewPage]] = {}
        self.failing_resources: set[str] = set()
        self.failing_page_tokens: set[str] = set()
        self.fetch_calls: list[dict] = []
        self.replies: list[tuple[str, str]] = []
        self.reply_error: Exception | None = None
        self.auth_error: Exception | None = None

    def set_pages(self, resource, *review_lists, total=None, average=None):
        self.pages[resource] = [
            ReviewPage(reviews=list(reviews), total_review_count=total, average_rating=average)
            for reviews in review_lists
        ]

    async def verify_credentials(self):
        if self.auth_error:
            raise self.auth_error

    async def fetch_reviews(self, resource, *, page_size=50, page_token=None, order_by=None):
        self.fetch_calls.append(
            {"resource": resource, "page_size": page_size, "page_token": page_token, "order_by": order_by}
        )
        if resource in self.failing_resources:
            raise RuntimeError(f"quota exceeded for {resource}")
        if page_token in self.failing_page_tokens:
            raise RuntimeError(f"page {page_token} of {resource} timed out")
        pages = self.pages.get(resource) or [ReviewPage()]
        index = int(page_token) if page_token else 0
        page = pages[index]
        next_token = str(index + 1) if index + 1 < len(pages) else None
        return ReviewPage(
            reviews=page.reviews,
            next_page_token=next_token,
            total_review_count=page.total_review_count,
            average_rating=page.average_rating,
        )

    async def post_reply(self, reply_target, text):
        if self.reply_error:
            raise self.reply_error
        self.replies.append((reply_target, text))


class FakeEmailSender(EmailSender):
    def __init__(self):
        self.sent: list[dict] = []
        self.error: Exception | None = None

    async def send(self, to, subject, html):
        if self.error:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html})


class FakeReplyGenerator(ReplyGenerator):
    def __init__(self, text="Thanks so much for the kind words!"):
        self.text = text
        self.calls = []
        self.error: Exception | None = None

    async def generate(self, ctx):
        self.calls.append(ctx)
        if self.error:
            raise self.error
        return self.text


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
async def seeded(session_factory):
    """One org with one location, a pending google source and a member user."""
    async with session_factory() as s:
        org = Organization(name="Bright Smiles Group")
        s.add(org)
        await s.flush()
        location = Location(org_id=org.id, name="Bright Smiles Downtown")
        s.add(location)
        await s.flush()
        source = ReviewSource(
            location_id=location.id,
            platform="google",
            external_resource=GBP_LOCATION,
            sync_status="pending",
            meta={},
        )
        s.add(source)
        s.add(OrgMember(org_id=org.id, user_id="user-1", role="owner"))
        await s.commit()
        return SimpleNamespace(org_id=org.id, location_id=location.id, source_id=source.id, user_id="user-1")


@pytest.fixture
def platform():
    return FakePlatformClient()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def generator():
    return FakeReplyGenerator()


@pytest.fixture
def pipeline(platform, email_sender, generator):
    p = assemble_pipeline(
        get_settings(),
        clients={"google": platform},
        generator=generator,
        email_sender=email_sender,
    )
    p.autopilot.rng = random.Random(1234)
    return p
