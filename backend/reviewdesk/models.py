from __future__ import annotations

from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


class ReviewPlatform(str, Enum):
    google = "google"
    healthgrades = "healthgrades"
    yelp = "yelp"
    facebook = "facebook"
    vitals = "vitals"
    zocdoc = "zocdoc"


class SyncStatus(str, Enum):
    pending = "pending"
    active = "active"
    error = "error"


class Sentiment(str, Enum):
    positive = "positive"
    neutral = "neutral"
    negative = "negative"


class ReviewStatus(str, Enum):
    new = "new"
    seen = "seen"
    flagged = "flagged"
    responded = "responded"
    archived = "archived"


class RepliedVia(str, Enum):
    api = "api"
    manual = "manual"


class AlertRuleType(str, Enum):
    new_review = "new_review"
    negative_review = "negative_review"
    keyword_match = "keyword_match"


class QueueStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class QueueSource(str, Enum):
    manual_retry = "manual_retry"
    ai_autopilot = "ai_autopilot"


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    locations: Mapped[list["Location"]] = relationship(back_populates="organization", passive_deletes=True)


class Location(Base):
    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    organization: Mapped[Organization] = relationship(back_populates="locations")
    review_sources: Mapped[list["ReviewSource"]] = relationship(back_populates="location", passive_deletes=True)


class OrgMember(Base):
    __tablename__ = "org_members"
    __table_args__ = (sa.UniqueConstraint("org_id", "user_id", name="uq_org_members_org_user"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="member", server_default="member")
    is_agency_admin: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False, server_default=sa.false())


class IntegrationMapping(Base):
    """Maps an external resource (e.g. a GBP location name) onto a local location."""

    __tablename__ = "integration_mappings"
    __table_args__ = (
        sa.UniqueConstraint("resource_type", "external_resource_id", name="uq_integration_mappings_resource"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    resource_type: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    external_resource_id: Mapped[str] = mapped_column(sa.String(512), nullable=False, index=True)
    location_id: Mapped[int] = mapped_column(sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=False, index=True)
    meta: Mapped[dict | None] = mapped_column("metadata", sa.JSON(), nullable=True)


class ReviewSource(Base):
    __tablename__ = "review_sources"
    __table_args__ = (
        sa.UniqueConstraint("location_id", "platform", name="uq_review_sources_location_platform"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False, index=True)
    external_resource: Mapped[str | None] = mapped_column(sa.String(512), nullable=True)
    platform_listing_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    sync_status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=SyncStatus.pending.value, server_default=SyncStatus.pending.value)
    last_synced_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True, index=True)
    total_review_count: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True, default=0, server_default="0")
    average_rating: Mapped[float | None] = mapped_column(sa.Numeric(3, 2, asdecimal=False), nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", sa.JSON(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    location: Mapped[Location] = relationship(back_populates="review_sources")
    reviews: Mapped[list["Review"]] = relationship(back_populates="source", passive_deletes=True)


class Review(Base):
    __tablename__ = "reviews"
    __table_args__ = (
        sa.UniqueConstraint("source_id", "platform_review_id", name="uq_reviews_source_platform_review"),
        sa.Index("ix_reviews_location_status", "location_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(sa.ForeignKey("review_sources.id", ondelete="CASCADE"), nullable=False, index=True)
    location_id: Mapped[int] = mapped_column(sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    platform_review_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)

    reviewer_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    reviewer_photo_url: Mapped[str | None] = mapped_column(sa.String(1024), nullable=True)
    is_anonymous: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False, server_default=sa.false())
    rating: Mapped[int | None] = mapped_column(sa.SmallInteger(), nullable=True)
    original_rating: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    body: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    language: Mapped[str | None] = mapped_column(sa.String(16), nullable=True, server_default="en")
    published_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    reply_body: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    reply_published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    replied_by: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    replied_via: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)

    sentiment: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=ReviewStatus.new.value, server_default=ReviewStatus.new.value)

    ai_draft: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    ai_draft_generated_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    platform_metadata: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    content_hash: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    source: Mapped[ReviewSource] = relationship(back_populates="reviews")
    queue_items: Mapped[list["ReplyQueueItem"]] = relationship(back_populates="review", passive_deletes=True)


class AlertRule(Base):
    __tablename__ = "review_alert_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    # null = every location in the org
    location_id: Mapped[int | None] = mapped_column(sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=True, index=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False, default="", server_default="")
    rule_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    config: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    notify_emails: Mapped[list] = mapped_column(sa.JSON(), nullable=False, default=list)
    active: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True, server_default=sa.true())
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


class AlertDelivery(Base):
    __tablename__ = "review_alert_deliveries"
    __table_args__ = (sa.UniqueConstraint("rule_id", "review_id", name="uq_alert_deliveries_rule_review"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(sa.ForeignKey("review_alert_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    review_id: Mapped[int] = mapped_column(sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False, index=True)
    alert_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    channels: Mapped[list] = mapped_column(sa.JSON(), nullable=False, default=list)
    sent_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


class AutopilotConfig(Base):
    __tablename__ = "review_autopilot_configs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(
        sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False, server_default=sa.false())
    auto_reply_ratings: Mapped[list] = mapped_column(sa.JSON(), nullable=False, default=lambda: [4, 5])
    require_approval: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False, server_default=sa.false())
    delay_min_minutes: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=30, server_default="30")
    delay_max_minutes: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=180, server_default="180")
    tone: Mapped[str] = mapped_column(sa.String(255), nullable=False, default="professional and friendly", server_default="professional and friendly")
    business_context: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class ReplyQueueItem(Base):
    __tablename__ = "review_reply_queue"
    __table_args__ = (sa.Index("ix_reply_queue_status_scheduled", "status", "scheduled_for"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    review_id: Mapped[int] = mapped_column(sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False, index=True)
    reply_body: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=QueueStatus.pending.value, server_default=QueueStatus.pending.value)
    source: Mapped[str] = mapped_column(sa.String(32), nullable=False, default=QueueSource.manual_retry.value, server_default=QueueSource.manual_retry.value)
    # not-before timestamp; null means as soon as possible
    scheduled_for: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    queued_by: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=0, server_default="0")
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    review: Mapped[Review] = relationship(back_populates="queue_items")
