"""review pipeline tables

Revision ID: 0001_review_pipeline
Revises:
Create Date: 2026-10-17 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_review_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        cols.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
                onupdate=sa.func.now(),
                nullable=False,
            )
        )
    return cols


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "locations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_locations_org_id", "locations", ["org_id"])

    op.create_table(
        "org_members",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="member"),
        sa.Column("is_agency_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("org_id", "user_id", name="uq_org_members_org_user"),
    )
    op.create_index("ix_org_members_org_id", "org_members", ["org_id"])
    op.create_index("ix_org_members_user_id", "org_members", ["user_id"])

    op.create_table(
        "integration_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("resource_type", sa.String(length=64), nullable=False),
        sa.Column("external_resource_id", sa.String(length=512), nullable=False),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.UniqueConstraint("resource_type", "external_resource_id", name="uq_integration_mappings_resource"),
    )
    op.create_index("ix_integration_mappings_external_resource_id", "integration_mappings", ["external_resource_id"])
    op.create_index("ix_integration_mappings_location_id", "integration_mappings", ["location_id"])

    op.create_table(
        "review_sources",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("external_resource", sa.String(length=512), nullable=True),
        sa.Column("platform_listing_name", sa.String(length=255), nullable=True),
        sa.Column("sync_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_review_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("average_rating", sa.Numeric(3, 2), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(updated=True),
        sa.UniqueConstraint("location_id", "platform", name="uq_review_sources_location_platform"),
    )
    op.create_index("ix_review_sources_location_id", "review_sources", ["location_id"])
    op.create_index("ix_review_sources_platform", "review_sources", ["platform"])
    op.create_index("ix_review_sources_last_synced_at", "review_sources", ["last_synced_at"])

    op.create_table(
        "reviews",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_id", sa.Integer(), sa.ForeignKey("review_sources.id", ondelete="CASCADE"), nullable=False),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("platform_review_id", sa.String(length=255), nullable=False),
        sa.Column("reviewer_name", sa.String(length=255), nullable=True),
        sa.Column("reviewer_photo_url", sa.String(length=1024), nullable=True),
        sa.Column("is_anonymous", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rating", sa.SmallInteger(), nullable=True),
        sa.Column("original_rating", sa.String(length=32), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("language", sa.String(length=16), nullable=True, server_default="en"),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reply_body", sa.Text(), nullable=True),
        sa.Column("reply_published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replied_by", sa.String(length=64), nullable=True),
        sa.Column("replied_via", sa.String(length=16), nullable=True),
        sa.Column("sentiment", sa.String(length=16), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="new"),
        sa.Column("ai_draft", sa.Text(), nullable=True),
        sa.Column("ai_draft_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("platform_metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("content_hash", sa.String(length=64), nullable=True),
        sa.Column("fetched_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("source_id", "platform_review_id", name="uq_reviews_source_platform_review"),
    )
    op.create_index("ix_reviews_source_id", "reviews", ["source_id"])
    op.create_index("ix_reviews_location_id", "reviews", ["location_id"])
    op.create_index("ix_reviews_published_at", "reviews", ["published_at"])
    op.create_index("ix_reviews_location_status", "reviews", ["location_id", "status"])

    op.create_table(
        "review_alert_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("rule_type", sa.String(length=32), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("notify_emails", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_review_alert_rules_org_id", "review_alert_rules", ["org_id"])
    op.create_index("ix_review_alert_rules_location_id", "review_alert_rules", ["location_id"])

    op.create_table(
        "review_alert_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("review_alert_rules.id", ondelete="CASCADE"), nullable=False),
        sa.Column("review_id", sa.Integer(), sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("alert_type", sa.String(length=32), nullable=False),
        sa.Column("channels", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("rule_id", "review_id", name="uq_alert_deliveries_rule_review"),
    )
    op.create_index("ix_review_alert_deliveries_rule_id", "review_alert_deliveries", ["rule_id"])
    op.create_index("ix_review_alert_deliveries_review_id", "review_alert_deliveries", ["review_id"])

    op.create_table(
        "review_autopilot_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "location_id",
            sa.Integer(),
            sa.ForeignKey("locations.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_reply_ratings", sa.JSON(), nullable=False, server_default=sa.text("'[4, 5]'")),
        sa.Column("require_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delay_min_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("delay_max_minutes", sa.Integer(), nullable=False, server_default="180"),
        sa.Column("tone", sa.String(length=255), nullable=False, server_default="professional and friendly"),
        sa.Column("business_context", sa.Text(), nullable=True),
        *_timestamps(updated=True),
    )

    op.create_table(
        "review_reply_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("review_id", sa.Integer(), sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reply_body", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="manual_retry"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("queued_by", sa.String(length=64), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_index("ix_review_reply_queue_review_id", "review_reply_queue", ["review_id"])
    op.create_index("ix_reply_queue_status_scheduled", "review_reply_queue", ["status", "scheduled_for"])


def downgrade() -> None:
    op.drop_table("review_reply_queue")
    op.drop_table("review_autopilot_configs")
    op.drop_table("review_alert_deliveries")
    op.drop_table("review_alert_rules")
    op.drop_table("reviews")
    op.drop_table("review_sources")
    op.drop_table("integration_mappings")
    op.drop_table("org_members")
    op.drop_table("locations")
    op.drop_table("organizations")
