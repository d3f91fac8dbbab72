"""
Review store: idempotent upsert keyed on (source_id, platform_review_id)
and the per-source sync status transitions.

The store never commits; callers own the transaction boundary.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reviewdesk.db import dialect_insert
from reviewdesk.models import Review, ReviewSource, SyncStatus
from reviewdesk.services.review_normalizer import content_fingerprint

logger = logging.getLogger(__name__)

INSERTED = "inserted"
UPDATED = "updated"
UNCHANGED = "unchanged"

# Overwritten on every re-fetch. Local workflow columns (status, ai_draft,
# replied_by, replied_via) are owned by users and the dispatcher.
_SYNCED_COLUMNS = (
    "reviewer_name",
    "reviewer_photo_url",
    "is_anonymous",
    "rating",
    "original_rating",
    "body",
    "published_at",
    "updated_at",
    "reply_body",
    "reply_published_at",
    "sentiment",
    "platform_metadata",
    "content_hash",
    "fetched_at",
)


@dataclass(frozen=True)
class UpsertResult:
    review_id: int
    outcome: str

    @property
    def is_novel(self) -> bool:
        return self.outcome in (INSERTED, UPDATED)


class ReviewStore:
    async def upsert(
        self,
        session: AsyncSession,
        source: ReviewSource,
        values: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> UpsertResult:
        """Insert or update one normalized review.

        Safe to race with another writer on the same key: the database
        resolves the conflict and the last write wins.
        """
        now = now or datetime.now(timezone.utc)
        fingerprint = content_fingerprint(values)

        existing = (
            await session.execute(
                select(Review.id, Review.content_hash, Review.platform_metadata).where(
                    Review.source_id == source.id,
                    Review.platform_review_id == values["platform_review_id"],
                )
            )
        ).first()

        metadata = dict(existing.platform_metadata or {}) if existing is not None else {}
        # a payload without a key (e.g. no reply target) keeps the stored value
        metadata.update({k: v for k, v in (values.get("platform_metadata") or {}).items() if v not in (None, "")})

        row = {
            **values,
            "source_id": source.id,
            "location_id": source.location_id,
            "platform": source.platform,
            "platform_metadata": metadata,
            "content_hash": fingerprint,
            "fetched_at": now,
        }
        update_columns = list(_SYNCED_COLUMNS)
        if row.get("language") is None:
            # keep the column default / previously stored language
            row.pop("language", None)
        else:
            update_columns.append("language")

        insert = dialect_insert(session)
        stmt = insert(Review).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Review.source_id, Review.platform_review_id],
            set_={col: stmt.excluded[col] for col in update_columns},
        ).returning(Review.id)
        review_id = (await session.execute(stmt)).scalar_one()

        if existing is None:
            outcome = INSERTED
        elif existing.content_hash != fingerprint:
            outcome = UPDATED
        else:
            outcome = UNCHANGED
        return UpsertResult(review_id=review_id, outcome=outcome)

    async def mark_active(
        self,
        session: AsyncSession,
        source: ReviewSource,
        *,
        total_review_count: int | None = None,
        average_rating: float | None = None,
        now: datetime | None = None,
    ) -> None:
        """Successful sync: platform totals win, previous values are kept when the platform omits them."""
        now = now or datetime.now(timezone.utc)
        source.sync_status = SyncStatus.active.value
        source.last_synced_at = now
        if total_review_count is not None:
            source.total_review_count = total_review_count
        if average_rating is not None:
            source.average_rating = float(average_rating)
        meta = dict(source.meta or {})
        meta.pop("last_error", None)
        meta.pop("error_at", None)
        source.meta = meta
        session.add(source)

    async def mark_error(
        self,
        session: AsyncSession,
        source: ReviewSource,
        message: str,
        *,
        now: datetime | None = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        source.sync_status = SyncStatus.error.value
        source.meta = {
            **(source.meta or {}),
            "last_error": message[:1000],
            "error_at": now.isoformat(),
        }
        session.add(source)
