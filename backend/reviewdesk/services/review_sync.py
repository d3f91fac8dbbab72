"""
Review sync coordinator.

Three ways in, one pipeline:
- incremental: the least recently synced sources, latest page only
- backfill: new (or explicitly requested) sources, every page
- push: one webhook-notified location, a small newest-first page

Sources are processed one at a time. Each page goes normalize -> upsert ->
alerts -> autopilot and is committed stage by stage, so no row lock is held
across the next fetch or AI call and a later failure never undoes earlier
pages. A failing source is marked ``error`` and the run moves on.
"""
from __future__ import annotations

import base64
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reviewdesk.integrations.review_platform import ReviewPlatformClient
from reviewdesk.models import IntegrationMapping, Review, ReviewSource, SyncStatus
from reviewdesk.services.alert_engine import AlertEngine
from reviewdesk.services.autopilot import AutopilotScheduler
from reviewdesk.services.review_normalizer import normalize_canonical_review, normalize_review
from reviewdesk.services.review_store import INSERTED, UPDATED, ReviewStore

logger = logging.getLogger(__name__)

DEFAULT_ORDER_BY = "updateTime desc"

# integration_mappings.resource_type per platform
MAPPING_RESOURCE_TYPES = {"google": "gbp_location"}

SYNCABLE_STATUSES = (SyncStatus.pending.value, SyncStatus.active.value, SyncStatus.error.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncWork:
    source_id: int
    page_size: int
    paginate: bool = False
    order_by: str | None = DEFAULT_ORDER_BY
    resource: str | None = None


@dataclass
class _RunState:
    drafts_remaining: int


@dataclass
class SourceSyncResult:
    source_id: int
    status: str = "ok"
    pages: int = 0
    reviews: int = 0
    new: int = 0
    updated: int = 0
    skipped: int = 0
    alerts: int = 0
    drafts: int = 0
    queued: int = 0
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        data = {
            "source_id": self.source_id,
            "status": self.status,
            "pages": self.pages,
            "reviews": self.reviews,
            "new": self.new,
            "updated": self.updated,
            "skipped": self.skipped,
            "alerts": self.alerts,
            "drafts": self.drafts,
            "queued": self.queued,
        }
        if self.error:
            data["error"] = self.error
        data.update(self.extra)
        return data


def decode_push_envelope(envelope: Any) -> str | None:
    """Pub/Sub push body -> ``location_name``, or None when anything is off."""
    if not isinstance(envelope, dict):
        return None
    message = envelope.get("message")
    if not isinstance(message, dict):
        return None
    data = message.get("data")
    if not data or not isinstance(data, str):
        return None
    try:
        payload = json.loads(base64.b64decode(data, validate=True).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    location_name = payload.get("location_name")
    if not location_name or not isinstance(location_name, str):
        return None
    return location_name


class ReviewSyncCoordinator:
    def __init__(
        self,
        store: ReviewStore,
        alert_engine: AlertEngine,
        autopilot: AutopilotScheduler,
        clients: dict[str, ReviewPlatformClient],
        *,
        batch_size: int = 20,
        page_size: int = 50,
        webhook_page_size: int = 10,
        backfill_default_limit: int = 5,
        backfill_max_pages: int = 500,
        max_drafts_per_run: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.alert_engine = alert_engine
        self.autopilot = autopilot
        self.clients = clients
        self.batch_size = batch_size
        self.page_size = page_size
        self.webhook_page_size = webhook_page_size
        self.backfill_default_limit = backfill_default_limit
        self.backfill_max_pages = backfill_max_pages
        self.max_drafts_per_run = max_drafts_per_run
        self.clock = clock

    async def verify_credentials(self) -> None:
        """Raise the client's auth error before any source is touched."""
        for client in self.clients.values():
            await client.verify_credentials()

    # ---- entry points ----------------------------------------------------

    async def run_incremental(self, session: AsyncSession) -> dict:
        rows = await session.execute(
            select(ReviewSource.id)
            .where(
                ReviewSource.sync_status.in_(SYNCABLE_STATUSES),
                ReviewSource.platform.in_(list(self.clients)),
            )
            .order_by(ReviewSource.last_synced_at.asc().nulls_first(), ReviewSource.id.asc())
            .limit(self.batch_size)
        )
        works = [SyncWork(source_id=row[0], page_size=self.page_size) for row in rows.all()]
        logger.info("[review_sync] incremental: %d sources", len(works))
        return await self._run(session, works)

    async def run_backfill(
        self,
        session: AsyncSession,
        source_ids: list[int] | None = None,
        limit: int | None = None,
    ) -> dict:
        limit = limit or self.backfill_default_limit
        stmt = select(ReviewSource.id).where(ReviewSource.platform.in_(list(self.clients)))
        if source_ids:
            stmt = stmt.where(ReviewSource.id.in_(source_ids)).order_by(ReviewSource.id.asc())
        else:
            stmt = stmt.where(ReviewSource.sync_status == SyncStatus.pending.value).order_by(
                ReviewSource.created_at.asc(), ReviewSource.id.asc()
            )
        rows = await session.execute(stmt.limit(limit))
        works = [SyncWork(source_id=row[0], page_size=self.page_size, paginate=True) for row in rows.all()]
        logger.info("[review_sync] backfill: %d sources", len(works))
        return await self._run(session, works)

    async def handle_push(self, session: AsyncSession, envelope: Any) -> dict:
        """Webhook entry point. Never raises; the transport would redeliver forever."""
        try:
            location_name = decode_push_envelope(envelope)
            if not location_name:
                logger.warning("[webhook] undecodable push payload, acknowledged")
                return {"ok": True}

            mapping = (
                await session.execute(
                    select(IntegrationMapping).where(
                        IntegrationMapping.resource_type == MAPPING_RESOURCE_TYPES["google"],
                        IntegrationMapping.external_resource_id == location_name,
                    )
                )
            ).scalars().first()
            if mapping is None:
                logger.warning("[webhook] no mapping for %s, acknowledged", location_name)
                return {"ok": True}

            source_id = (
                await session.execute(
                    select(ReviewSource.id).where(
                        ReviewSource.location_id == mapping.location_id,
                        ReviewSource.platform == "google",
                    )
                )
            ).scalar_one_or_none()
            if source_id is None:
                logger.warning("[webhook] location %s has no google source, acknowledged", mapping.location_id)
                return {"ok": True}

            result = await self._run(
                session,
                [SyncWork(source_id=source_id, page_size=self.webhook_page_size, resource=location_name)],
            )
            return {"ok": True, **result}
        except Exception:
            logger.exception("[webhook] push handling failed, acknowledged")
            return {"ok": True}

    async def ingest_manual(
        self,
        session: AsyncSession,
        source_id: int,
        reviews: list[dict[str, Any]],
        trigger: str = "manual",
    ) -> dict:
        """Run already-canonical reviews (imports, platforms without a pull client) through the pipeline."""
        if not reviews:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No reviews provided")
        source = await session.get(ReviewSource, source_id)
        if not source:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Review source not found")

        run_state = _RunState(drafts_remaining=self.max_drafts_per_run)
        result = SourceSyncResult(source_id=source_id, pages=1, extra={"trigger": trigger})
        await self._ingest_page(session, source, reviews, run_state, result, normalize=normalize_canonical_review)
        await self.store.mark_active(session, source, now=self.clock())
        await session.commit()
        await self.alert_engine.drain()
        logger.info(
            "[review_sync] manual ingest (%s) source %s: %d reviews, %d new",
            trigger, source_id, result.reviews, result.new,
        )
        return {"ok": True, **result.as_dict()}

    # ---- internals -------------------------------------------------------

    async def _run(self, session: AsyncSession, works: list[SyncWork]) -> dict:
        run_state = _RunState(drafts_remaining=self.max_drafts_per_run)
        results: list[SourceSyncResult] = []
        try:
            for work in works:
                results.append(await self._sync_source(session, work, run_state))
        finally:
            await self.alert_engine.drain()

        return {
            "sources": len(results),
            "synced": sum(r.reviews for r in results),
            "new": sum(r.new for r in results),
            "errors": sum(1 for r in results if r.status == "error"),
            "results": [r.as_dict() for r in results],
        }

    async def resolve_resource(self, session: AsyncSession, source: ReviewSource) -> str | None:
        if source.external_resource:
            return source.external_resource
        resource_name = (source.meta or {}).get("resource_name")
        if resource_name:
            return resource_name
        resource_type = MAPPING_RESOURCE_TYPES.get(source.platform)
        if not resource_type:
            return None
        return (
            await session.execute(
                select(IntegrationMapping.external_resource_id)
                .where(
                    IntegrationMapping.resource_type == resource_type,
                    IntegrationMapping.location_id == source.location_id,
                )
                .order_by(IntegrationMapping.id)
                .limit(1)
            )
        ).scalar_one_or_none()

    async def _sync_source(self, session: AsyncSession, work: SyncWork, run_state: _RunState) -> SourceSyncResult:
        result = SourceSyncResult(source_id=work.source_id)
        try:
            source = await session.get(ReviewSource, work.source_id)
            if source is None:
                result.status = "error"
                result.error = "source not found"
                return result

            client = self.clients.get(source.platform)
            if client is None:
                raise RuntimeError(f"no client for platform {source.platform}")
            resource = work.resource or await self.resolve_resource(session, source)
            if not resource:
                raise ValueError("source has no external resource")

            total_review_count: int | None = None
            average_rating: float | None = None
            page_token: str | None = None
            while True:
                page = await client.fetch_reviews(
                    resource,
                    page_size=work.page_size,
                    page_token=page_token,
                    order_by=work.order_by,
                )
                result.pages += 1
                if page.total_review_count is not None:
                    total_review_count = page.total_review_count
                if page.average_rating is not None:
                    average_rating = page.average_rating

                await self._ingest_page(session, source, page.reviews, run_state, result)

                page_token = page.next_page_token
                if not work.paginate or not page_token:
                    break
                if result.pages >= self.backfill_max_pages:
                    logger.warning(
                        "[review_sync] source %s: stopped after %d pages", work.source_id, result.pages
                    )
                    break

            await self.store.mark_active(
                session,
                source,
                total_review_count=total_review_count,
                average_rating=average_rating,
                now=self.clock(),
            )
            await session.commit()
            logger.info(
                "[review_sync] source %s: %d pages, %d reviews (%d new, %d updated), %d alerts, %d drafts",
                work.source_id, result.pages, result.reviews, result.new, result.updated,
                result.alerts, result.drafts,
            )
            return result
        except Exception as e:
            logger.error("[review_sync] source %s failed: %s", work.source_id, e)
            result.status = "error"
            result.error = str(e)[:500]
            # only the unfinished page is lost; earlier pages are already committed
            await session.rollback()
            await self._record_error(session, work.source_id, str(e))
            return result

    async def _record_error(self, session: AsyncSession, source_id: int, message: str) -> None:
        try:
            source = await session.get(ReviewSource, source_id, populate_existing=True)
            if source is None:
                return
            await self.store.mark_error(session, source, message, now=self.clock())
            await session.commit()
        except Exception as e:
            logger.error("[review_sync] could not mark source %s as errored: %s", source_id, e)
            await session.rollback()

    async def _ingest_page(
        self,
        session: AsyncSession,
        source: ReviewSource,
        raw_reviews: list[dict[str, Any]],
        run_state: _RunState,
        result: SourceSyncResult,
        *,
        normalize: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
    ) -> None:
        now = self.clock()
        novel_ids: list[int] = []
        for raw in raw_reviews:
            try:
                values = normalize(raw) if normalize else normalize_review(source.platform, raw)
            except ValueError as e:
                logger.warning("[review_sync] source %s: skipping malformed review: %s", source.id, e)
                result.skipped += 1
                continue

            upserted = await self.store.upsert(session, source, values, now=now)
            result.reviews += 1
            if upserted.outcome == INSERTED:
                result.new += 1
            elif upserted.outcome == UPDATED:
                result.updated += 1
            if upserted.is_novel:
                novel_ids.append(upserted.review_id)

        # the page is durable before any e-mail or AI call goes out
        await session.commit()
        if not novel_ids:
            return

        reviews: list[Review] = []
        for review_id in novel_ids:
            review = await session.get(Review, review_id, populate_existing=True)
            if review is not None:
                reviews.append(review)

        try:
            for review in reviews:
                result.alerts += len(await self.alert_engine.evaluate(session, review))
            await session.commit()
        except Exception:
            self.alert_engine.discard()
            raise
        self.alert_engine.release()

        if run_state.drafts_remaining > 0:
            drafted = await self.autopilot.process(session, reviews, limit=run_state.drafts_remaining)
            run_state.drafts_remaining -= drafted["drafted"]
            result.drafts += drafted["drafted"]
            result.queued += drafted["queued"]
