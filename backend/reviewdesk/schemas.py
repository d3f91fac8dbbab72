from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class BackfillRequest(BaseModel):
    source_ids: list[int] | None = None
    limit: int | None = Field(default=None, ge=1)


class ManualSyncRequest(BaseModel):
    source_id: int
    reviews: list[dict[str, Any]] = Field(default_factory=list)
    trigger: str = "manual"


class ReplyRequest(BaseModel):
    # validated by the dispatcher so blank text is a 400, not a 422
    reply_body: str | None = None


class BulkReplyRequest(BaseModel):
    review_ids: list[int] = Field(default_factory=list)
    reply_body: str | None = None


class StatusUpdateRequest(BaseModel):
    status: str
    clear_draft: bool = False


class SourceSyncRead(BaseModel):
    source_id: int
    status: str
    pages: int = 0
    reviews: int = 0
    new: int = 0
    updated: int = 0
    skipped: int = 0
    alerts: int = 0
    drafts: int = 0
    queued: int = 0
    error: str | None = None


class SyncRunRead(BaseModel):
    ok: bool = True
    sources: int
    synced: int
    new: int = 0
    errors: int = 0
    results: list[SourceSyncRead] = Field(default_factory=list)


class ReplyResult(BaseModel):
    ok: bool = True
    review_id: int
    posted_via: str


class BulkReplyResult(BaseModel):
    ok: bool = True
    posted: int = 0
    queued: int = 0
    stored: int = 0
    failed: int = 0


class StatusUpdateResult(BaseModel):
    ok: bool = True
    review_id: int
    status: str


class DraftResult(BaseModel):
    ok: bool = True
    review_id: int
    ai_draft: str
    generated_at: str


class ReplyQueueRunRead(BaseModel):
    processed: int
    sent: int
    failed: int
    retrying: int
