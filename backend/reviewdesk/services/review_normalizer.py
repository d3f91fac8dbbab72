"""
Review normalization.

Turns a platform review payload into the canonical column values stored on
``Review``. Pure functions only: no I/O, no session.
"""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any

STAR_RATING_MAP: dict[str, int] = {
    "ONE": 1,
    "TWO": 2,
    "THREE": 3,
    "FOUR": 4,
    "FIVE": 5,
}


def sentiment_for_rating(rating: int | None) -> str | None:
    if rating is None:
        return None
    if rating >= 4:
        return "positive"
    if rating == 3:
        return "neutral"
    return "negative"


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_rating(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, str) and value.upper() in STAR_RATING_MAP:
        return STAR_RATING_MAP[value.upper()]
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_google_review(raw: dict[str, Any]) -> dict[str, Any]:
    """Google Business Profile v4 review -> canonical fields.

    Raises ValueError when the payload has no review id or creation time.
    """
    review_id = raw.get("reviewId")
    if not review_id:
        raise ValueError("google review without reviewId")
    published_at = _parse_dt(raw.get("createTime"))
    if published_at is None:
        raise ValueError(f"google review {review_id} without createTime")

    reviewer = raw.get("reviewer") or {}
    star_rating = raw.get("starRating")
    rating = STAR_RATING_MAP.get(star_rating) if star_rating else None

    update_time = raw.get("updateTime")
    updated_at = _parse_dt(update_time) if update_time and update_time != raw.get("createTime") else None

    reply = raw.get("reviewReply") or {}

    metadata: dict[str, Any] = {}
    if raw.get("name"):
        # reply target: accounts/{a}/locations/{l}/reviews/{r}
        metadata["resource_name"] = raw["name"]

    return {
        "platform_review_id": str(review_id),
        "reviewer_name": reviewer.get("displayName"),
        "reviewer_photo_url": reviewer.get("profilePhotoUrl"),
        "is_anonymous": bool(reviewer.get("isAnonymous", False)),
        "rating": rating,
        "original_rating": star_rating,
        "body": raw.get("comment"),
        "language": None,
        "published_at": published_at,
        "updated_at": updated_at,
        "reply_body": reply.get("comment"),
        "reply_published_at": _parse_dt(reply.get("updateTime")),
        "platform_metadata": metadata,
        "sentiment": sentiment_for_rating(rating),
    }


def normalize_canonical_review(raw: dict[str, Any]) -> dict[str, Any]:
    """Already-canonical review (manual import) -> canonical fields with sentiment derived."""
    review_id = raw.get("platform_review_id")
    if not review_id:
        raise ValueError("review without platform_review_id")
    published_at = _parse_dt(raw.get("published_at"))
    if published_at is None:
        raise ValueError(f"review {review_id} without published_at")

    rating = _parse_rating(raw.get("rating"))
    original_rating = raw.get("original_rating")

    return {
        "platform_review_id": str(review_id),
        "reviewer_name": raw.get("reviewer_name"),
        "reviewer_photo_url": raw.get("reviewer_photo_url"),
        "is_anonymous": bool(raw.get("is_anonymous", False)),
        "rating": rating,
        "original_rating": str(original_rating) if original_rating is not None else None,
        "body": raw.get("body"),
        "language": raw.get("language"),
        "published_at": published_at,
        "updated_at": _parse_dt(raw.get("updated_at")),
        "reply_body": raw.get("reply_body"),
        "reply_published_at": _parse_dt(raw.get("reply_published_at")),
        "platform_metadata": dict(raw.get("platform_metadata") or {}),
        "sentiment": sentiment_for_rating(rating),
    }


def normalize_review(platform: str, raw: dict[str, Any]) -> dict[str, Any]:
    if platform == "google":
        return normalize_google_review(raw)
    return normalize_canonical_review(raw)


def content_fingerprint(values: dict[str, Any]) -> str:
    """Hash of the customer-visible content; reply, metadata and timestamps excluded."""
    parts = [
        "" if values.get("rating") is None else str(values["rating"]),
        values.get("original_rating") or "",
        values.get("body") or "",
        values.get("language") or "",
    ]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()
