"""
Alert rule engine.

Evaluates the org's active alert rules against a freshly synced review,
records each firing in ``review_alert_deliveries`` (one row per rule and
review) and sends the e-mail in the background once that row is
committed. A failed e-mail is logged and never reaches the sync that
triggered it.
"""
from __future__ import annotations

import asyncio
import html
import logging
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from reviewdesk.db import dialect_insert
from reviewdesk.models import AlertDelivery, AlertRule, AlertRuleType, Location, Review
from reviewdesk.services.email_sender import EmailSender

logger = logging.getLogger(__name__)

DEFAULT_NEGATIVE_THRESHOLD = 3

PLATFORM_LABELS = {
    "google": "Google",
    "healthgrades": "Healthgrades",
    "yelp": "Yelp",
    "facebook": "Facebook",
    "vitals": "Vitals",
    "zocdoc": "Zocdoc",
}


def rule_matches(rule: AlertRule, review: Review) -> bool:
    config = rule.config or {}
    if rule.rule_type == AlertRuleType.new_review.value:
        return True
    if rule.rule_type == AlertRuleType.negative_review.value:
        threshold = config.get("threshold", DEFAULT_NEGATIVE_THRESHOLD)
        return review.rating is not None and review.rating <= threshold
    if rule.rule_type == AlertRuleType.keyword_match.value:
        body = (review.body or "").lower()
        if not body:
            return False
        keywords = config.get("keywords") or []
        return any(kw and kw.lower() in body for kw in keywords)
    logger.warning("[alerts] rule %s has unknown type %r", rule.id, rule.rule_type)
    return False


def format_review_date(dt: datetime) -> str:
    """``Sat, Feb 7, 2026``"""
    return f"{dt:%a}, {dt:%b} {dt.day}, {dt.year}"


def build_review_alert_email(
    *,
    location_name: str,
    review: Review,
    alert_type: str,
) -> tuple[str, str]:
    """Return ``(subject, html)`` for one alert."""
    is_negative = alert_type == AlertRuleType.negative_review.value
    subject = f"{'Negative review' if is_negative else 'New review'}: {location_name}"

    platform = PLATFORM_LABELS.get(review.platform, review.platform)
    reviewer = html.escape(review.reviewer_name or "Anonymous")
    if review.rating is not None:
        stars = "&#9733;" * review.rating + "&#9734;" * max(5 - review.rating, 0)
    else:
        stars = "No rating"
    body = html.escape(review.body) if review.body else "<em>No review text</em>"
    posted = format_review_date(review.published_at)
    accent = "#dc2626" if is_negative else "#2563eb"

    content = (
        f'<div style="font-family: sans-serif; max-width: 560px;">'
        f'<h2 style="color: {accent}; margin: 0 0 8px;">{html.escape(subject)}</h2>'
        f'<p style="margin: 0 0 4px; color: #6b7280;">{html.escape(platform)} review for {html.escape(location_name)}</p>'
        f'<p style="font-size: 20px; color: #f59e0b; margin: 8px 0;">{stars}</p>'
        f'<p style="margin: 0 0 4px;"><strong>{reviewer}</strong></p>'
        f'<blockquote style="margin: 8px 0; padding-left: 12px; border-left: 3px solid #e5e7eb;">{body}</blockquote>'
        f'<p style="color: #9ca3af; font-size: 12px;">Posted {posted}</p>'
        f"</div>"
    )
    return subject, content


class AlertEngine:
    """Rule evaluation plus an outbox of alert e-mails.

    ``evaluate`` only stages e-mails. The caller releases them once the
    delivery rows are committed, or discards them after a rollback, so a
    rolled-back review never produces an e-mail.
    """

    def __init__(self, email_sender: EmailSender):
        self.email_sender = email_sender
        self._outbox: list[tuple[list[str], str, str, int, int]] = []
        self._pending: set[asyncio.Task] = set()

    async def evaluate(self, session: AsyncSession, review: Review) -> list[int]:
        """Fire every matching rule once for ``review``; returns ids of rules that fired now."""
        location = await session.get(Location, review.location_id)
        if location is None:
            return []

        rules = (
            await session.execute(
                select(AlertRule)
                .where(
                    AlertRule.org_id == location.org_id,
                    AlertRule.active.is_(True),
                    or_(AlertRule.location_id.is_(None), AlertRule.location_id == review.location_id),
                )
                .order_by(AlertRule.id)
            )
        ).scalars().all()

        fired: list[int] = []
        for rule in rules:
            if not rule_matches(rule, review):
                continue

            recipients = [e for e in (rule.notify_emails or []) if e]
            insert = dialect_insert(session)
            stmt = (
                insert(AlertDelivery)
                .values(
                    rule_id=rule.id,
                    review_id=review.id,
                    alert_type=rule.rule_type,
                    channels=["email"] if recipients else [],
                )
                .on_conflict_do_nothing(index_elements=[AlertDelivery.rule_id, AlertDelivery.review_id])
                .returning(AlertDelivery.id)
            )
            delivery_id = (await session.execute(stmt)).scalar_one_or_none()
            if delivery_id is None:
                logger.debug("[alerts] rule %s already fired for review %s", rule.id, review.id)
                continue

            fired.append(rule.id)
            logger.info("[alerts] rule %s (%s) fired for review %s", rule.id, rule.rule_type, review.id)
            if recipients:
                subject, content = build_review_alert_email(
                    location_name=location.name,
                    review=review,
                    alert_type=rule.rule_type,
                )
                self._outbox.append((recipients, subject, content, rule.id, review.id))
        return fired

    def release(self) -> int:
        """Start sending every staged e-mail in the background."""
        staged, self._outbox = self._outbox, []
        for to, subject, content, rule_id, review_id in staged:
            task = asyncio.create_task(self._send(to, subject, content, rule_id=rule_id, review_id=review_id))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return len(staged)

    def discard(self) -> int:
        """Drop staged e-mails whose delivery rows were rolled back."""
        dropped = len(self._outbox)
        self._outbox = []
        if dropped:
            logger.info("[alerts] dropped %d staged e-mails after rollback", dropped)
        return dropped

    async def _send(self, to: list[str], subject: str, content: str, *, rule_id: int, review_id: int) -> None:
        try:
            await self.email_sender.send(to, subject, content)
        except Exception as e:
            logger.error("[alerts] email for rule %s review %s failed: %s", rule_id, review_id, e)

    async def drain(self) -> None:
        """Send whatever is staged and wait for in-flight e-mails (end of a run / before the loop closes)."""
        self.release()
        while self._pending:
            batch = list(self._pending)
            self._pending.difference_update(batch)
            await asyncio.gather(*batch)
