"""
Process-start wiring for the review pipeline.

Every external client is constructed here once and handed to the
components that need it. The FastAPI app keeps the result on
``app.state.pipeline``; Celery tasks and scheduler jobs build their own.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from reviewdesk.integrations.google_business import GoogleBusinessClient
from reviewdesk.integrations.review_platform import ReviewPlatformClient
from reviewdesk.services.alert_engine import AlertEngine
from reviewdesk.services.autopilot import AutopilotScheduler
from reviewdesk.services.email_sender import EmailSender, LogOnlyEmailSender, ResendEmailSender
from reviewdesk.services.reply_dispatcher import ReplyDispatcher
from reviewdesk.services.reply_generator import AnthropicReplyGenerator, ReplyGenerator, StubReplyGenerator
from reviewdesk.services.reply_queue import ReplyQueueProcessor
from reviewdesk.services.review_store import ReviewStore
from reviewdesk.services.review_sync import ReviewSyncCoordinator
from reviewdesk.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class ReviewPipeline:
    clients: dict[str, ReviewPlatformClient]
    generator: ReplyGenerator | None
    email_sender: EmailSender
    store: ReviewStore
    alert_engine: AlertEngine
    autopilot: AutopilotScheduler
    coordinator: ReviewSyncCoordinator
    dispatcher: ReplyDispatcher
    reply_queue: ReplyQueueProcessor


def assemble_pipeline(
    settings: Settings,
    *,
    clients: dict[str, ReviewPlatformClient],
    generator: ReplyGenerator | None,
    email_sender: EmailSender,
) -> ReviewPipeline:
    """Wire the components around the given collaborators."""
    store = ReviewStore()
    alert_engine = AlertEngine(email_sender)
    autopilot = AutopilotScheduler(
        generator,
        max_drafts_per_run=settings.autopilot_max_drafts_per_run,
        sweep_max_reviews=settings.draft_sweep_max_reviews,
        sweep_lookback_days=settings.draft_sweep_lookback_days,
        dispatch_platforms=list(clients),
    )
    coordinator = ReviewSyncCoordinator(
        store,
        alert_engine,
        autopilot,
        clients,
        batch_size=settings.sync_batch_size,
        page_size=settings.sync_page_size,
        webhook_page_size=settings.webhook_page_size,
        backfill_default_limit=settings.backfill_default_limit,
        backfill_max_pages=settings.backfill_max_pages,
        max_drafts_per_run=settings.autopilot_max_drafts_per_run,
    )
    dispatcher = ReplyDispatcher(clients, generator)
    reply_queue = ReplyQueueProcessor(
        clients,
        batch_size=settings.reply_queue_batch_size,
        max_attempts=settings.reply_queue_max_attempts,
        backoff_base_minutes=settings.reply_queue_backoff_base_minutes,
        backoff_max_minutes=settings.reply_queue_backoff_max_minutes,
    )
    return ReviewPipeline(
        clients=clients,
        generator=generator,
        email_sender=email_sender,
        store=store,
        alert_engine=alert_engine,
        autopilot=autopilot,
        coordinator=coordinator,
        dispatcher=dispatcher,
        reply_queue=reply_queue,
    )


def build_pipeline(settings: Settings) -> ReviewPipeline:
    clients: dict[str, ReviewPlatformClient] = {
        "google": GoogleBusinessClient(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_refresh_token,
        ),
    }

    generator: ReplyGenerator | None = None
    if settings.anthropic_api_key:
        generator = AnthropicReplyGenerator(settings.anthropic_api_key, settings.anthropic_model)
    elif settings.ai_stub_replies:
        logger.info("[pipeline] AI_STUB_REPLIES on, drafts use canned replies")
        generator = StubReplyGenerator()
    else:
        logger.info("[pipeline] ANTHROPIC_API_KEY not set, AI drafts disabled")

    email_sender: EmailSender
    if settings.resend_api_key:
        email_sender = ResendEmailSender(settings.resend_api_key, settings.email_from)
    else:
        logger.info("[pipeline] RESEND_API_KEY not set, alert e-mails are logged only")
        email_sender = LogOnlyEmailSender()

    return assemble_pipeline(settings, clients=clients, generator=generator, email_sender=email_sender)
