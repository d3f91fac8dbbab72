"""
Celery app for review pipeline runs that should not block a web worker
(backfills above all). Broker and result backend are both REDIS_URL.
"""
from celery import Celery

from reviewdesk.settings import get_settings

settings = get_settings()

celery_app = Celery("reviewdesk", broker=settings.redis_url, backend=settings.redis_url)

celery_app.conf.update(
    task_default_queue="reviews",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # sync/queue/sweep runs; reviews.backfill raises its own limit to 4h
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    result_expires=24 * 3600,
    timezone="UTC",
    enable_utc=True,
    # must outlive the longest task (backfill) or Redis redelivers it mid-run
    broker_transport_options={"visibility_timeout": 5 * 3600},
)

celery_app.autodiscover_tasks(["reviewdesk.worker"])
