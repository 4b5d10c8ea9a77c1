"""Celery app for sync invocations. Uses Redis; DB session per task."""
from celery import Celery
from .config import settings

celery_app = Celery(
    "mailsync",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["mailsync.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        # Safety net only: completions re-trigger the next invocation directly
        "reclaim-stale-jobs": {
            "task": "mailsync.tasks.reclaim_stale_jobs",
            "schedule": float(settings.reclaim_sweep_interval_s),
        },
    },
)
