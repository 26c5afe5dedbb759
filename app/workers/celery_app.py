"""Celery app bootstrap."""

from celery import Celery
from celery.schedules import crontab

from app.config import get_settings

settings = get_settings()

celery_app = Celery(
    "takataka_payments",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    beat_schedule={
        "expire-subscriptions-hourly": {
            "task": "app.workers.tasks_subscriptions.expire_subscriptions",
            "schedule": crontab(minute=0),
        },
        "reconcile-stale-transactions": {
            "task": "app.workers.tasks_subscriptions.reconcile_stale_transactions",
            "schedule": crontab(minute="*/10"),
        },
    },
)

celery_app.autodiscover_tasks(["app.workers"], related_name="tasks_subscriptions")
