"""Celery application and beat schedule."""

from celery import Celery

from collab_webhooks.config import get_settings

settings = get_settings()

celery_app = Celery(
    "collab_webhooks",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["collab_webhooks.tasks.webhook_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "retry-webhook-deliveries": {
            "task": "collab_webhooks.tasks.webhook_tasks.retry_webhook_deliveries",
            "schedule": settings.webhook_sweep_interval_seconds,
        },
    },
)
