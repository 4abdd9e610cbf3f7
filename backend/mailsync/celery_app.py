"""Celery app for the durable job queue. Uses Redis; DB session per handler call."""
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
    task_default_queue=settings.queue_name,
    worker_concurrency=settings.queue_concurrency,
    worker_prefetch_multiplier=1,
    result_expires=settings.queue_completed_retention_s,
    broker_transport_options={
        "priority_steps": list(range(10)),
        "sep": ":",
        "queue_order_strategy": "priority",
    },
)
