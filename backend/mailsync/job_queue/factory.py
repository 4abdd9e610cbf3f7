"""Pick the queue backend once, at process start."""
import logging

from .base import JobQueue
from .memory import MemoryQueue

logger = logging.getLogger(__name__)


def create_queue(settings) -> JobQueue:
    """
    QUEUE_BACKEND=celery|memory forces a backend; auto uses Celery when
    REDIS_URL is configured and the in-process queue otherwise.
    """
    if settings.use_celery:
        if not settings.redis_url:
            raise ValueError("QUEUE_BACKEND=celery requires REDIS_URL")
        from ..celery_app import celery_app
        from .celery_queue import CeleryQueue

        logger.info("Job queue backend: celery")
        return CeleryQueue(
            celery_app,
            settings.redis_url,
            queue_name=settings.queue_name,
            completed_retention_s=settings.queue_completed_retention_s,
            completed_keep=settings.queue_completed_keep,
            failed_retention_s=settings.queue_failed_retention_s,
        )
    logger.info("Job queue backend: memory")
    return MemoryQueue(
        max_concurrency=settings.queue_concurrency,
        poll_interval_s=settings.queue_poll_interval_s,
        retention_s=settings.queue_completed_retention_s,
    )
