"""Celery tasks: the single generic task every queued job runs through."""
import logging
import threading
from typing import Optional

from celery import shared_task
from celery.signals import worker_process_init, worker_process_shutdown

from .config import settings

logger = logging.getLogger(__name__)

_worker_runtime = None
_worker_runtime_lock = threading.Lock()


def get_worker_runtime():
    """
    Runtime for this worker process: a CeleryQueue with every handler registered.
    No scheduler and no startup recovery here; the API process owns those.
    """
    global _worker_runtime
    with _worker_runtime_lock:
        if _worker_runtime is None:
            from .runtime import build_runtime, register_handlers

            runtime = build_runtime(settings, with_scheduler=False)
            register_handlers(runtime)
            _worker_runtime = runtime
        return _worker_runtime


@worker_process_init.connect
def _init_worker_runtime(**kwargs):
    get_worker_runtime()
    logger.info("Celery worker process ready")


@worker_process_shutdown.connect
def _shutdown_worker_runtime(**kwargs):
    global _worker_runtime
    with _worker_runtime_lock:
        runtime, _worker_runtime = _worker_runtime, None
    if runtime is not None:
        from .runtime import stop_runtime

        stop_runtime(runtime)


@shared_task(bind=True, name="mailsync.tasks.run_queued_job")
def run_queued_job(
    self,
    job_type: str,
    payload: dict,
    attempts: int = 3,
    backoff: Optional[dict] = None,
):
    """
    Run one queue envelope. job_type: metadata_sync | delete | trash.
    Resumable progress is on the Job row; this task only delivers the payload.
    """
    queue = get_worker_runtime().queue
    queue.run_envelope(self, job_type, payload, attempts=attempts, backoff=backoff)
