"""Process-wide wiring: one queue, the workers that use it, and the delta scheduler."""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .database import SessionLocal
from .email_store import close_all_email_stores, open_email_store
from .gmail_service import get_gmail_client
from .job_queue.base import JobQueue
from .job_queue.factory import create_queue
from .services.bulk_actions import BulkActionWorker
from .services.scheduler import DeltaSyncScheduler
from .services.sync_worker import SyncOptions, SyncWorker

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    queue: JobQueue
    sync_worker: SyncWorker
    bulk_worker: BulkActionWorker
    scheduler: Optional[DeltaSyncScheduler] = None
    scheduler_enabled: bool = False
    handlers_registered: bool = False


def build_runtime(
    settings,
    with_scheduler: bool = True,
    session_factory: Callable = SessionLocal,
    provider_factory: Callable = get_gmail_client,
    store_factory: Callable = open_email_store,
    queue: Optional[JobQueue] = None,
) -> Runtime:
    """Construct the queue once and hand it to every worker."""
    queue = queue or create_queue(settings)
    sync_worker = SyncWorker(
        queue,
        session_factory=session_factory,
        provider_factory=provider_factory,
        store_factory=store_factory,
        options=SyncOptions.from_settings(settings),
    )
    bulk_worker = BulkActionWorker(
        queue,
        session_factory=session_factory,
        provider_factory=provider_factory,
        store_factory=store_factory,
        batch_size=settings.gmail_modify_batch_size,
        call_max_retries=settings.retry_max_retries,
    )
    scheduler = None
    if with_scheduler:
        scheduler = DeltaSyncScheduler(
            sync_worker,
            session_factory=session_factory,
            interval_s=settings.scheduler_interval_s,
            initial_delay_s=settings.scheduler_initial_delay_s,
        )
    return Runtime(
        queue=queue,
        sync_worker=sync_worker,
        bulk_worker=bulk_worker,
        scheduler=scheduler,
        scheduler_enabled=with_scheduler and settings.scheduler_enabled,
    )


def register_handlers(runtime: Runtime) -> None:
    if runtime.handlers_registered:
        return
    runtime.sync_worker.register(runtime.queue)
    runtime.bulk_worker.register(runtime.queue)
    runtime.handlers_registered = True


def start_runtime(runtime: Runtime) -> None:
    """Register handlers, start consuming, recover interrupted jobs, start the scheduler."""
    register_handlers(runtime)
    runtime.queue.start()
    try:
        runtime.sync_worker.resume_interrupted_jobs()
    except Exception:
        logger.exception("Startup recovery of interrupted sync jobs failed")
    if runtime.scheduler is not None and runtime.scheduler_enabled:
        runtime.scheduler.start()
    logger.info("Sync runtime started")


def stop_runtime(runtime: Runtime) -> None:
    if runtime.scheduler is not None:
        runtime.scheduler.stop()
    runtime.queue.close()
    close_all_email_stores()
    logger.info("Sync runtime stopped")
