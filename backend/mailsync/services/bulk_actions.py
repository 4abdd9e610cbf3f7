"""Bulk delete / trash jobs: act on Gmail in batches of up to 1000, mirror the result locally."""
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from ..config import settings as default_settings
from ..database import SessionLocal
from ..email_store import open_email_store
from ..gmail_service import MODIFY_BATCH_LIMIT, get_gmail_client
from ..job_queue.base import JobQueue
from ..job_queue.types import BulkActionPayload, QueueJobType
from ..job_state_db import (
    create_job,
    get_account,
    get_job,
    refresh_job_status,
    update_account_sync_status,
    update_job_progress,
    update_job_status,
)
from ..models import (
    ERROR_AUTH,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_DELETE,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_TRASH,
)
from ..retry import with_retry
from .sync_worker import AccountNotFoundError, detached, classify_failure

logger = logging.getLogger(__name__)

ACTIONS = {
    JOB_DELETE: QueueJobType.DELETE,
    JOB_TRASH: QueueJobType.TRASH,
}


class BulkActionWorker:
    def __init__(
        self,
        queue: JobQueue,
        session_factory: Callable = SessionLocal,
        provider_factory: Callable = get_gmail_client,
        store_factory: Callable = open_email_store,
        batch_size: int = MODIFY_BATCH_LIMIT,
        query_limit: int = 10000,
        call_max_retries: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.provider_factory = provider_factory
        self.store_factory = store_factory
        self.batch_size = max(1, min(batch_size, MODIFY_BATCH_LIMIT))
        self.query_limit = query_limit
        self.call_max_retries = (
            default_settings.retry_max_retries if call_max_retries is None else call_max_retries
        )
        self._sleep = sleep

    def register(self, queue: Optional[JobQueue] = None) -> None:
        queue = queue or self.queue
        queue.process(QueueJobType.DELETE, self.process_delete)
        queue.process(QueueJobType.TRASH, self.process_trash)

    def _call(self, fn):
        return with_retry(
            fn,
            max_retries=self.call_max_retries,
            base_delay=default_settings.retry_base_delay_s,
            max_delay=default_settings.retry_max_delay_s,
            sleep=self._sleep,
        )

    def start_bulk_action(
        self,
        account_id: int,
        action: str,
        message_ids: Optional[list] = None,
        query: Optional[str] = None,
    ):
        """Create a pending delete/trash job for explicit ids or a Gmail search query."""
        if action not in ACTIONS:
            raise ValueError(f"Unknown bulk action: {action}")
        if not message_ids and not query:
            raise ValueError("Either message_ids or query is required")
        db = self.session_factory()
        try:
            account = get_account(db, account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            job = create_job(db, account, action, total_messages=len(message_ids or []))
            self.queue.add(
                ACTIONS[action],
                BulkActionPayload(
                    job_id=job.id,
                    account_id=account.id,
                    message_ids=list(message_ids) if message_ids else None,
                    query=query,
                ),
            )
            logger.info(f"Queued {action} job {job.id} for account {account_id}")
            return detached(db, job)
        finally:
            db.close()

    def process_delete(self, payload: BulkActionPayload) -> None:
        self._process(payload, JOB_DELETE)

    def process_trash(self, payload: BulkActionPayload) -> None:
        self._process(payload, JOB_TRASH)

    def _resolve_ids(self, client, payload: BulkActionPayload) -> list:
        if payload.message_ids:
            return list(dict.fromkeys(payload.message_ids))
        ids = []
        page_token = None
        while len(ids) < self.query_limit:
            page = self._call(
                lambda: client.get_message_ids_by_query(
                    payload.query, max_results=min(500, self.query_limit - len(ids)), page_token=page_token
                )
            )
            ids.extend(page.ids)
            if not page.next_page_token or not page.ids:
                break
            page_token = page.next_page_token
        return ids

    def _process(self, payload: BulkActionPayload, action: str) -> None:
        db = self.session_factory()
        try:
            job = get_job(db, payload.job_id)
            if job is None or job.status != JOB_PENDING:
                logger.info(f"{action} job {payload.job_id} not pending; skipping")
                return
            account = get_account(db, payload.account_id)
            if account is None:
                update_job_status(db, job, JOB_FAILED, last_error="Account not found", completed_at=datetime.utcnow())
                return
            update_job_status(db, job, JOB_RUNNING, started_at=datetime.utcnow())
            try:
                self._run(db, job, account, payload, action)
            except Exception as e:
                db.rollback()
                logger.exception(f"{action} job {job.id} failed")
                failure = classify_failure(e)
                update_job_status(
                    db, job, JOB_FAILED,
                    last_error=failure.job_message,
                    error_kind=failure.kind,
                    completed_at=datetime.utcnow(),
                )
                if failure.kind == ERROR_AUTH:
                    update_account_sync_status(
                        db, account, failure.account_status, sync_error=failure.account_message
                    )
        finally:
            db.close()

    def _run(self, db, job, account, payload: BulkActionPayload, action: str) -> None:
        client = self.provider_factory(account.id)
        store = self.store_factory(account.id)
        ids = self._resolve_ids(client, payload)
        if job.total_messages != len(ids):
            job.total_messages = len(ids)
            db.commit()

        processed = 0
        for i in range(0, len(ids), self.batch_size):
            if refresh_job_status(db, job) == JOB_CANCELLED:
                logger.info(f"{action} job {job.id} cancelled after {processed} messages")
                return
            chunk = ids[i:i + self.batch_size]
            if action == JOB_DELETE:
                self._call(lambda: client.batch_delete(chunk))
                store.delete_by_ids(chunk)
            else:
                self._call(lambda: client.trash(chunk))
                store.mark_trashed(chunk)
            processed += len(chunk)
            update_job_progress(db, job, processed)

        store.rebuild_sender_aggregates()
        update_job_status(db, job, JOB_COMPLETED, processed_messages=processed, completed_at=datetime.utcnow())
        logger.info(f"{action} job {job.id} completed: {processed} messages")
