"""
Full and delta Gmail metadata sync.

Full sync is a queue job: it pages through every message id, fetches metadata
in throttled batches, writes the local email store and checkpoints
{processed_messages, next_page_token} on the Job row so a crashed or failed
run resumes from the last persisted page. Delta sync replays Gmail history
since the account's stored historyId and falls back to a full sync when that
history has expired.

At most one sync job runs per account. The guard is a check for another
running job before starting, so two workers dispatched at the same instant
can both pass it; the queue's concurrency ceiling and the scheduler's own
skip-if-running check keep that window small.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..config import settings as default_settings
from ..database import SessionLocal
from ..email_store import open_email_store
from ..gmail_service import DETAIL_BATCH_LIMIT, GmailAuthRequiredError, HistoryExpiredError, get_gmail_client
from ..job_queue.base import JobQueue
from ..job_queue.types import AddJobOptions, QueueJobType, SyncJobPayload
from ..job_state_db import (
    create_job,
    get_account,
    get_active_sync_job,
    get_job,
    get_latest_job,
    has_running_sync,
    list_interrupted_sync_jobs,
    refresh_job_status,
    set_account_history_id,
    update_account_sync_status,
    update_job_progress,
    update_job_status,
)
from ..models import (
    ACCOUNT_AUTH_EXPIRED,
    ACCOUNT_COMPLETED,
    ACCOUNT_ERROR,
    ACCOUNT_IDLE,
    ACCOUNT_SYNCING,
    ERROR_AUTH,
    ERROR_BAD_REQUEST,
    ERROR_PERMISSION,
    ERROR_TRANSIENT,
    ERROR_UNKNOWN,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PAUSED,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_SYNC,
)
from ..retry import http_status, is_retryable, retry_after, with_retry
from ..throttle import AdaptiveThrottle, create_gmail_throttle

logger = logging.getLogger(__name__)

AUTH_EXPIRED_MESSAGE = "Authentication expired. Please reconnect your Gmail account."
PERMISSION_DENIED_MESSAGE = "Permission denied. Please check your Gmail permissions."
ALREADY_RUNNING_MESSAGE = "Another sync already running"
SUPERSEDED_MESSAGE = "Superseded by a newer sync job"

# Failed jobs with these kinds need the user before they can succeed.
USER_ACTION_ERROR_KINDS = (ERROR_AUTH, ERROR_PERMISSION, ERROR_BAD_REQUEST)


class AccountNotFoundError(Exception):
    pass


@dataclass(frozen=True)
class SyncFailure:
    kind: str
    job_message: str
    account_status: str
    account_message: str
    retryable: bool


def classify_failure(exc: BaseException) -> SyncFailure:
    """Map an exception to the Job/Account fields a terminal or retryable failure writes."""
    status = http_status(exc)
    if isinstance(exc, GmailAuthRequiredError) or status == 401:
        return SyncFailure(ERROR_AUTH, AUTH_EXPIRED_MESSAGE, ACCOUNT_AUTH_EXPIRED, "Authentication expired", False)
    if status == 403:
        return SyncFailure(ERROR_PERMISSION, PERMISSION_DENIED_MESSAGE, ACCOUNT_ERROR, "Permission denied", False)
    message = str(exc) or exc.__class__.__name__
    if status == 400:
        return SyncFailure(ERROR_BAD_REQUEST, message, ACCOUNT_ERROR, message, False)
    if is_retryable(exc):
        return SyncFailure(ERROR_TRANSIENT, message, ACCOUNT_ERROR, message, True)
    return SyncFailure(ERROR_UNKNOWN, message, ACCOUNT_ERROR, message, False)


@dataclass(frozen=True)
class SyncOptions:
    list_page_size: int = 500
    insert_batch_size: int = 500
    progress_interval: int = 500
    max_job_retries: int = 3
    job_retry_base_s: float = 60.0
    call_max_retries: int = 3
    call_base_delay_s: float = 1.0
    call_max_delay_s: float = 60.0

    @classmethod
    def from_settings(cls, s) -> "SyncOptions":
        return cls(
            list_page_size=s.gmail_list_page_size,
            insert_batch_size=s.sync_insert_batch_size,
            progress_interval=s.sync_progress_interval,
            max_job_retries=s.sync_max_job_retries,
            job_retry_base_s=s.sync_job_retry_base_s,
            call_max_retries=s.retry_max_retries,
            call_base_delay_s=s.retry_base_delay_s,
            call_max_delay_s=s.retry_max_delay_s,
        )


@dataclass
class DeltaSyncResult:
    added: int
    deleted: int
    labels_changed: int
    history_id: str


@dataclass
class DeltaStart:
    type: str  # "delta" or "full"
    result: Optional[DeltaSyncResult] = None
    job: Optional[object] = None


def detached(db, obj):
    """Load obj fully and detach it so callers can read it after the session closes."""
    db.refresh(obj)
    db.expunge(obj)
    return obj


class SyncWorker:
    def __init__(
        self,
        queue: JobQueue,
        session_factory: Callable = SessionLocal,
        provider_factory: Callable = get_gmail_client,
        store_factory: Callable = open_email_store,
        options: Optional[SyncOptions] = None,
        throttle_factory: Optional[Callable[[], AdaptiveThrottle]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.provider_factory = provider_factory
        self.store_factory = store_factory
        self.options = options or SyncOptions.from_settings(default_settings)
        self._sleep = sleep
        self._throttle_factory = throttle_factory or (lambda: create_gmail_throttle(default_settings, sleep=sleep))

    def register(self, queue: Optional[JobQueue] = None) -> None:
        (queue or self.queue).process(QueueJobType.METADATA_SYNC, self.process_metadata_sync)

    # ------------------------------------------------------------------
    # Upstream calls
    # ------------------------------------------------------------------

    def call(self, fn, throttle: Optional[AdaptiveThrottle] = None):
        """Run one upstream request under the call-level retry policy."""

        def on_retry(exc, attempt, delay):
            logger.warning(
                f"Gmail call failed (retry {attempt}/{self.options.call_max_retries} in {delay:.1f}s): {exc}"
            )
            if throttle is not None:
                if http_status(exc) == 429:
                    throttle.on_rate_limit(retry_after(exc))
                else:
                    throttle.on_error()

        return with_retry(
            fn,
            max_retries=self.options.call_max_retries,
            base_delay=self.options.call_base_delay_s,
            max_delay=self.options.call_max_delay_s,
            on_retry=on_retry,
            sleep=self._sleep,
        )

    def fetch_details(self, client, message_ids: list, throttle: AdaptiveThrottle) -> list:
        """Throttled, retried metadata fetch. Items that fail twice are skipped."""
        records, failed = self._fetch_chunks(client, message_ids, throttle)
        if failed:
            logger.info(f"Retrying {len(failed)} messages that failed to fetch")
            retried, still_failed = self._fetch_chunks(client, failed, throttle)
            records.extend(retried)
            if still_failed:
                logger.warning(f"Skipping {len(still_failed)} messages that could not be fetched")
        return records

    def _fetch_chunks(self, client, message_ids: list, throttle: AdaptiveThrottle) -> tuple[list, list]:
        records = []
        failed = []
        i = 0
        while i < len(message_ids):
            size = min(DETAIL_BATCH_LIMIT, max(1, throttle.concurrency))
            chunk = message_ids[i:i + size]
            i += size
            throttle.wait()
            started = time.monotonic()
            batch = self.call(lambda: client.fetch_message_details(chunk), throttle)
            if batch.rate_limited:
                throttle.on_rate_limit(batch.retry_after_s)
            else:
                throttle.on_batch_complete(time.monotonic() - started, len(batch.records))
            records.extend(batch.records)
            failed.extend(batch.failed_ids)
        return records, failed

    def insert_records(self, store, records: list) -> None:
        size = max(1, self.options.insert_batch_size)
        for i in range(0, len(records), size):
            store.insert_emails(records[i:i + size])
            # let other queue workers run between sub-batches
            time.sleep(0)

    # ------------------------------------------------------------------
    # Full sync (queue handler)
    # ------------------------------------------------------------------

    def process_metadata_sync(self, payload: SyncJobPayload) -> None:
        db = self.session_factory()
        try:
            job = get_job(db, payload.job_id)
            if job is None:
                logger.warning(f"Sync job {payload.job_id} not found; dropping")
                return
            if job.status != JOB_PENDING:
                logger.info(f"Sync job {job.id} is {job.status}, not pending; skipping duplicate dispatch")
                return
            if has_running_sync(db, job.mail_account_id, exclude_job_id=job.id):
                logger.info(f"Sync job {job.id} cancelled: another sync is running for account {job.mail_account_id}")
                update_job_status(
                    db, job, JOB_CANCELLED, last_error=ALREADY_RUNNING_MESSAGE, completed_at=datetime.utcnow()
                )
                return
            account = get_account(db, job.mail_account_id)
            if account is None:
                update_job_status(
                    db, job, JOB_FAILED,
                    last_error="Account not found",
                    error_kind=ERROR_UNKNOWN,
                    completed_at=datetime.utcnow(),
                )
                return
            try:
                self._run_full_sync(db, job, account)
            except Exception as e:
                db.rollback()
                logger.exception(f"Sync job {job.id} for account {account.id} failed")
                self._handle_sync_error(db, job, account, e)
        finally:
            db.close()

    def _run_full_sync(self, db, job, account) -> None:
        opts = self.options
        now = datetime.utcnow()
        resuming = (job.processed_messages or 0) > 0 and bool(job.next_page_token)
        if resuming:
            logger.info(
                f"Resuming sync job {job.id} at {job.processed_messages} messages for account {account.id}"
            )
            update_job_status(
                db, job, JOB_RUNNING,
                resumed_at=now,
                processed_at_resume=job.processed_messages,
                started_at=job.started_at or now,
            )
        else:
            logger.info(f"Starting sync job {job.id} for account {account.id}")
            update_job_status(
                db, job, JOB_RUNNING,
                started_at=now,
                processed_messages=0,
                next_page_token=None,
                resumed_at=None,
                processed_at_resume=0,
            )
        update_account_sync_status(db, account, ACCOUNT_SYNCING, sync_started_at=now, sync_error=None)

        store = self.store_factory(account.id)
        if not job.next_page_token:
            store.clear()

        client = self.provider_factory(account.id)
        throttle = self._throttle_factory()
        processed = job.processed_messages or 0
        page_token = job.next_page_token
        seen_tokens = {page_token} if page_token else set()

        while True:
            if refresh_job_status(db, job) == JOB_CANCELLED:
                logger.info(f"Sync job {job.id} cancelled at {processed} messages")
                update_account_sync_status(db, account, ACCOUNT_IDLE)
                return

            page = self.call(lambda: client.list_message_ids(page_token=page_token, max_results=opts.list_page_size))
            if page.ids:
                records = self.fetch_details(client, page.ids, throttle)
                self.insert_records(store, records)

            before = processed
            processed += len(page.ids)
            next_token = page.next_page_token
            if next_token and next_token in seen_tokens:
                logger.warning(f"Gmail pagination returned a repeated page token for job {job.id}; stopping early")
                next_token = None
            if next_token:
                seen_tokens.add(next_token)

            if processed // max(1, opts.progress_interval) > before // max(1, opts.progress_interval):
                update_job_progress(db, job, processed, next_token)

            if not next_token or not page.ids:
                break
            page_token = next_token

        store.rebuild_sender_aggregates()
        history_id = self.call(client.get_current_history_id)

        if refresh_job_status(db, job) == JOB_CANCELLED:
            logger.info(f"Sync job {job.id} cancelled before completion")
            update_account_sync_status(db, account, ACCOUNT_IDLE)
            return

        done = datetime.utcnow()
        update_job_status(
            db, job, JOB_COMPLETED,
            processed_messages=processed,
            total_messages=processed,
            next_page_token=None,
            completed_at=done,
            last_error=None,
            error_kind=None,
        )
        set_account_history_id(db, account, history_id)
        update_account_sync_status(
            db, account, ACCOUNT_COMPLETED,
            sync_completed_at=done,
            sync_error=None,
            total_messages=processed,
        )
        logger.info(f"Sync job {job.id} completed: {processed} messages for account {account.id}")
        logger.debug(f"Sync job {job.id} throttle stats: {throttle.stats()}")

    def _handle_sync_error(self, db, job, account, exc: BaseException) -> None:
        failure = classify_failure(exc)
        now = datetime.utcnow()
        if failure.kind in (ERROR_AUTH, ERROR_PERMISSION):
            logger.warning(f"Sync job {job.id} stopped: {failure.job_message}")
            update_job_status(
                db, job, JOB_FAILED,
                last_error=failure.job_message,
                error_kind=failure.kind,
                completed_at=now,
            )
            update_account_sync_status(db, account, failure.account_status, sync_error=failure.account_message)
            return

        retry_count = (job.retry_count or 0) + 1
        if failure.retryable and retry_count <= self.options.max_job_retries:
            delay = self.options.job_retry_base_s * (2 ** retry_count)
            logger.info(
                f"Sync job {job.id} will retry in {delay:.0f}s (attempt {retry_count}/{self.options.max_job_retries})"
            )
            update_job_status(
                db, job, JOB_PENDING,
                last_error=failure.job_message,
                error_kind=failure.kind,
                retry_count=retry_count,
            )
            self.queue.add(
                QueueJobType.METADATA_SYNC,
                SyncJobPayload(job_id=job.id, account_id=account.id),
                AddJobOptions(delay_s=delay, attempts=1),
            )
            return

        logger.error(f"Sync job {job.id} failed permanently after {retry_count} attempts: {failure.job_message}")
        update_job_status(
            db, job, JOB_FAILED,
            last_error=failure.job_message,
            error_kind=failure.kind,
            retry_count=retry_count,
            completed_at=now,
        )
        update_account_sync_status(db, account, failure.account_status, sync_error=failure.account_message)

    # ------------------------------------------------------------------
    # Delta sync
    # ------------------------------------------------------------------

    def process_delta_sync(self, account_id: int) -> Optional[DeltaSyncResult]:
        """
        Apply Gmail history since the stored historyId.

        Returns None when a full sync is required: no historyId yet, or Gmail
        no longer has history that far back (the stored id is then cleared).
        """
        db = self.session_factory()
        try:
            account = get_account(db, account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            if not account.history_id:
                return None
            try:
                client = self.provider_factory(account.id)
                try:
                    changes = client.fetch_history_changes(account.history_id, call=self.call)
                except HistoryExpiredError:
                    logger.info(f"History expired for account {account.id}; full sync required")
                    set_account_history_id(db, account, None)
                    return None

                store = self.store_factory(account.id)
                if changes.deleted:
                    store.delete_by_ids(changes.deleted)
                if changes.added:
                    records = self.fetch_details(client, changes.added, self._throttle_factory())
                    self.insert_records(store, records)
                if changes.label_changes:
                    store.apply_label_changes(changes.label_changes)
                store.rebuild_sender_aggregates()
            except Exception as e:
                failure = classify_failure(e)
                if failure.kind in (ERROR_AUTH, ERROR_PERMISSION):
                    db.rollback()
                    update_account_sync_status(db, account, failure.account_status, sync_error=failure.account_message)
                raise

            set_account_history_id(db, account, changes.new_history_id, sync_completed_at=datetime.utcnow())
            logger.info(
                f"Delta sync for account {account.id}: +{len(changes.added)} -{len(changes.deleted)} "
                f"~{len(changes.label_changes)}"
            )
            return DeltaSyncResult(
                added=len(changes.added),
                deleted=len(changes.deleted),
                labels_changed=len(changes.label_changes),
                history_id=changes.new_history_id,
            )
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Operations for routes, auto-trigger and startup
    # ------------------------------------------------------------------

    def start_metadata_sync(self, account_id: int, total_messages: int = 0):
        """Create and enqueue a full sync job, or return the account's running/pending one."""
        db = self.session_factory()
        try:
            account = get_account(db, account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            existing = get_active_sync_job(db, account_id)
            if existing is not None:
                logger.info(f"Account {account_id} already has sync job {existing.id} ({existing.status})")
                return detached(db, existing)
            job = create_job(db, account, JOB_SYNC, total_messages=total_messages)
            update_account_sync_status(
                db, account, ACCOUNT_SYNCING,
                total_messages=total_messages or account.total_messages,
                sync_error=None,
            )
            self.queue.add(QueueJobType.METADATA_SYNC, SyncJobPayload(job_id=job.id, account_id=account.id))
            logger.info(f"Queued sync job {job.id} for account {account_id} ({total_messages} messages)")
            return detached(db, job)
        finally:
            db.close()

    def resume_metadata_sync(self, account_id: int):
        """Re-queue the account's latest sync job if it is failed or paused. None otherwise."""
        db = self.session_factory()
        try:
            account = get_account(db, account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            job = get_latest_job(db, account_id, JOB_SYNC)
            if job is None or job.status not in (JOB_FAILED, JOB_PAUSED):
                return None
            update_job_status(db, job, JOB_PENDING, last_error=None, error_kind=None, completed_at=None)
            update_account_sync_status(db, account, ACCOUNT_SYNCING, sync_error=None)
            self.queue.add(QueueJobType.METADATA_SYNC, SyncJobPayload(job_id=job.id, account_id=account.id))
            logger.info(f"Resumed sync job {job.id} at {job.processed_messages} messages")
            return detached(db, job)
        finally:
            db.close()

    def cancel_metadata_sync(self, account_id: int) -> bool:
        """
        Mark the account's running/pending sync job cancelled. A running job
        notices at its next page boundary.
        """
        db = self.session_factory()
        try:
            job = get_active_sync_job(db, account_id)
            if job is None:
                return False
            update_job_status(db, job, JOB_CANCELLED, completed_at=datetime.utcnow())
            account = get_account(db, account_id)
            if account is not None:
                update_account_sync_status(db, account, ACCOUNT_IDLE)
            logger.info(f"Cancelled sync job {job.id} for account {account_id}")
            return True
        finally:
            db.close()

    def start_delta_sync(self, account_id: int) -> DeltaStart:
        """Delta sync if possible, otherwise queue a full sync sized by the quick count."""
        result = self.process_delta_sync(account_id)
        if result is not None:
            return DeltaStart(type="delta", result=result)
        client = self.provider_factory(account_id)
        total = self.call(client.get_quick_stats)
        job = self.start_metadata_sync(account_id, total)
        return DeltaStart(type="full", job=job)

    def resume_interrupted_jobs(self) -> int:
        """
        Startup recovery: re-queue sync jobs left running, pending, or failed
        with retries left. Only the newest job per account is re-queued; older
        ones are cancelled. Returns the number re-queued.
        """
        db = self.session_factory()
        requeued = 0
        try:
            jobs = list_interrupted_sync_jobs(
                db, self.options.max_job_retries, skip_error_kinds=USER_ACTION_ERROR_KINDS
            )
            seen_accounts = set()
            for job in jobs:
                try:
                    if job.mail_account_id in seen_accounts:
                        logger.info(f"Cancelling duplicate sync job {job.id} for account {job.mail_account_id}")
                        update_job_status(
                            db, job, JOB_CANCELLED, last_error=SUPERSEDED_MESSAGE, completed_at=datetime.utcnow()
                        )
                        continue
                    seen_accounts.add(job.mail_account_id)
                    if job.status == JOB_FAILED:
                        update_job_status(db, job, JOB_PENDING, retry_count=(job.retry_count or 0) + 1)
                    elif job.status == JOB_RUNNING:
                        update_job_status(db, job, JOB_PENDING)
                    self.queue.add(
                        QueueJobType.METADATA_SYNC,
                        SyncJobPayload(job_id=job.id, account_id=job.mail_account_id),
                    )
                    requeued += 1
                except Exception:
                    db.rollback()
                    logger.exception(f"Could not resume sync job {job.id}")
        finally:
            db.close()
        if requeued:
            logger.info(f"Re-queued {requeued} interrupted sync jobs")
        return requeued
