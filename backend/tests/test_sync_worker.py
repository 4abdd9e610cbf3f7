"""Full metadata sync: end-to-end run, checkpoints and resume, single-flight, failure handling, recovery."""
from datetime import datetime, timedelta

import pytest

from conftest import FakeGmailClient, http_error, wait_for
from mailsync.gmail_service import GmailAuthRequiredError
from mailsync.job_queue.types import SyncJobPayload
from mailsync.job_state_db import create_job, get_account, get_job
from mailsync.models import Job, MailAccount
from mailsync.services.sync_worker import (
    ALREADY_RUNNING_MESSAGE,
    AUTH_EXPIRED_MESSAGE,
    PERMISSION_DENIED_MESSAGE,
    SUPERSEDED_MESSAGE,
    AccountNotFoundError,
    classify_failure,
)
from mailsync.throttle import AdaptiveThrottle


def load_job(session_factory, job_id):
    db = session_factory()
    try:
        job = get_job(db, job_id)
        db.expunge(job)
        return job
    finally:
        db.close()


def load_account(session_factory, account_id):
    db = session_factory()
    try:
        account = get_account(db, account_id)
        db.expunge(account)
        return account
    finally:
        db.close()


def make_job(session_factory, account_id, **fields):
    db = session_factory()
    try:
        account = get_account(db, account_id)
        job = create_job(db, account, "sync", total_messages=fields.pop("total_messages", 6))
        for key, value in fields.items():
            setattr(job, key, value)
        db.commit()
        return job.id
    finally:
        db.close()


def test_full_sync_end_to_end_with_transient_failure(sync_worker, session_factory, account, fake_gmail, stores):
    # page 2 detail fetch fails twice with 503; call-level retry allows one retry,
    # so the job fails once, is re-queued, and resumes from the page-1 checkpoint
    fake_gmail.detail_failures["m3"] = [http_error(503), http_error(503)]

    job = sync_worker.start_metadata_sync(account.id, 6)

    done = wait_for(lambda: load_job(session_factory, job.id).status == "completed" and load_job(session_factory, job.id))
    assert done.processed_messages == 6
    assert done.total_messages == 6
    assert done.retry_count == 1
    assert done.next_page_token is None
    assert done.resumed_at is not None
    assert done.processed_at_resume == 2

    store = stores(account.id)
    assert store.count() == 6
    senders = {s["email"]: s["count"] for s in store.top_senders()}
    assert senders == {"alice@example.com": 3, "bob@example.com": 3}

    acc = load_account(session_factory, account.id)
    assert acc.sync_status == "completed"
    assert acc.history_id == "1000"
    assert acc.total_messages == 6
    assert acc.sync_completed_at is not None

    assert fake_gmail.list_calls == [None, "p1", "p1", "p2"]


def test_start_is_idempotent_while_active(sync_worker, queue, account):
    queue.pause()
    first = sync_worker.start_metadata_sync(account.id, 10)
    second = sync_worker.start_metadata_sync(account.id, 10)
    assert second.id == first.id
    assert queue.get_status().waiting == 1


def test_start_sets_account_syncing(sync_worker, queue, session_factory, account):
    queue.pause()
    sync_worker.start_metadata_sync(account.id, 42)
    acc = load_account(session_factory, account.id)
    assert acc.sync_status == "syncing"
    assert acc.total_messages == 42


def test_start_unknown_account(sync_worker):
    with pytest.raises(AccountNotFoundError):
        sync_worker.start_metadata_sync(999)


def test_checkpoint_resume_continues_from_cursor(sync_worker, queue, session_factory, account, fake_gmail, stores):
    queue.pause()
    stores(account.id).insert_emails([fake_gmail.record_for("m1"), fake_gmail.record_for("m2")])
    job_id = make_job(session_factory, account.id, processed_messages=2, next_page_token="p1", started_at=datetime.utcnow())

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "completed"
    assert job.processed_messages == 6
    assert job.processed_at_resume == 2
    assert job.resumed_at is not None
    assert fake_gmail.list_calls == ["p1", "p2"]
    assert stores(account.id).count() == 6


def test_progress_without_cursor_restarts_from_zero(sync_worker, queue, session_factory, account, fake_gmail, stores):
    queue.pause()
    stores(account.id).insert_emails([fake_gmail.record_for("stale")])
    job_id = make_job(session_factory, account.id, processed_messages=4, next_page_token=None)

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "completed"
    assert job.processed_messages == 6
    assert job.resumed_at is None
    assert fake_gmail.list_calls[0] is None
    assert "stale" not in stores(account.id).message_ids()


def test_checkpoints_are_written_at_interval(sync_worker, queue, session_factory, account, fake_gmail):
    queue.pause()
    fake_gmail.detail_failures["m5"] = [GmailAuthRequiredError("expired")]
    job_id = make_job(session_factory, account.id)

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "failed"
    # pages 1 and 2 were checkpointed before page 3 failed
    assert job.processed_messages == 4
    assert job.next_page_token == "p2"


def test_second_sync_for_account_is_cancelled(sync_worker, queue, session_factory, account, fake_gmail):
    queue.pause()
    make_job(session_factory, account.id, status="running", started_at=datetime.utcnow())
    job_id = make_job(session_factory, account.id)

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "cancelled"
    assert job.last_error == ALREADY_RUNNING_MESSAGE
    assert fake_gmail.list_calls == []


def test_non_pending_job_is_skipped(sync_worker, queue, session_factory, account, fake_gmail):
    queue.pause()
    job_id = make_job(session_factory, account.id, status="completed")
    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))
    assert load_job(session_factory, job_id).status == "completed"
    assert fake_gmail.list_calls == []


def test_cancel_pending_job(sync_worker, queue, session_factory, account, fake_gmail):
    queue.pause()
    job = sync_worker.start_metadata_sync(account.id, 6)
    assert sync_worker.cancel_metadata_sync(account.id) is True
    assert load_job(session_factory, job.id).status == "cancelled"
    assert load_account(session_factory, account.id).sync_status == "idle"

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job.id, account_id=account.id))
    assert fake_gmail.list_calls == []
    assert sync_worker.cancel_metadata_sync(account.id) is False


def test_cancel_mid_run_stops_at_page_boundary(queue, session_factory, account, stores, sync_options):
    from mailsync.services.sync_worker import SyncWorker

    class CancellingGmail(FakeGmailClient):
        def list_message_ids(self, page_token=None, max_results=None):
            page = super().list_message_ids(page_token, max_results)
            if page_token is None:
                db = session_factory()
                try:
                    db.query(Job).filter(Job.mail_account_id == account.id).update({"status": "cancelled"})
                    db.commit()
                finally:
                    db.close()
            return page

    gmail = CancellingGmail(pages=[["m1", "m2"], ["m3", "m4"]])
    worker = SyncWorker(
        queue,
        session_factory=session_factory,
        provider_factory=lambda account_id: gmail,
        store_factory=stores,
        options=sync_options,
        throttle_factory=lambda: AdaptiveThrottle(initial_delay_s=0.0, sleep=lambda s: None),
        sleep=lambda s: None,
    )
    queue.pause()
    job_id = make_job(session_factory, account.id)
    worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "cancelled"
    assert job.processed_messages == 2
    assert gmail.list_calls == [None]
    assert load_account(session_factory, account.id).sync_status == "idle"


def test_auth_failure_is_terminal(sync_worker, queue, session_factory, account, fake_gmail):
    queue.pause()
    fake_gmail.list_failures = [http_error(401, "Invalid Credentials")]
    job_id = make_job(session_factory, account.id)

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "failed"
    assert job.error_kind == "auth"
    assert job.last_error == AUTH_EXPIRED_MESSAGE
    assert job.retry_count == 0
    acc = load_account(session_factory, account.id)
    assert acc.sync_status == "auth_expired"
    assert acc.sync_error == "Authentication expired"
    assert queue.get_status().waiting == 0


def test_permission_failure_is_terminal(sync_worker, queue, session_factory, account, fake_gmail):
    queue.pause()
    fake_gmail.list_failures = [http_error(403, "Forbidden")]
    job_id = make_job(session_factory, account.id)

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "failed"
    assert job.last_error == PERMISSION_DENIED_MESSAGE
    assert load_account(session_factory, account.id).sync_status == "error"
    assert queue.get_status().waiting == 0


def test_transient_failure_requeues_with_backoff(sync_worker, queue, session_factory, account, fake_gmail):
    queue.pause()
    fake_gmail.list_failures = [http_error(503), http_error(503)]
    job_id = make_job(session_factory, account.id)

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "pending"
    assert job.retry_count == 1
    assert job.error_kind == "transient"
    waiting = [j for j in queue.get_jobs_by_type("metadata_sync") if j.status == "waiting"]
    assert len(waiting) == 1
    assert waiting[0].payload == SyncJobPayload(job_id=job_id, account_id=account.id)
    assert waiting[0].options.attempts == 1


def test_transient_failures_exhaust_job_retries(sync_worker, queue, session_factory, account, fake_gmail):
    queue.pause()
    job_id = make_job(session_factory, account.id, retry_count=3)
    fake_gmail.list_failures = [http_error(500), http_error(500)]

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "failed"
    assert job.retry_count == 4
    assert load_account(session_factory, account.id).sync_status == "error"


def test_unknown_error_fails_without_requeue(sync_worker, queue, session_factory, account, fake_gmail):
    queue.pause()
    fake_gmail.list_failures = [ValueError("unexpected payload")]
    job_id = make_job(session_factory, account.id)

    sync_worker.process_metadata_sync(SyncJobPayload(job_id=job_id, account_id=account.id))

    job = load_job(session_factory, job_id)
    assert job.status == "failed"
    assert job.error_kind == "unknown"
    assert job.last_error == "unexpected payload"
    assert queue.get_status().waiting == 0


def test_failed_items_are_retried_in_bounded_throttled_batches(sync_worker, fake_gmail):
    ids = [f"m{i}" for i in range(1, 501)]
    # every odd message is rate limited once inside a successful batch
    for mid in ids[::2]:
        fake_gmail.item_failures[mid] = [429]
    sleeps = []
    throttle = AdaptiveThrottle(initial_delay_s=0.0, concurrency=150, max_concurrency=200, sleep=sleeps.append)

    records = sync_worker.fetch_details(fake_gmail, ids, throttle)

    assert len(records) == 500
    sizes = [len(call) for call in fake_gmail.detail_calls]
    assert sizes == [100] * 5 + [100, 100, 50]
    assert throttle.stats()["rate_limit_count"] > 0
    # every batch after the first waits out the rate-limit backoff
    assert len(sleeps) == len(sizes) - 1


def test_classify_failure_kinds():
    assert classify_failure(GmailAuthRequiredError("x")).kind == "auth"
    assert classify_failure(http_error(403)).kind == "permission"
    assert classify_failure(http_error(400)).kind == "bad_request"
    assert classify_failure(http_error(429)).retryable is True
    assert classify_failure(ConnectionResetError()).kind == "transient"
    assert classify_failure(KeyError("x")).kind == "unknown"


def test_resume_latest_failed_job(sync_worker, queue, session_factory, account):
    queue.pause()
    old = make_job(session_factory, account.id, status="failed", created_at=datetime.utcnow() - timedelta(hours=1))
    latest = make_job(session_factory, account.id, status="failed", processed_messages=2, next_page_token="p1")

    job = sync_worker.resume_metadata_sync(account.id)

    assert job.id == latest
    assert load_job(session_factory, latest).status == "pending"
    assert load_job(session_factory, old).status == "failed"
    assert queue.get_status().waiting == 1


def test_resume_requires_failed_or_paused(sync_worker, queue, session_factory, account):
    queue.pause()
    assert sync_worker.resume_metadata_sync(account.id) is None
    make_job(session_factory, account.id, status="completed")
    assert sync_worker.resume_metadata_sync(account.id) is None


def test_startup_recovery(sync_worker, queue, session_factory, account, db_session):
    queue.pause()
    other = MailAccount(email="other@example.com")
    third = MailAccount(email="third@example.com")
    db_session.add_all([other, third])
    db_session.commit()

    base = datetime.utcnow() - timedelta(hours=1)
    stale = make_job(session_factory, account.id, status="pending", created_at=base)
    newest = make_job(session_factory, account.id, status="running", created_at=base + timedelta(minutes=5))
    failed = make_job(session_factory, other.id, status="failed", retry_count=1, error_kind="transient")
    auth = make_job(session_factory, third.id, status="failed", retry_count=0, error_kind="auth")

    assert sync_worker.resume_interrupted_jobs() == 2

    assert load_job(session_factory, newest).status == "pending"
    stale_job = load_job(session_factory, stale)
    assert stale_job.status == "cancelled"
    assert stale_job.last_error == SUPERSEDED_MESSAGE
    failed_job = load_job(session_factory, failed)
    assert failed_job.status == "pending"
    assert failed_job.retry_count == 2
    assert load_job(session_factory, auth).status == "failed"
    queued = sorted(j.payload.job_id for j in queue.get_jobs_by_type("metadata_sync"))
    assert queued == sorted([newest, failed])
