"""Pytest fixtures: per-test SQLite DB, fake Gmail, local email store, in-process queue."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["QUEUE_BACKEND"] = "memory"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("REDIS_URL", None)
os.environ.pop("API_KEY", None)

import time

import httplib2
import pytest
from googleapiclient.errors import HttpError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from mailsync.email_store import EmailRecord, EmailStore
from mailsync.gmail_service import DetailBatch, HistoryExpiredError, MessagePage
from mailsync.job_queue.memory import MemoryQueue
from mailsync.models import Base, MailAccount
from mailsync.services.bulk_actions import BulkActionWorker
from mailsync.services.sync_worker import SyncOptions, SyncWorker
from mailsync.throttle import AdaptiveThrottle


def http_error(status: int, message: str = "Backend Error", headers=None) -> HttpError:
    info = {"status": str(status)}
    info.update(headers or {})
    content = ('{"error": {"code": %d, "message": "%s"}}' % (status, message)).encode()
    return HttpError(httplib2.Response(info), content)


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    raise AssertionError("condition not met in time")


def no_sleep(seconds):
    return None


class FakeGmailClient:
    """
    In-memory stand-in for GmailClient.

    pages: list of id lists; page i is served for token None (i=0) or f"p{i}".
    detail_failures: message id -> list of exceptions raised (one per call) by
    any detail fetch that includes that id.
    item_failures: message id -> list of HTTP statuses (one per call) reported as
    a per-item failure inside an otherwise successful batch.
    """

    def __init__(self, pages=None, history_id="1000", quick_total=None):
        self.pages = [list(p) for p in (pages or [])]
        self.history_id = history_id
        self.quick_total = quick_total
        self.detail_failures = {}
        self.item_failures = {}
        self.list_failures = []
        self.history = None  # HistoryChanges or an exception to raise
        self.history_calls = []
        self.query_results = {}
        self.deleted = []
        self.trashed = []
        self.list_calls = []
        self.detail_calls = []

    def record_for(self, mid: str) -> EmailRecord:
        n = int("".join(ch for ch in mid if ch.isdigit()) or 0)
        sender = "alice" if n % 2 else "bob"
        return EmailRecord(
            message_id=mid,
            thread_id=f"t{mid}",
            subject=f"Subject {mid}",
            from_email=f"{sender}@example.com",
            from_name=sender.title(),
            labels=["INBOX", "UNREAD"],
            category=None,
            size_bytes=100,
            internal_date=1700000000000 + n,
        )

    def get_current_history_id(self):
        return self.history_id

    def get_quick_stats(self):
        if self.quick_total is not None:
            return self.quick_total
        return sum(len(p) for p in self.pages)

    def list_message_ids(self, page_token=None, max_results=None):
        self.list_calls.append(page_token)
        if self.list_failures:
            raise self.list_failures.pop(0)
        index = 0 if page_token is None else int(page_token[1:])
        ids = self.pages[index] if index < len(self.pages) else []
        next_token = f"p{index + 1}" if index + 1 < len(self.pages) else None
        return MessagePage(ids=list(ids), next_page_token=next_token)

    def fetch_message_details(self, message_ids):
        self.detail_calls.append(list(message_ids))
        for mid in message_ids:
            failures = self.detail_failures.get(mid)
            if failures:
                raise failures.pop(0)
        records, failed, rate_limited = [], [], False
        for mid in message_ids:
            statuses = self.item_failures.get(mid)
            if statuses:
                if statuses.pop(0) == 429:
                    rate_limited = True
                failed.append(mid)
            else:
                records.append(self.record_for(mid))
        return DetailBatch(records=records, failed_ids=failed, rate_limited=rate_limited)

    def fetch_history_changes(self, start_history_id, call=None):
        self.history_calls.append(start_history_id)
        if isinstance(self.history, Exception):
            raise self.history
        if self.history is None:
            raise HistoryExpiredError("expired")
        return self.history

    def get_message_ids_by_query(self, query, max_results=500, page_token=None):
        ids = self.query_results.get(query, [])
        start = int(page_token) if page_token else 0
        chunk = ids[start:start + max_results]
        end = start + len(chunk)
        return MessagePage(ids=chunk, next_page_token=str(end) if end < len(ids) else None)

    def batch_delete(self, message_ids):
        self.deleted.append(list(message_ids))

    def trash(self, message_ids):
        self.trashed.append(list(message_ids))


@pytest.fixture
def db_engine(tmp_path):
    """File-based sqlite so queue worker threads and the test see the same data."""
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def account(db_session):
    acc = MailAccount(email="user@example.com", provider="gmail", sync_status="idle")
    db_session.add(acc)
    db_session.commit()
    db_session.refresh(acc)
    return acc


@pytest.fixture
def fake_gmail():
    return FakeGmailClient(pages=[["m1", "m2"], ["m3", "m4"], ["m5", "m6"]])


@pytest.fixture
def stores(tmp_path):
    opened = {}

    def factory(account_id):
        if account_id not in opened:
            opened[account_id] = EmailStore.from_path(str(tmp_path / f"emails_{account_id}.db"), account_id=account_id)
        return opened[account_id]

    factory.opened = opened
    yield factory
    for store in opened.values():
        store.close()


@pytest.fixture
def queue():
    q = MemoryQueue(max_concurrency=2, poll_interval_s=0.01)
    yield q
    q.close()


@pytest.fixture
def sync_options():
    return SyncOptions(
        list_page_size=2,
        insert_batch_size=500,
        progress_interval=2,
        max_job_retries=3,
        job_retry_base_s=0.0,
        call_max_retries=1,
        call_base_delay_s=0.0,
        call_max_delay_s=0.0,
    )


@pytest.fixture
def sync_worker(queue, session_factory, fake_gmail, stores, sync_options):
    worker = SyncWorker(
        queue,
        session_factory=session_factory,
        provider_factory=lambda account_id: fake_gmail,
        store_factory=stores,
        options=sync_options,
        throttle_factory=lambda: AdaptiveThrottle(initial_delay_s=0.0, sleep=no_sleep),
        sleep=no_sleep,
    )
    worker.register()
    return worker


@pytest.fixture
def bulk_worker(queue, session_factory, fake_gmail, stores):
    worker = BulkActionWorker(
        queue,
        session_factory=session_factory,
        provider_factory=lambda account_id: fake_gmail,
        store_factory=stores,
        batch_size=2,
        call_max_retries=1,
        sleep=no_sleep,
    )
    worker.register()
    return worker
