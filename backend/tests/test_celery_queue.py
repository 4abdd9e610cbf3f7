"""CeleryQueue with mocked Celery app and Redis client."""
from unittest.mock import MagicMock

import pytest

from mailsync.job_queue.celery_queue import RUN_QUEUED_JOB_TASK, CeleryQueue, parse_redis_url
from mailsync.job_queue.types import AddJobOptions, Backoff, BulkActionPayload, QueueJobType, SyncJobPayload


class RetryRequested(Exception):
    pass


@pytest.fixture
def celery_app():
    return MagicMock()


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.pipeline.return_value.execute.return_value = [2, 1, 5, 0]
    return client


@pytest.fixture
def cq(celery_app, redis_client):
    return CeleryQueue(celery_app, "redis://localhost:6379/0", queue_name="mailsync", redis_client=redis_client)


def make_task(task_id="env-1", retries=0):
    task = MagicMock()
    task.request.id = task_id
    task.request.retries = retries
    task.retry.side_effect = lambda exc=None, countdown=None, max_retries=None: RetryRequested(countdown)
    return task


def test_parse_redis_url_full():
    conn = parse_redis_url("redis://:s3cret@cache.internal:6380/2")
    assert (conn.host, conn.port, conn.password, conn.db) == ("cache.internal", 6380, "s3cret", 2)


def test_parse_redis_url_defaults():
    conn = parse_redis_url("redis://localhost")
    assert (conn.host, conn.port, conn.password, conn.db) == ("localhost", 6379, None, 0)


def test_parse_redis_url_host_port_fallback():
    conn = parse_redis_url("redis-host:7000")
    assert (conn.host, conn.port) == ("redis-host", 7000)


def test_add_sends_generic_task(cq, celery_app, redis_client):
    job_id = cq.add(
        QueueJobType.METADATA_SYNC,
        SyncJobPayload(job_id=3, account_id=9),
        AddJobOptions(delay_s=30, priority=1, attempts=2),
    )
    redis_client.sadd.assert_called_once_with("mailsync:waiting", job_id)
    args, kwargs = celery_app.send_task.call_args
    assert args == (RUN_QUEUED_JOB_TASK,)
    assert kwargs["task_id"] == job_id
    assert kwargs["queue"] == "mailsync"
    assert kwargs["countdown"] == 30
    assert kwargs["priority"] == 1
    assert kwargs["kwargs"]["job_type"] == "metadata_sync"
    assert kwargs["kwargs"]["payload"] == {"job_id": 3, "account_id": 9}
    assert kwargs["kwargs"]["attempts"] == 2


def test_add_rejects_wrong_payload(cq):
    with pytest.raises(TypeError):
        cq.add(QueueJobType.TRASH, SyncJobPayload(job_id=1, account_id=1))


def test_run_envelope_dispatches_to_handler(cq):
    seen = []
    cq.process(QueueJobType.DELETE, seen.append)
    cq.run_envelope(make_task(), "delete", {"job_id": 1, "account_id": 2, "message_ids": ["a"], "query": None})
    assert seen == [BulkActionPayload(job_id=1, account_id=2, message_ids=["a"], query=None)]


def test_run_envelope_retries_while_budget_left(cq):
    def boom(p):
        raise RuntimeError("boom")

    cq.process(QueueJobType.METADATA_SYNC, boom)
    task = make_task(retries=0)
    with pytest.raises(RetryRequested):
        cq.run_envelope(task, "metadata_sync", {"job_id": 1, "account_id": 1}, attempts=3, backoff=Backoff("fixed", 4).to_dict())
    _, kwargs = task.retry.call_args
    assert kwargs["countdown"] == 4
    assert kwargs["max_retries"] == 2


def test_run_envelope_raises_when_budget_spent(cq):
    def boom(p):
        raise RuntimeError("boom")

    cq.process(QueueJobType.METADATA_SYNC, boom)
    task = make_task(retries=2)
    with pytest.raises(RuntimeError):
        cq.run_envelope(task, "metadata_sync", {"job_id": 1, "account_id": 1}, attempts=3)
    task.retry.assert_not_called()


def test_run_envelope_without_handler_fails(cq):
    with pytest.raises(RuntimeError):
        cq.run_envelope(make_task(), "trash", {"job_id": 1, "account_id": 1, "message_ids": None, "query": "x"})


def test_get_status_reads_counters(cq):
    status = cq.get_status()
    assert status.to_dict() == {"backend": "celery", "waiting": 2, "active": 1, "completed": 5, "failed": 0}


def test_remove_active_is_refused(cq, redis_client, celery_app):
    redis_client.sismember.return_value = True
    assert cq.remove("env-1") is False
    celery_app.control.revoke.assert_not_called()


def test_remove_waiting_revokes(cq, redis_client, celery_app):
    redis_client.sismember.return_value = False
    redis_client.srem.return_value = 1
    assert cq.remove("env-1") is True
    celery_app.control.revoke.assert_called_once_with("env-1")


def test_pause_and_resume_toggle_consumer(cq, celery_app):
    cq.pause()
    celery_app.control.cancel_consumer.assert_called_once_with("mailsync")
    cq.resume()
    celery_app.control.add_consumer.assert_called_once_with("mailsync")


def test_failed_publish_leaves_no_waiting_entry(cq, celery_app, redis_client):
    celery_app.send_task.side_effect = ConnectionError("broker down")
    with pytest.raises(ConnectionError):
        cq.add(QueueJobType.METADATA_SYNC, SyncJobPayload(job_id=3, account_id=9))
    envelope_id = redis_client.sadd.call_args[0][1]
    redis_client.srem.assert_called_once_with("mailsync:waiting", envelope_id)
