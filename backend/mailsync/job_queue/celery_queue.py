"""
Redis-backed job queue on Celery.

Envelopes are Celery messages on the Redis broker, so they survive restarts
and any number of workers can drain them. Every job type goes through one
generic task (see tasks.run_queued_job) that looks up the handler registered
on this queue in the worker process.

Celery has no cheap per-state counters on Redis, so envelope state is
mirrored under `<queue_name>:*` keys: waiting/active as sets, completed/failed
as sorted sets scored by finish time and pruned by retention.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse

import redis

from .base import JobQueue
from .types import (
    AddJobOptions,
    Backoff,
    JobPayload,
    QueueJobType,
    QueueStatus,
    backoff_delay,
    check_payload,
    payload_from_dict,
)

logger = logging.getLogger(__name__)

RUN_QUEUED_JOB_TASK = "mailsync.tasks.run_queued_job"

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

# Celery's Redis transport supports priorities 0-9, 0 first.
MIN_PRIORITY = 0
MAX_PRIORITY = 9
DEFAULT_PRIORITY = 5


@dataclass(frozen=True)
class RedisConnection:
    host: str
    port: int
    password: Optional[str] = None
    db: int = 0


def parse_redis_url(url: str) -> RedisConnection:
    """Host, port, password and db from redis://[:password@]host[:port][/db]; bare host:port also works."""
    parsed = urlparse(url or "")
    if parsed.scheme in ("redis", "rediss") and parsed.hostname:
        db = 0
        path = (parsed.path or "").lstrip("/")
        if path.isdigit():
            db = int(path)
        return RedisConnection(
            host=parsed.hostname,
            port=parsed.port or 6379,
            password=unquote(parsed.password) if parsed.password else None,
            db=db,
        )
    host, _, port = (url or "").partition(":")
    try:
        port_num = int(port) if port else 6379
    except ValueError:
        port_num = 6379
    return RedisConnection(host=host or "localhost", port=port_num)


def _clamp_priority(priority: Optional[int]) -> int:
    if priority is None:
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))


class CeleryQueue(JobQueue):
    backend_name = "celery"

    def __init__(
        self,
        celery_app,
        redis_url: str,
        queue_name: str = "mailsync",
        completed_retention_s: int = 3600,
        completed_keep: int = 1000,
        failed_retention_s: int = 24 * 3600,
        redis_client=None,
    ):
        super().__init__()
        self.celery_app = celery_app
        self.queue_name = queue_name
        self.completed_retention_s = completed_retention_s
        self.completed_keep = completed_keep
        self.failed_retention_s = failed_retention_s
        conn = parse_redis_url(redis_url)
        if redis_client is None:
            redis_client = redis.Redis(
                host=conn.host,
                port=conn.port,
                password=conn.password,
                db=conn.db,
                decode_responses=True,
                socket_connect_timeout=2,
            )
        self._redis = redis_client
        logger.info(f"CeleryQueue '{queue_name}' using Redis at {conn.host}:{conn.port}/{conn.db}")

    def _key(self, state: str) -> str:
        return f"{self.queue_name}:{state}"

    def add(self, job_type: QueueJobType, payload: JobPayload, options: Optional[AddJobOptions] = None) -> str:
        job_type = QueueJobType(job_type)
        check_payload(job_type, payload)
        options = options or AddJobOptions()
        envelope_id = uuid.uuid4().hex
        self._redis.sadd(self._key(WAITING), envelope_id)
        try:
            self.celery_app.send_task(
                RUN_QUEUED_JOB_TASK,
                kwargs={
                    "job_type": job_type.value,
                    "payload": payload.to_dict(),
                    "attempts": max(1, int(options.attempts)),
                    "backoff": options.backoff.to_dict(),
                },
                task_id=envelope_id,
                queue=self.queue_name,
                countdown=max(0.0, options.delay_s or 0.0) or None,
                priority=_clamp_priority(options.priority),
            )
        except Exception:
            self._redis.srem(self._key(WAITING), envelope_id)
            raise
        logger.info(f"CeleryQueue added {job_type.value} job {envelope_id}")
        return envelope_id

    def run_envelope(self, task, job_type: str, payload: dict, attempts: int = 3, backoff: Optional[dict] = None):
        """
        Body of the generic Celery task: dispatch to the registered handler and
        turn failures into Celery retries until the attempt budget is spent.
        """
        envelope_id = task.request.id
        attempts_made = int(task.request.retries or 0)
        handler = self.handler_for(job_type)
        if handler is None:
            self._mark(envelope_id, FAILED)
            raise RuntimeError(f"No handler registered for {job_type} in this worker")
        self._mark(envelope_id, ACTIVE)
        logger.info(f"CeleryQueue processing {job_type} job {envelope_id} (attempt {attempts_made + 1}/{attempts})")
        try:
            handler(payload_from_dict(job_type, payload))
        except Exception as e:
            if attempts_made + 1 < attempts:
                delay = backoff_delay(Backoff.from_dict(backoff), attempts_made + 1)
                logger.warning(f"CeleryQueue job {envelope_id} failed ({e}); retrying in {delay:.2f}s")
                self._mark(envelope_id, WAITING)
                raise task.retry(exc=e, countdown=delay, max_retries=attempts - 1)
            logger.error(f"CeleryQueue job {envelope_id} failed permanently: {e}")
            self._mark(envelope_id, FAILED)
            raise
        self._mark(envelope_id, COMPLETED)
        logger.info(f"CeleryQueue job {envelope_id} completed")

    def _mark(self, envelope_id: str, state: str) -> None:
        now = time.time()
        pipe = self._redis.pipeline()
        pipe.srem(self._key(WAITING), envelope_id)
        pipe.srem(self._key(ACTIVE), envelope_id)
        if state in (WAITING, ACTIVE):
            pipe.sadd(self._key(state), envelope_id)
        elif state == COMPLETED:
            key = self._key(COMPLETED)
            pipe.zadd(key, {envelope_id: now})
            pipe.zremrangebyscore(key, "-inf", now - self.completed_retention_s)
            pipe.zremrangebyrank(key, 0, -(self.completed_keep + 1))
        elif state == FAILED:
            key = self._key(FAILED)
            pipe.zadd(key, {envelope_id: now})
            pipe.zremrangebyscore(key, "-inf", now - self.failed_retention_s)
        pipe.execute()

    def get_status(self) -> QueueStatus:
        now = time.time()
        pipe = self._redis.pipeline()
        pipe.scard(self._key(WAITING))
        pipe.scard(self._key(ACTIVE))
        pipe.zcount(self._key(COMPLETED), now - self.completed_retention_s, "+inf")
        pipe.zcount(self._key(FAILED), now - self.failed_retention_s, "+inf")
        waiting, active, completed, failed = pipe.execute()
        return QueueStatus(
            backend=self.backend_name,
            waiting=int(waiting),
            active=int(active),
            completed=min(int(completed), self.completed_keep),
            failed=int(failed),
        )

    def pause(self) -> None:
        self.celery_app.control.cancel_consumer(self.queue_name)
        logger.info(f"CeleryQueue '{self.queue_name}' paused")

    def resume(self) -> None:
        self.celery_app.control.add_consumer(self.queue_name)
        logger.info(f"CeleryQueue '{self.queue_name}' resumed")

    def close(self) -> None:
        self._redis.close()
        logger.info(f"CeleryQueue '{self.queue_name}' closed")

    def remove(self, job_id: str) -> bool:
        if self._redis.sismember(self._key(ACTIVE), job_id):
            logger.warning(f"CeleryQueue cannot remove active job {job_id}")
            return False
        if self._redis.srem(self._key(WAITING), job_id):
            self.celery_app.control.revoke(job_id)
            logger.info(f"CeleryQueue revoked job {job_id}")
            return True
        removed = self._redis.zrem(self._key(COMPLETED), job_id) or self._redis.zrem(self._key(FAILED), job_id)
        return bool(removed)
