"""
In-process job queue for single-node deployments without Redis.

Envelopes live in memory and are lost on restart; durable progress lives in
the Job rows and is picked back up by startup recovery.
"""
import itertools
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from .base import JobQueue
from .types import (
    AddJobOptions,
    JobPayload,
    QueueJobType,
    QueueStatus,
    backoff_delay,
    check_payload,
)

logger = logging.getLogger(__name__)

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

DEFAULT_PRIORITY = 5


@dataclass
class QueuedJob:
    id: str
    type: QueueJobType
    payload: JobPayload
    options: AddJobOptions
    added_at: float
    scheduled_for: float
    seq: int
    attempts_made: int = 0
    status: str = WAITING
    finished_at: Optional[float] = None
    error: Optional[str] = None

    def sort_key(self):
        priority = self.options.priority if self.options.priority is not None else DEFAULT_PRIORITY
        return (priority, self.scheduled_for, self.seq)


class MemoryQueue(JobQueue):
    backend_name = "memory"

    def __init__(
        self,
        max_concurrency: int = 3,
        poll_interval_s: float = 0.1,
        retention_s: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.max_concurrency = max(1, int(max_concurrency))
        self.poll_interval_s = poll_interval_s
        self.retention_s = retention_s
        self._clock = clock
        self._jobs: dict[str, QueuedJob] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._active = 0
        self._paused = False
        self._closed = False
        self._stop = threading.Event()
        self._ticker: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._last_cleanup = self._clock()

    def start(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("MemoryQueue is closed")
            if self._ticker is not None:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrency, thread_name_prefix="mailsync-queue"
            )
            self._ticker = threading.Thread(target=self._run_ticker, name="mailsync-queue-ticker", daemon=True)
            self._ticker.start()
        logger.info(f"MemoryQueue started (concurrency={self.max_concurrency})")

    def add(self, job_type: QueueJobType, payload: JobPayload, options: Optional[AddJobOptions] = None) -> str:
        job_type = QueueJobType(job_type)
        check_payload(job_type, payload)
        options = options or AddJobOptions()
        return self._enqueue(job_type, payload, options, attempts_made=0)

    def _enqueue(self, job_type: QueueJobType, payload: JobPayload, options: AddJobOptions, attempts_made: int) -> str:
        now = self._clock()
        job = QueuedJob(
            id=uuid.uuid4().hex,
            type=job_type,
            payload=payload,
            options=options,
            added_at=now,
            scheduled_for=now + max(0.0, options.delay_s or 0.0),
            seq=next(self._seq),
            attempts_made=attempts_made,
        )
        with self._lock:
            if self._closed:
                raise RuntimeError("MemoryQueue is closed")
            self._jobs[job.id] = job
        logger.info(f"MemoryQueue added {job_type.value} job {job.id} (delay={options.delay_s}s)")
        self.start()
        return job.id

    def _run_ticker(self) -> None:
        while not self._stop.wait(self.poll_interval_s):
            try:
                self._dispatch_ready()
                if self._clock() - self._last_cleanup >= 60:
                    self.cleanup(self.retention_s)
            except Exception:
                logger.exception("MemoryQueue tick failed")

    def _next_eligible(self, now: float) -> Optional[QueuedJob]:
        best = None
        for job in self._jobs.values():
            if job.status != WAITING or job.scheduled_for > now:
                continue
            if job.type not in self._handlers:
                continue
            if best is None or job.sort_key() < best.sort_key():
                best = job
        return best

    def _dispatch_ready(self) -> None:
        while True:
            with self._lock:
                if self._paused or self._closed or self._active >= self.max_concurrency:
                    return
                job = self._next_eligible(self._clock())
                if job is None:
                    return
                job.status = ACTIVE
                self._active += 1
                handler = self._handlers[job.type]
                executor = self._executor
            logger.info(f"MemoryQueue processing {job.type.value} job {job.id}")
            executor.submit(self._execute, job, handler)

    def _execute(self, job: QueuedJob, handler) -> None:
        try:
            handler(job.payload)
        except Exception as e:
            self._on_failure(job, e)
        else:
            with self._lock:
                job.status = COMPLETED
                job.finished_at = self._clock()
            logger.info(f"MemoryQueue job {job.id} completed")
        finally:
            with self._lock:
                self._active -= 1

    def _on_failure(self, job: QueuedJob, exc: Exception) -> None:
        attempts_made = job.attempts_made + 1
        with self._lock:
            job.status = FAILED
            job.error = str(exc)
            job.finished_at = self._clock()
        logger.error(f"MemoryQueue job {job.id} ({job.type.value}) failed: {exc}")
        remaining = job.options.attempts - 1
        if remaining <= 0 or self._closed:
            return
        delay = backoff_delay(job.options.backoff, attempts_made)
        retry_options = AddJobOptions(
            delay_s=delay,
            priority=job.options.priority,
            attempts=remaining,
            backoff=job.options.backoff,
        )
        logger.info(f"MemoryQueue retrying job {job.id} in {delay:.2f}s ({remaining} attempts left)")
        try:
            self._enqueue(job.type, job.payload, retry_options, attempts_made=attempts_made)
        except RuntimeError:
            logger.warning(f"MemoryQueue closed before job {job.id} could be retried")

    def get_status(self) -> QueueStatus:
        counts = {WAITING: 0, ACTIVE: 0, COMPLETED: 0, FAILED: 0}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status] += 1
        return QueueStatus(
            backend=self.backend_name,
            waiting=counts[WAITING],
            active=counts[ACTIVE],
            completed=counts[COMPLETED],
            failed=counts[FAILED],
        )

    def pause(self) -> None:
        with self._lock:
            self._paused = True
        logger.info("MemoryQueue paused")

    def resume(self) -> None:
        with self._lock:
            self._paused = False
        logger.info("MemoryQueue resumed")

    def close(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            ticker, executor = self._ticker, self._executor
            self._ticker = None
        self._stop.set()
        if ticker is not None:
            ticker.join(timeout=max(1.0, self.poll_interval_s * 10))
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info("MemoryQueue closed")

    def remove(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job.status == ACTIVE:
                logger.warning(f"MemoryQueue cannot remove active job {job_id}")
                return False
            del self._jobs[job_id]
        return True

    def get_job(self, job_id: str) -> Optional[QueuedJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def get_jobs_by_type(self, job_type: QueueJobType) -> list[QueuedJob]:
        job_type = QueueJobType(job_type)
        with self._lock:
            return [job for job in self._jobs.values() if job.type == job_type]

    def cleanup(self, max_age_s: Optional[float] = None) -> int:
        """Drop completed and failed envelopes that finished more than max_age_s ago."""
        max_age_s = self.retention_s if max_age_s is None else max_age_s
        now = self._clock()
        cutoff = now - max_age_s
        with self._lock:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status in (COMPLETED, FAILED) and (job.finished_at or job.added_at) <= cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
            self._last_cleanup = now
        if stale:
            logger.info(f"MemoryQueue cleaned up {len(stale)} old jobs")
        return len(stale)
