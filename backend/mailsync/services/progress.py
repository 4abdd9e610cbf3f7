"""Sync progress: percentage, rate, ETA and a human phase label from a Job row."""
import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from ..models import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PAUSED,
    JOB_PENDING,
    JOB_RUNNING,
)

# (upper bound on percentage, label) for running jobs
RUNNING_PHASES = [
    (5, "Connecting to Gmail..."),
    (20, "Fetching email list..."),
    (40, "Scanning your inbox..."),
    (60, "Processing messages..."),
    (85, "Still crunching..."),
]
FINAL_RUNNING_PHASE = "Almost done..."

STATUS_PHASES = {
    JOB_PENDING: "Preparing to sync...",
    JOB_COMPLETED: "Sync complete",
    JOB_FAILED: "Sync interrupted",
    JOB_CANCELLED: "Sync was cancelled",
    JOB_PAUSED: "Sync paused",
}


@dataclass
class SyncProgress:
    status: str
    processed: int
    total: int
    percentage: int
    eta: Optional[str]
    rate: Optional[float]  # messages per second
    message: str
    phase: str

    def to_dict(self) -> dict:
        return asdict(self)


def format_duration(seconds: float) -> str:
    """3725 -> "1h 2m", 200 -> "3m 20s", 45 -> "45s"."""
    if seconds < 0:
        return "calculating..."
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def sync_phase(status: str, percentage: int) -> str:
    if status == JOB_RUNNING:
        for upper, label in RUNNING_PHASES:
            if percentage < upper:
                return label
        return FINAL_RUNNING_PHASE
    return STATUS_PHASES.get(status, "")


def status_message(status: str, processed: int, total: int, error: Optional[str] = None) -> str:
    if status == JOB_PENDING:
        return "Waiting to start..."
    if status == JOB_RUNNING:
        return f"Processing {processed:,} of {total:,} emails"
    if status == JOB_COMPLETED:
        return f"Successfully synced {total:,} emails"
    if status == JOB_FAILED:
        return error or "Sync failed"
    if status == JOB_CANCELLED:
        return "Sync was cancelled"
    if status == JOB_PAUSED:
        return f"Paused at {processed:,} of {total:,} emails"
    return "Unknown status"


def calculate_progress(job, now: Optional[datetime] = None) -> SyncProgress:
    """
    Pure function of the Job's counters and timestamps.

    Rate and ETA only exist while running with progress. After a resume the
    rate is measured from resumed_at over the messages processed since then,
    so time spent before the interruption does not skew it.
    """
    now = now or datetime.utcnow()
    processed = job.processed_messages or 0
    total = job.total_messages or 0
    percentage = min(100, _round_half_up(processed / (total or 1) * 100))

    eta = None
    rate = None
    if job.status == JOB_RUNNING and processed > 0:
        if job.resumed_at is not None and (job.processed_at_resume or 0) > 0:
            since, baseline = job.resumed_at, job.processed_at_resume
        elif job.started_at is not None:
            since, baseline = job.started_at, 0
        else:
            since, baseline = None, 0

        if since is not None:
            elapsed = (now - since).total_seconds()
            done_since = processed - baseline
            if elapsed > 0 and done_since > 0:
                rate = round(done_since / elapsed, 2)
                eta = format_duration(max(0, total - processed) * elapsed / done_since)

    return SyncProgress(
        status=job.status,
        processed=processed,
        total=total,
        percentage=percentage,
        eta=eta,
        rate=rate,
        message=status_message(job.status, processed, total, job.last_error),
        phase=sync_phase(job.status, percentage),
    )
