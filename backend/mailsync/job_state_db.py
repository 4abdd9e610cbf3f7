"""Job and MailAccount rows in DB. Every setter commits."""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .models import (
    ACCOUNT_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_SYNC,
    Job,
    MailAccount,
)

_UNSET = object()


def get_job(db: Session, job_id: int) -> Optional[Job]:
    return db.get(Job, job_id)


def get_account(db: Session, account_id: int) -> Optional[MailAccount]:
    return db.get(MailAccount, account_id)


def create_job(
    db: Session,
    account: MailAccount,
    job_type: str,
    total_messages: int = 0,
) -> Job:
    job = Job(
        user_id=account.user_id,
        mail_account_id=account.id,
        type=job_type,
        status=JOB_PENDING,
        total_messages=total_messages or 0,
        processed_messages=0,
        retry_count=0,
        processed_at_resume=0,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def update_job_status(db: Session, job: Job, status: str, **fields) -> Job:
    """Set status plus any other Job columns passed as keyword arguments."""
    job.status = status
    for key, value in fields.items():
        setattr(job, key, value)
    job.updated_at = datetime.utcnow()
    db.commit()
    return job


def update_job_progress(
    db: Session,
    job: Job,
    processed_messages: int,
    next_page_token=_UNSET,
) -> Job:
    """Persist the resume checkpoint. The cursor is left untouched when not given."""
    job.processed_messages = processed_messages
    if next_page_token is not _UNSET:
        job.next_page_token = next_page_token
    job.updated_at = datetime.utcnow()
    db.commit()
    return job


def refresh_job_status(db: Session, job: Job) -> str:
    """Re-read the status column so external cancellation is visible."""
    db.refresh(job, attribute_names=["status"])
    return job.status


def update_account_sync_status(db: Session, account: MailAccount, status: str, **fields) -> MailAccount:
    account.sync_status = status
    for key, value in fields.items():
        setattr(account, key, value)
    account.updated_at = datetime.utcnow()
    db.commit()
    return account


def set_account_history_id(db: Session, account: MailAccount, history_id: Optional[str], **fields) -> MailAccount:
    account.history_id = history_id
    for key, value in fields.items():
        setattr(account, key, value)
    account.updated_at = datetime.utcnow()
    db.commit()
    return account


def has_running_sync(db: Session, account_id: int, exclude_job_id: Optional[int] = None) -> bool:
    q = db.query(Job.id).filter(
        Job.mail_account_id == account_id,
        Job.type == JOB_SYNC,
        Job.status == JOB_RUNNING,
    )
    if exclude_job_id is not None:
        q = q.filter(Job.id != exclude_job_id)
    return q.first() is not None


def get_active_sync_job(db: Session, account_id: int) -> Optional[Job]:
    """Most recent running or pending sync job for the account."""
    return (
        db.query(Job)
        .filter(
            Job.mail_account_id == account_id,
            Job.type == JOB_SYNC,
            Job.status.in_((JOB_RUNNING, JOB_PENDING)),
        )
        .order_by(Job.created_at.desc(), Job.id.desc())
        .first()
    )


def get_latest_job(db: Session, account_id: int, job_type: str = JOB_SYNC) -> Optional[Job]:
    return (
        db.query(Job)
        .filter(Job.mail_account_id == account_id, Job.type == job_type)
        .order_by(Job.created_at.desc(), Job.id.desc())
        .first()
    )


def list_interrupted_sync_jobs(db: Session, max_retries: int, skip_error_kinds=()) -> list[Job]:
    """
    Sync jobs left behind by a previous process: running, pending, or failed
    with retry budget left. Newest first.
    """
    q = db.query(Job).filter(Job.type == JOB_SYNC)
    failed_retryable = (Job.status == JOB_FAILED) & (Job.retry_count < max_retries)
    if skip_error_kinds:
        failed_retryable = failed_retryable & (
            Job.error_kind.is_(None) | ~Job.error_kind.in_(tuple(skip_error_kinds))
        )
    q = q.filter(Job.status.in_((JOB_RUNNING, JOB_PENDING)) | failed_retryable)
    return q.order_by(Job.created_at.desc(), Job.id.desc()).all()


def list_delta_sync_accounts(db: Session) -> list[MailAccount]:
    """Accounts that finished a full sync and hold a history id."""
    return (
        db.query(MailAccount)
        .filter(
            MailAccount.sync_status == ACCOUNT_COMPLETED,
            MailAccount.history_id.isnot(None),
        )
        .order_by(MailAccount.id)
        .all()
    )
