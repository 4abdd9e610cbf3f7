"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Account sync_status values
ACCOUNT_IDLE = "idle"
ACCOUNT_SYNCING = "syncing"
ACCOUNT_COMPLETED = "completed"
ACCOUNT_ERROR = "error"
ACCOUNT_AUTH_EXPIRED = "auth_expired"

# Job types
JOB_SYNC = "sync"
JOB_DELETE = "delete"
JOB_TRASH = "trash"

# Job statuses
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"
JOB_PAUSED = "paused"

TERMINAL_JOB_STATUSES = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)

# Job error_kind values
ERROR_AUTH = "auth"
ERROR_PERMISSION = "permission"
ERROR_BAD_REQUEST = "bad_request"
ERROR_TRANSIENT = "transient"
ERROR_UNKNOWN = "unknown"


class MailAccount(Base):
    __tablename__ = "mail_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    provider = Column(String, default="gmail", nullable=False)
    email = Column(String, nullable=False, index=True)
    sync_status = Column(String, default=ACCOUNT_IDLE, nullable=False)  # idle, syncing, completed, error, auth_expired
    total_messages = Column(Integer, nullable=True)  # estimate from the provider's quick count
    sync_started_at = Column(DateTime, nullable=True)
    sync_completed_at = Column(DateTime, nullable=True)
    sync_error = Column(Text, nullable=True)
    history_id = Column(String, nullable=True)  # Gmail historyId for delta sync
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Job(Base):
    """Durable unit of background work. Resumable progress lives here, not in the queue."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    mail_account_id = Column(Integer, ForeignKey("mail_accounts.id", ondelete="CASCADE"), nullable=False)
    type = Column(String, nullable=False)  # sync, delete, trash
    status = Column(String, default=JOB_PENDING, nullable=False)
    total_messages = Column(Integer, default=0)
    processed_messages = Column(Integer, default=0)
    next_page_token = Column(String, nullable=True)  # resumption cursor
    last_error = Column(Text, nullable=True)
    error_kind = Column(String, nullable=True)  # auth, permission, bad_request, transient, unknown
    retry_count = Column(Integer, default=0)
    resumed_at = Column(DateTime, nullable=True)
    processed_at_resume = Column(Integer, default=0)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_jobs_account_type_status", "mail_account_id", "type", "status"),
    )
