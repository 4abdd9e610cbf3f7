"""Pydantic schemas for API."""
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, List, Literal


class JobResponse(BaseModel):
    id: int
    mail_account_id: int
    type: str
    status: str
    total_messages: int = 0
    processed_messages: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AccountSyncResponse(BaseModel):
    id: int
    email: str
    sync_status: str
    total_messages: Optional[int] = None
    sync_started_at: Optional[datetime] = None
    sync_completed_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    history_id: Optional[str] = None

    class Config:
        from_attributes = True


class SyncProgressResponse(BaseModel):
    status: str
    processed: int
    total: int
    percentage: int
    eta: Optional[str] = None
    rate: Optional[float] = None
    message: str
    phase: str
    job_id: Optional[int] = None


class StartSyncRequest(BaseModel):
    # Skip the Gmail quick count when the caller already knows the total.
    total_messages: Optional[int] = Field(None, ge=0)


class DeltaSyncResponse(BaseModel):
    type: Literal["delta", "full"]
    added: int = 0
    deleted: int = 0
    labels_changed: int = 0
    history_id: Optional[str] = None
    job: Optional[JobResponse] = None


class BulkActionRequest(BaseModel):
    action: Literal["delete", "trash"]
    message_ids: Optional[List[str]] = None
    query: Optional[str] = None


class QueueStatusResponse(BaseModel):
    backend: str
    waiting: int
    active: int
    completed: int
    failed: int
