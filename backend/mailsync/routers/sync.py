"""Sync API: start/resume/cancel full sync, delta sync, progress (JSON + SSE), bulk actions, queue status."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sse_starlette.sse import EventSourceResponse
import asyncio
import json

from ..auth import require_api_key, require_api_key_for_sse
from ..gmail_service import GmailAuthRequiredError
from ..job_state_db import get_account, get_latest_job
from ..models import JOB_SYNC, TERMINAL_JOB_STATUSES
from ..retry import http_status
from ..runtime import Runtime
from ..schemas import (
    AccountSyncResponse,
    BulkActionRequest,
    DeltaSyncResponse,
    JobResponse,
    QueueStatusResponse,
    StartSyncRequest,
    SyncProgressResponse,
)
from ..services.auto_trigger import trigger_full_sync_only
from ..services.progress import calculate_progress
from ..services.sync_worker import PERMISSION_DENIED_MESSAGE, AccountNotFoundError

router = APIRouter(prefix="/api", tags=["sync"])

RECONNECT_DETAIL = "Gmail authorization expired. Reconnect the account and try again."
SSE_POLL_INTERVAL_S = 0.5


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, AccountNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, GmailAuthRequiredError) or http_status(e) == 401:
        return HTTPException(status_code=401, detail=RECONNECT_DETAIL)
    if http_status(e) == 403:
        return HTTPException(status_code=403, detail=PERMISSION_DENIED_MESSAGE)
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=502, detail=f"Gmail request failed: {e}")


def _progress_for(session_factory, account_id: int) -> Optional[dict]:
    db = session_factory()
    try:
        if get_account(db, account_id) is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        job = get_latest_job(db, account_id, JOB_SYNC)
        if job is None:
            return None
        data = calculate_progress(job).to_dict()
        data["job_id"] = job.id
        return data
    finally:
        db.close()


@router.get("/accounts/{account_id}", response_model=AccountSyncResponse, dependencies=[Depends(require_api_key)])
def get_account_sync(account_id: int, request: Request):
    db = _runtime(request).sync_worker.session_factory()
    try:
        account = get_account(db, account_id)
        if account is None:
            raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
        return AccountSyncResponse.model_validate(account)
    finally:
        db.close()


@router.post("/accounts/{account_id}/sync", response_model=JobResponse, dependencies=[Depends(require_api_key)])
def start_sync(account_id: int, request: Request, body: Optional[StartSyncRequest] = None):
    """Start a full sync. Uses the Gmail quick count as the total unless the body supplies one."""
    worker = _runtime(request).sync_worker
    try:
        if body is not None and body.total_messages is not None:
            job = worker.start_metadata_sync(account_id, body.total_messages)
        else:
            job = trigger_full_sync_only(worker, account_id)
    except Exception as e:
        raise _http_error(e)
    return JobResponse.model_validate(job)


@router.post("/accounts/{account_id}/sync/resume", response_model=JobResponse, dependencies=[Depends(require_api_key)])
def resume_sync(account_id: int, request: Request):
    worker = _runtime(request).sync_worker
    try:
        job = worker.resume_metadata_sync(account_id)
    except Exception as e:
        raise _http_error(e)
    if job is None:
        raise HTTPException(status_code=409, detail="No failed or paused sync job to resume")
    return JobResponse.model_validate(job)


@router.post("/accounts/{account_id}/sync/cancel", dependencies=[Depends(require_api_key)])
def cancel_sync(account_id: int, request: Request):
    cancelled = _runtime(request).sync_worker.cancel_metadata_sync(account_id)
    return {"cancelled": cancelled}


@router.post("/accounts/{account_id}/sync/delta", response_model=DeltaSyncResponse, dependencies=[Depends(require_api_key)])
def delta_sync(account_id: int, request: Request):
    """Apply changes since the last sync; falls back to queueing a full sync."""
    worker = _runtime(request).sync_worker
    try:
        started = worker.start_delta_sync(account_id)
    except Exception as e:
        raise _http_error(e)
    if started.type == "delta":
        r = started.result
        return DeltaSyncResponse(
            type="delta",
            added=r.added,
            deleted=r.deleted,
            labels_changed=r.labels_changed,
            history_id=r.history_id,
        )
    return DeltaSyncResponse(type="full", job=JobResponse.model_validate(started.job))


@router.get("/accounts/{account_id}/sync/progress", response_model=SyncProgressResponse, dependencies=[Depends(require_api_key)])
def sync_progress(account_id: int, request: Request):
    try:
        data = _progress_for(_runtime(request).sync_worker.session_factory, account_id)
    except AccountNotFoundError as e:
        raise _http_error(e)
    if data is None:
        raise HTTPException(status_code=404, detail="No sync job for this account")
    return data


async def _sse_generator(request: Request, session_factory, account_id: int):
    """Yield progress events until the latest sync job reaches a terminal status."""
    while True:
        if await request.is_disconnected():
            break
        try:
            data = _progress_for(session_factory, account_id)
        except AccountNotFoundError as e:
            yield {"event": "error", "data": json.dumps({"error": str(e)})}
            break
        if data is None:
            yield {"data": json.dumps({"status": "idle", "job_id": None})}
            break
        yield {"data": json.dumps(data)}
        if data["status"] in TERMINAL_JOB_STATUSES:
            break
        await asyncio.sleep(SSE_POLL_INTERVAL_S)


@router.get("/accounts/{account_id}/sync/events", dependencies=[Depends(require_api_key_for_sse)])
async def sync_events(account_id: int, request: Request):
    """SSE stream of sync progress. Pass ?api_key= when using EventSource (browser cannot set headers)."""
    session_factory = _runtime(request).sync_worker.session_factory
    return EventSourceResponse(_sse_generator(request, session_factory, account_id))


@router.post("/accounts/{account_id}/actions", response_model=JobResponse, dependencies=[Depends(require_api_key)])
def bulk_action(account_id: int, body: BulkActionRequest, request: Request):
    """Queue a bulk delete or trash job for explicit message ids or a Gmail search query."""
    worker = _runtime(request).bulk_worker
    try:
        job = worker.start_bulk_action(account_id, body.action, message_ids=body.message_ids, query=body.query)
    except Exception as e:
        raise _http_error(e)
    return JobResponse.model_validate(job)


@router.get("/accounts/{account_id}/senders", dependencies=[Depends(require_api_key)])
def top_senders(account_id: int, request: Request, limit: int = Query(20, ge=1, le=500)):
    """Largest senders from the local store, as of the last sync."""
    worker = _runtime(request).sync_worker
    db = worker.session_factory()
    try:
        if get_account(db, account_id) is None:
            raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    finally:
        db.close()
    return worker.store_factory(account_id).top_senders(limit)


@router.get("/queue/status", response_model=QueueStatusResponse, dependencies=[Depends(require_api_key)])
def queue_status(request: Request):
    return _runtime(request).queue.get_status().to_dict()
