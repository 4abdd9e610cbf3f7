"""Kick off the first full sync once an account is connected."""
import logging

from ..job_state_db import get_account, update_account_sync_status
from ..models import ACCOUNT_ERROR
from .sync_worker import AccountNotFoundError

logger = logging.getLogger(__name__)


def _mark_account_error(worker, account_id: int, message: str) -> None:
    db = worker.session_factory()
    try:
        account = get_account(db, account_id)
        if account is not None:
            update_account_sync_status(db, account, ACCOUNT_ERROR, sync_error=message)
    finally:
        db.close()


def _start_full_sync(worker, account_id: int):
    client = worker.provider_factory(account_id)
    total = worker.call(client.get_quick_stats)
    logger.info(f"Account {account_id} has about {total} messages; queueing full sync")
    return worker.start_metadata_sync(account_id, total)


def trigger_post_oauth_sync(worker, account_id: int):
    """
    Called right after OAuth completes. Never raises: the OAuth callback must
    succeed even when the first sync cannot be queued.
    """
    try:
        return _start_full_sync(worker, account_id)
    except Exception as e:
        logger.exception(f"Auto sync after OAuth failed for account {account_id}")
        try:
            _mark_account_error(worker, account_id, str(e) or e.__class__.__name__)
        except Exception:
            logger.exception(f"Could not record auto sync error for account {account_id}")
        return None


def trigger_full_sync_only(worker, account_id: int):
    """Queue a full sync for an existing account. Errors propagate to the caller."""
    db = worker.session_factory()
    try:
        if get_account(db, account_id) is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
    finally:
        db.close()
    try:
        return _start_full_sync(worker, account_id)
    except Exception as e:
        logger.error(f"Full sync trigger failed for account {account_id}: {e}")
        _mark_account_error(worker, account_id, str(e) or e.__class__.__name__)
        raise
