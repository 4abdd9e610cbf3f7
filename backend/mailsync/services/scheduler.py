"""Periodic delta sync for every account that has completed a full sync."""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from ..database import SessionLocal
from ..job_state_db import has_running_sync, list_delta_sync_accounts

logger = logging.getLogger(__name__)


@dataclass
class SchedulerRunResult:
    success: int = 0
    skipped: int = 0
    errors: int = 0


class DeltaSyncScheduler:
    """
    Background thread: first pass after initial_delay_s, then every interval_s.
    One account's failure never stops the pass for the others.
    """

    def __init__(
        self,
        worker,
        session_factory: Callable = SessionLocal,
        interval_s: float = 30 * 60,
        initial_delay_s: float = 5.0,
    ):
        self.worker = worker
        self.session_factory = session_factory
        self.interval_s = interval_s
        self.initial_delay_s = initial_delay_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def _eligible_accounts(self) -> list:
        db = self.session_factory()
        try:
            accounts = []
            for account in list_delta_sync_accounts(db):
                if has_running_sync(db, account.id):
                    logger.info(f"Skipping delta sync for account {account.id}: sync job running")
                    accounts.append((account.id, False))
                else:
                    accounts.append((account.id, True))
            return accounts
        finally:
            db.close()

    def run_once(self) -> SchedulerRunResult:
        result = SchedulerRunResult()
        for account_id, eligible in self._eligible_accounts():
            if not eligible:
                result.skipped += 1
                continue
            try:
                delta = self.worker.process_delta_sync(account_id)
            except Exception:
                logger.exception(f"Scheduled delta sync failed for account {account_id}")
                result.errors += 1
                continue
            if delta is None:
                logger.info(f"Account {account_id} needs a full sync; skipped by scheduler")
                result.skipped += 1
            else:
                result.success += 1
        logger.info(
            f"Delta sync pass: {result.success} synced, {result.skipped} skipped, {result.errors} errors"
        )
        return result

    def _loop(self) -> None:
        if self._stop.wait(self.initial_delay_s):
            return
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Delta sync pass failed")
            if self._stop.wait(self.interval_s):
                return

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name="DeltaSyncScheduler")
            self._thread.start()
        logger.info(f"Delta sync scheduler started (every {self.interval_s:.0f}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
            self._stop.set()
        if thread is not None:
            thread.join(timeout)
            logger.info("Delta sync scheduler stopped")

    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()
