"""Retry policy shared by every Gmail call: classification, backoff with jitter, retry loop."""
import errno
import logging
import random
import socket
import time
from typing import Callable, Optional, TypeVar

from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_RETRYABLE_STATUSES = (400, 401, 403)

RETRYABLE_NETWORK_CODES = {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED", "EAI_AGAIN"}
RETRYABLE_ERRNOS = {
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.ECONNREFUSED,
    errno.ECONNABORTED,
    errno.EPIPE,
}

JITTER_LOW = 0.75
JITTER_HIGH = 1.25


def http_status(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an error, if any."""
    if isinstance(exc, HttpError):
        try:
            return int(exc.resp.status)
        except (TypeError, ValueError, AttributeError):
            return None
    for attr in ("status", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    code = getattr(exc, "code", None)
    if isinstance(code, int) and 100 <= code <= 599:
        return code
    return None


def _is_network_fault(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionResetError, ConnectionRefusedError, ConnectionAbortedError, TimeoutError, socket.timeout)):
        return True
    if isinstance(exc, socket.gaierror):
        return True
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.upper() in RETRYABLE_NETWORK_CODES:
        return True
    if isinstance(exc, OSError) and exc.errno in RETRYABLE_ERRNOS:
        return True
    return False


def is_retryable(exc: BaseException) -> bool:
    """
    True for rate limits (429), server errors (5xx) and transient network faults.
    400/401/403 are never retried. Anything unrecognised is not retried.
    """
    status = http_status(exc)
    if status is not None:
        if status in NON_RETRYABLE_STATUSES:
            return False
        if status == 429 or status >= 500:
            return True
        return False
    return _is_network_fault(exc)


def retry_after(exc: BaseException) -> Optional[float]:
    """Seconds from a Retry-After response header, when the provider sent one."""
    resp = getattr(exc, "resp", None) or getattr(exc, "response", None)
    headers = getattr(resp, "headers", None)
    if headers is None and isinstance(resp, dict):
        headers = resp
    if not headers:
        return None
    value = None
    try:
        value = headers.get("retry-after") or headers.get("Retry-After")
    except AttributeError:
        return None
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def compute_delay(
    attempt: int,
    base: float,
    max_delay: float,
    hint: Optional[float] = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Seconds to wait before the next attempt.

    A provider hint wins (capped at max_delay). Otherwise base * 2**attempt,
    capped, with a uniform jitter factor in [0.75, 1.25]; the result never
    exceeds max_delay.
    """
    if hint is not None:
        return min(hint, max_delay)
    exponential = min(base * (2 ** attempt), max_delay)
    jitter = JITTER_LOW + (JITTER_HIGH - JITTER_LOW) * rand()
    return min(exponential * jitter, max_delay)


def with_retry(
    fn: Callable[[], T],
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run fn, retrying retryable failures up to max_retries extra times.

    on_retry(exc, attempt, delay) is called before each sleep (attempt is 1-based).
    The final failure, or any non-retryable one, propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            if attempt >= max_retries or not is_retryable(e):
                raise
            delay = compute_delay(attempt, base_delay, max_delay, hint=retry_after(e))
            attempt += 1
            if on_retry is not None:
                on_retry(e, attempt, delay)
            else:
                logger.warning(f"Retryable error (attempt {attempt}/{max_retries}), retrying in {delay:.1f}s: {e}")
            sleep(delay)
