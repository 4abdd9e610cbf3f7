"""Unit tests for retry classification, backoff delay, and the retry loop."""
import errno
import socket

import pytest

from conftest import http_error
from mailsync.gmail_service import GmailAuthRequiredError
from mailsync.retry import compute_delay, http_status, is_retryable, retry_after, with_retry


@pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
def test_rate_limit_and_server_errors_are_retryable(status):
    assert is_retryable(http_error(status)) is True


@pytest.mark.parametrize("status", [400, 401, 403, 404, 409])
def test_client_errors_are_not_retryable(status):
    assert is_retryable(http_error(status)) is False


def test_network_faults_are_retryable():
    assert is_retryable(ConnectionResetError()) is True
    assert is_retryable(ConnectionRefusedError()) is True
    assert is_retryable(TimeoutError()) is True
    assert is_retryable(socket.gaierror()) is True
    assert is_retryable(OSError(errno.ETIMEDOUT, "timed out")) is True


def test_string_error_codes_are_retryable():
    class NetError(Exception):
        def __init__(self, code):
            super().__init__(code)
            self.code = code

    assert is_retryable(NetError("ECONNRESET")) is True
    assert is_retryable(NetError("EAI_AGAIN")) is True
    assert is_retryable(NetError("EPERM")) is False


def test_unknown_errors_are_not_retryable():
    assert is_retryable(ValueError("bad")) is False
    assert is_retryable(RuntimeError()) is False


def test_auth_required_error_reports_401():
    assert http_status(GmailAuthRequiredError("reconnect")) == 401
    assert is_retryable(GmailAuthRequiredError("reconnect")) is False


def test_status_attribute_is_used():
    class ApiError(Exception):
        status_code = 503

    assert http_status(ApiError()) == 503
    assert is_retryable(ApiError()) is True


def test_retry_after_header_is_read():
    assert retry_after(http_error(429, headers={"retry-after": "7"})) == 7.0
    assert retry_after(http_error(429)) is None


def test_compute_delay_bounds():
    # attempt 2, base 1 -> 4s with jitter in [3, 5]
    assert compute_delay(2, 1.0, 60.0, rand=lambda: 0.0) == pytest.approx(3.0)
    assert compute_delay(2, 1.0, 60.0, rand=lambda: 1.0) == pytest.approx(5.0)
    assert compute_delay(2, 1.0, 60.0, rand=lambda: 0.5) == pytest.approx(4.0)


def test_compute_delay_never_exceeds_max():
    for attempt in range(12):
        assert compute_delay(attempt, 1.0, 10.0, rand=lambda: 1.0) <= 10.0


def test_compute_delay_hint_wins_but_is_capped():
    assert compute_delay(0, 1.0, 60.0, hint=12.0) == 12.0
    assert compute_delay(0, 1.0, 60.0, hint=600.0) == 60.0


def test_with_retry_returns_after_transient_failures():
    calls = []
    sleeps = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise http_error(503)
        return "ok"

    assert with_retry(flaky, max_retries=5, base_delay=0.01, sleep=sleeps.append) == "ok"
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_with_retry_does_not_retry_non_retryable():
    calls = []

    def forbidden():
        calls.append(1)
        raise http_error(403, "Forbidden")

    with pytest.raises(Exception) as exc_info:
        with_retry(forbidden, max_retries=5, sleep=lambda s: None)
    assert http_status(exc_info.value) == 403
    assert len(calls) == 1


def test_with_retry_raises_last_error_after_budget():
    calls = []

    def always_down():
        calls.append(1)
        raise http_error(500)

    with pytest.raises(Exception) as exc_info:
        with_retry(always_down, max_retries=2, sleep=lambda s: None)
    assert http_status(exc_info.value) == 500
    assert len(calls) == 3


def test_with_retry_reports_each_retry():
    seen = []

    def flaky():
        if len(seen) < 2:
            raise http_error(429, headers={"retry-after": "2"})
        return 1

    with_retry(flaky, max_retries=3, on_retry=lambda e, attempt, delay: seen.append((attempt, delay)), sleep=lambda s: None)
    assert seen == [(1, 2.0), (2, 2.0)]
