"""Tests for retry policy and status classification."""

from __future__ import annotations

import logging

import pytest
from tenacity import Retrying

from restbind.exceptions import (
    AuthError,
    AuthorizationError,
    ClientError,
    NotFoundError,
    RequestTimeoutError,
    ServerError,
    TransportError,
    classify_status,
    excerpt,
)
from restbind.policies import NO_RETRY, RetryPolicy


class Flaky:
    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "done"


def test_no_retry_is_a_single_attempt() -> None:
    operation = Flaky(RequestTimeoutError("slow"))
    with pytest.raises(RequestTimeoutError):
        NO_RETRY.run(operation)
    assert operation.calls == 1


def test_retries_eligible_failures_with_linear_backoff() -> None:
    waits: list[float] = []
    operation = Flaky(RequestTimeoutError("slow"), RequestTimeoutError("slow"))
    policy = RetryPolicy(max_attempts=3, backoff=0.5)
    assert policy.run(operation, sleep=waits.append) == "done"
    assert operation.calls == 3
    assert waits == [0.5, 1.0]


def test_gives_up_after_max_attempts() -> None:
    operation = Flaky(*(RequestTimeoutError(str(i)) for i in range(5)))
    with pytest.raises(RequestTimeoutError, match="1"):
        RetryPolicy(max_attempts=2).run(operation)
    assert operation.calls == 2


@pytest.mark.parametrize(
    "error",
    [
        AuthError("revoked"),
        AuthorizationError("HTTP 401 Unauthorized", status_code=401),
        ServerError("HTTP 503 Service Unavailable", status_code=503),
    ],
)
def test_never_retries_auth_or_status_failures(error: Exception) -> None:
    policy = RetryPolicy(max_attempts=5, retry_on=(Exception,))
    operation = Flaky(error)
    with pytest.raises(type(error)):
        policy.run(operation)
    assert operation.calls == 1


def test_retry_on_selects_failures() -> None:
    policy = RetryPolicy(max_attempts=3, retry_on=(TransportError,))
    assert policy.should_retry(TransportError("reset"), 1)
    assert not policy.should_retry(ValueError("nope"), 1)
    assert not policy.should_retry(TransportError("reset"), 3)


def test_policy_validation() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError, match="backoff"):
        RetryPolicy(backoff=-1)


# =============================================================================
# Classification
# =============================================================================


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, AuthorizationError),
        (403, AuthorizationError),
        (404, NotFoundError),
        (410, NotFoundError),
        (400, ClientError),
        (502, ServerError),
    ],
)
def test_classify_status(status: int, expected: type[Exception]) -> None:
    error = classify_status(status, method="GET", url="https://api.example.com/x")
    assert type(error) is expected
    assert error.status_code == status


def test_authorization_errors_are_auth_errors() -> None:
    assert isinstance(classify_status(401), AuthError)
    assert not isinstance(classify_status(404), AuthError)


def test_excerpt() -> None:
    assert excerpt(None) is None
    assert excerpt(b"") is None
    assert excerpt(b"\xff ok") == "� ok"
    assert excerpt("abcdef", limit=3) == "abc..."


def test_retry_loop_logs_each_wait(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="restbind.policies")
    operation = Flaky(TransportError("reset"))
    policy = RetryPolicy(max_attempts=2, backoff=0.25)
    retrying = policy.retrying(sleep=lambda _: None)
    assert isinstance(retrying, Retrying)
    assert retrying(operation) == "done"
    assert retrying.statistics["attempt_number"] == 2
    assert any("Retrying" in record.getMessage() for record in caplog.records)
