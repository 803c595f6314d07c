"""Tests for the session token cache and its authorization-failure latch."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor

import pydantic
import pytest

from restbind.exceptions import (
    AuthError,
    AuthorizationError,
    RequestTimeoutError,
    TransportError,
)
from restbind.policies import RetryPolicy
from restbind.session import (
    DEFAULT_SESSION_INTERVAL,
    AuthFailureLatch,
    CacheState,
    SessionToken,
    SessionTokenCache,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingLogin:
    def __init__(self, *results: object) -> None:
        self.results = list(results)
        self.calls = 0

    def __call__(self) -> SessionToken:
        self.calls += 1
        result = self.results[min(self.calls, len(self.results)) - 1]
        if isinstance(result, BaseException):
            raise result
        return result  # type: ignore[return-value]


# =============================================================================
# Valid / expiry
# =============================================================================


def test_value_is_cached_until_the_interval_elapses() -> None:
    clock = FakeClock()
    login = CountingLogin(SessionToken(value="t1"), SessionToken(value="t2"))
    cache = SessionTokenCache(login, login_timeout=None, clock=clock)

    assert cache.state is CacheState.EMPTY
    assert cache.get().value == "t1"
    assert cache.state is CacheState.VALID

    clock.advance(DEFAULT_SESSION_INTERVAL - 1)
    assert cache.get().value == "t1"
    assert login.calls == 1

    clock.advance(2)
    assert cache.state is CacheState.EMPTY
    assert cache.get().value == "t2"
    assert login.calls == 2


def test_invalidate_forces_a_new_login() -> None:
    login = CountingLogin(SessionToken(value="t1"), SessionToken(value="t2"))
    cache = SessionTokenCache(login, login_timeout=None)
    assert cache.get().value == "t1"
    cache.invalidate()
    assert cache.get().value == "t2"


def test_loader_may_return_a_future() -> None:
    def login() -> Future[str]:
        future: Future[str] = Future()
        future.set_result("from-future")
        return future

    assert SessionTokenCache(login).get() == "from-future"


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError, match="interval"):
        SessionTokenCache(lambda: "x", interval=0)


def test_session_token_is_frozen() -> None:
    token = SessionToken(value="t", metadata={"org": "acme"})
    with pytest.raises(pydantic.ValidationError):
        token.value = "other"  # type: ignore[misc]
    assert token.acquired_at > 0


# =============================================================================
# Single-flight
# =============================================================================


def test_concurrent_access_triggers_one_login() -> None:
    entered = threading.Event()
    release = threading.Event()
    calls: list[int] = []

    def login() -> SessionToken:
        calls.append(1)
        entered.set()
        release.wait(5)
        return SessionToken(value="shared")

    cache = SessionTokenCache(login, login_timeout=None)
    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(cache.get) for _ in range(8)]
        assert entered.wait(5)
        time.sleep(0.05)
        release.set()
        tokens = [future.result(timeout=5) for future in futures]

    assert len(calls) == 1
    assert all(token is tokens[0] for token in tokens)


def test_concurrent_access_observes_the_same_error() -> None:
    entered = threading.Event()
    release = threading.Event()
    error = AuthorizationError("HTTP 401 Unauthorized", status_code=401)
    calls: list[int] = []

    def login() -> SessionToken:
        calls.append(1)
        entered.set()
        release.wait(5)
        raise error

    cache = SessionTokenCache(login, login_timeout=None)
    with ThreadPoolExecutor(max_workers=6) as pool:
        futures = [pool.submit(cache.get) for _ in range(6)]
        assert entered.wait(5)
        time.sleep(0.05)
        release.set()
        errors = [future.exception(timeout=5) for future in futures]

    assert len(calls) == 1
    assert all(e is error for e in errors)


# =============================================================================
# Failure latch
# =============================================================================


def test_auth_failure_latches_even_after_expiry() -> None:
    clock = FakeClock()
    error = AuthorizationError("HTTP 401 Unauthorized", status_code=401)
    login = CountingLogin(error, SessionToken(value="recovered"))
    cache = SessionTokenCache(login, login_timeout=None, clock=clock)

    with pytest.raises(AuthorizationError) as first:
        cache.get()
    assert first.value is error
    assert cache.state is CacheState.FAILED

    clock.advance(DEFAULT_SESSION_INTERVAL * 3)
    for _ in range(3):
        with pytest.raises(AuthorizationError) as again:
            cache.get()
        assert again.value is error
    assert login.calls == 1

    cache.reset()
    assert cache.state is CacheState.EMPTY
    assert cache.get().value == "recovered"
    assert login.calls == 2


def test_downstream_failure_report_latches() -> None:
    login = CountingLogin(SessionToken(value="t1"))
    cache = SessionTokenCache(login, login_timeout=None)
    cache.get()

    error = AuthorizationError("HTTP 403 Forbidden", status_code=403)
    cache.report_failure(error)
    with pytest.raises(AuthorizationError):
        cache.get()
    assert login.calls == 1


def test_invalidate_keeps_the_latch() -> None:
    cache = SessionTokenCache(CountingLogin(AuthError("revoked")), login_timeout=None)
    with pytest.raises(AuthError):
        cache.get()
    cache.invalidate()
    assert cache.state is CacheState.FAILED


def test_non_auth_failures_do_not_latch() -> None:
    login = CountingLogin(TransportError("connection reset"), SessionToken(value="t"))
    cache = SessionTokenCache(login, login_timeout=None)
    with pytest.raises(TransportError):
        cache.get()
    assert cache.state is CacheState.EMPTY
    assert cache.get().value == "t"


def test_latch_keeps_the_first_failure() -> None:
    latch = AuthFailureLatch()
    first, second = AuthError("first"), AuthError("second")
    latch.record(first)
    latch.record(second)
    assert latch.failure is first
    with pytest.raises(AuthError, match="first"):
        latch.check()
    latch.clear()
    latch.check()
    assert latch.failure is None


# =============================================================================
# Timeouts
# =============================================================================


def test_login_timeout_is_not_an_auth_failure() -> None:
    release = threading.Event()

    def login() -> SessionToken:
        release.wait(5)
        return SessionToken(value="late")

    cache = SessionTokenCache(login, login_timeout=0.05)
    try:
        with pytest.raises(RequestTimeoutError, match="timed out"):
            cache.get()
        assert cache.state is CacheState.EMPTY
        assert cache.latch.failure is None
    finally:
        release.set()


def test_login_timeout_is_retried_per_policy() -> None:
    release = threading.Event()
    calls: list[int] = []

    def login() -> SessionToken:
        calls.append(1)
        if len(calls) == 1:
            release.wait(5)
            return SessionToken(value="stale")
        return SessionToken(value="fresh")

    cache = SessionTokenCache(login, login_timeout=0.05, retry=RetryPolicy(max_attempts=3))
    try:
        assert cache.get().value == "fresh"
        assert cache.login_count == 2
    finally:
        release.set()


def test_hung_logins_do_not_block_later_attempts() -> None:
    release = threading.Event()
    calls: list[int] = []

    def login() -> SessionToken:
        calls.append(1)
        if len(calls) <= 2:
            release.wait(5)
            return SessionToken(value="stale")
        return SessionToken(value="fresh")

    cache = SessionTokenCache(login, login_timeout=0.05, retry=RetryPolicy(max_attempts=5))
    try:
        assert cache.get().value == "fresh"
        assert len(calls) == 3
        assert cache.login_count == 3
    finally:
        release.set()


def test_auth_failures_are_never_retried() -> None:
    login = CountingLogin(AuthError("revoked"), SessionToken(value="t"))
    cache = SessionTokenCache(login, login_timeout=None, retry=RetryPolicy(max_attempts=5))
    with pytest.raises(AuthError):
        cache.get()
    assert login.calls == 1


# =============================================================================
# Derived caches
# =============================================================================


def test_derived_cache_shares_the_latch() -> None:
    login = CountingLogin(SessionToken(value="t", metadata={"org": "https://cloud/org/1"}))
    cache = SessionTokenCache(login, login_timeout=None)
    org = cache.derive(lambda token: token.metadata["org"], name="org")

    assert org.get() == "https://cloud/org/1"
    assert org.latch is cache.latch

    cache.report_failure(AuthError("revoked"))
    with pytest.raises(AuthError, match="revoked"):
        org.get()
