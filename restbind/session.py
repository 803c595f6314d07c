"""
Session token cache.

Most provider integrations authenticate with a short-lived credential obtained
by a login round-trip. `SessionTokenCache` memoizes that credential for a
validity interval, refreshes it on demand with single-flight semantics, and
remembers authorization failures in an `AuthFailureLatch` so revoked
credentials are not retried forever.

States:

- empty: nothing cached yet, or the cached value was invalidated
- valid: a value is cached and `clock() < expiry`
- failed: an authorization failure was latched; every access re-raises it
  without another login until `reset()` (or `AuthFailureLatch.clear()`)

Timeouts are not authorization failures: a login that times out raises
`RequestTimeoutError`, is retried according to the cache's `RetryPolicy`, and
leaves the latch untouched.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import AuthError, FilterError, RequestTimeoutError
from .policies import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

DEFAULT_SESSION_INTERVAL = 540.0
DEFAULT_LOGIN_TIMEOUT = 10.0


class SessionToken(BaseModel):
    """Credential returned by a login round-trip."""

    model_config = ConfigDict(frozen=True)

    value: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    acquired_at: float = Field(default_factory=time.time)


class CacheState(Enum):
    EMPTY = "empty"
    VALID = "valid"
    FAILED = "failed"


class AuthFailureLatch:
    """
    Remembers the first authorization failure seen by its owner.

    A latch can be shared by several caches built by the same owner (a session
    cache and the caches derived from it) so they fail together.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._failure: AuthError | None = None

    @property
    def failure(self) -> AuthError | None:
        return self._failure

    def record(self, error: AuthError) -> None:
        with self._lock:
            if self._failure is None:
                self._failure = error
                logger.warning("authorization failure latched: %s", error)

    def check(self) -> None:
        """Re-raise the latched failure, if any."""
        failure = self._failure
        if failure is not None:
            raise failure.with_traceback(None)

    def clear(self) -> None:
        with self._lock:
            if self._failure is not None:
                logger.debug("authorization failure latch cleared")
            self._failure = None


class SessionTokenCache(Generic[T]):
    """
    Memoizing, auto-refreshing, auth-aware cache around a login callable.

    Args:
        loader: Performs the login round-trip. May return the value or a
            `concurrent.futures.Future` resolving to it.
        interval: Seconds a loaded value stays valid.
        login_timeout: Bound on a single login round-trip (None: unbounded).
        retry: Policy applied to failed login attempts (timeouts by default).
        latch: Shared failure latch; a private one is created when omitted.
        clock: Monotonic clock, injectable for tests.
        name: Used in log messages and errors.
    """

    def __init__(
        self,
        loader: Callable[[], T | Future[T]],
        *,
        interval: float = DEFAULT_SESSION_INTERVAL,
        login_timeout: float | None = DEFAULT_LOGIN_TIMEOUT,
        retry: RetryPolicy = NO_RETRY,
        latch: AuthFailureLatch | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "session",
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._loader = loader
        self._interval = interval
        self._login_timeout = login_timeout
        self._retry = retry
        self._latch = latch if latch is not None else AuthFailureLatch()
        self._clock = clock
        self._name = name

        self._lock = threading.Lock()
        self._value: T | None = None
        self._has_value = False
        self._expires_at = 0.0
        self._inflight: Future[T] | None = None
        self._login_count = 0

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def latch(self) -> AuthFailureLatch:
        return self._latch

    @property
    def login_count(self) -> int:
        """Login round-trips started so far (each retry attempt counts)."""
        return self._login_count

    @property
    def state(self) -> CacheState:
        if self._latch.failure is not None:
            return CacheState.FAILED
        with self._lock:
            if self._has_value and self._clock() < self._expires_at:
                return CacheState.VALID
        return CacheState.EMPTY

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    def get(self) -> T:
        """Return the cached value, logging in first when needed."""
        self._latch.check()
        with self._lock:
            if self._has_value and self._clock() < self._expires_at:
                return self._value  # type: ignore[return-value]
            inflight = self._inflight
            leader = inflight is None
            if inflight is None:
                inflight = Future()
                self._inflight = inflight
        if leader:
            self._refresh(inflight)
        return inflight.result()

    def invalidate(self) -> None:
        """Drop the cached value; the next access logs in again."""
        with self._lock:
            self._value = None
            self._has_value = False
            self._expires_at = 0.0

    def report_failure(self, error: AuthError) -> None:
        """Record an authorization failure observed by a downstream call."""
        self._latch.record(error)
        self.invalidate()

    def reset(self) -> None:
        """Forget both the cached value and any latched failure."""
        self.invalidate()
        self._latch.clear()

    def derive(self, fn: Callable[[T], U], *, name: str | None = None) -> SessionTokenCache[U]:
        """
        Build a cache of a value computed from this cache's value.

        The derived cache shares this cache's latch, interval and clock, so an
        authorization failure in either one fails both.
        """
        return SessionTokenCache(
            lambda: fn(self.get()),
            interval=self._interval,
            login_timeout=None,
            retry=self._retry,
            latch=self._latch,
            clock=self._clock,
            name=name or f"{self._name}:derived",
        )

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    def _refresh(self, inflight: Future[T]) -> None:
        try:
            value = self._retry.run(self._login_once, description=f"{self._name} login")
        except AuthError as e:
            self._latch.record(e)
            self._settle(inflight, error=e)
        except Exception as e:
            logger.debug("%s login failed: %s", self._name, e)
            self._settle(inflight, error=e)
        else:
            with self._lock:
                self._value = value
                self._has_value = True
                self._expires_at = self._clock() + self._interval
            logger.debug("%s login succeeded; valid for %.0fs", self._name, self._interval)
            self._settle(inflight, value=value)
        finally:
            if not inflight.done():
                self._settle(inflight, error=FilterError(f"{self._name} login was interrupted"))

    def _settle(
        self, inflight: Future[T], *, value: T | None = None, error: BaseException | None = None
    ) -> None:
        with self._lock:
            if self._inflight is inflight:
                self._inflight = None
        if error is not None:
            inflight.set_exception(error)
        else:
            inflight.set_result(value)  # type: ignore[arg-type]

    def _login_once(self) -> T:
        if self._login_timeout is None:
            self._count_login()
            return self._await(self._loader(), None)

        # One thread per attempt; a timed-out loader keeps running in the background.
        attempt: Future[T | Future[T]] = Future()
        thread = threading.Thread(
            target=self._run_loader,
            args=(attempt,),
            name=f"restbind-{self._name}-login",
            daemon=True,
        )
        thread.start()
        try:
            result = attempt.result(timeout=self._login_timeout)
        except FutureTimeoutError as e:
            attempt.cancel()
            raise RequestTimeoutError(
                f"{self._name} login timed out after {self._login_timeout:g}s"
            ) from e
        return self._await(result, self._login_timeout)

    def _run_loader(self, attempt: Future[T | Future[T]]) -> None:
        if not attempt.set_running_or_notify_cancel():
            return
        self._count_login()
        try:
            attempt.set_result(self._loader())
        except BaseException as e:
            attempt.set_exception(e)

    def _count_login(self) -> None:
        with self._lock:
            self._login_count += 1
        logger.debug("%s: starting login round-trip", self._name)

    def _await(self, result: T | Future[T], timeout: float | None) -> T:
        if not isinstance(result, Future):
            return result
        try:
            return result.result(timeout=timeout)
        except FutureTimeoutError as e:
            result.cancel()
            raise RequestTimeoutError(f"{self._name} login timed out after {timeout:g}s") from e

