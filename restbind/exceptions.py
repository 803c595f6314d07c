"""
Exception hierarchy for restbind.

Every error raised by the runtime derives from `RestBindError` and carries the
originating verb and endpoint, plus the response status and a truncated body
excerpt when a response was received. Provider code can pattern-match on the
concrete classes:

    RestBindError
    ├── DescriptorError
    ├── BuildError
    │   └── ValidationError
    ├── FilterError
    │   └── AuthError
    ├── TransportError
    │   └── RequestTimeoutError
    ├── StatusError
    │   ├── RedirectionError
    │   ├── ClientError
    │   │   ├── AuthorizationError  (also an AuthError)
    │   │   ├── NotFoundError
    │   │   ├── ConflictError
    │   │   └── RateLimitError
    │   └── ServerError
    └── ParseError
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx

BODY_EXCERPT_LIMIT = 512

# Statuses treated as "the credentials are not valid". Anything else in the 4xx
# range is an ordinary client error and never latches a session cache.
AUTHORIZATION_STATUSES = frozenset({401, 403})

# Statuses a not-found fallback is allowed to resolve.
NOT_FOUND_STATUSES = frozenset({404, 410})


def excerpt(body: bytes | str | None, limit: int = BODY_EXCERPT_LIMIT) -> str | None:
    """Return a printable, truncated view of a response body."""
    if body is None:
        return None
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    if not text:
        return None
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class RestBindError(Exception):
    """Base class for all restbind errors."""

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        url: str | None = None,
        status_code: int | None = None,
        body_excerpt: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body_excerpt = body_excerpt

    def with_context(self, *, method: str, url: str) -> RestBindError:
        """Attach the originating verb+endpoint unless already present."""
        if self.method is None:
            self.method = method
        if self.url is None:
            self.url = url
        return self

    def __str__(self) -> str:
        parts = [self.message]
        if self.method and self.url:
            parts.append(f"[{self.method} {self.url}]")
        if self.status_code is not None:
            parts.append(f"(status {self.status_code})")
        return " ".join(parts)


class DescriptorError(RestBindError):
    """Malformed endpoint contract, detected when the descriptor is created."""


class BuildError(RestBindError):
    """Call-time arguments cannot be turned into a request."""


class ValidationError(BuildError):
    """An argument value was rejected (by a validator or as a path segment)."""


class FilterError(RestBindError):
    """A request filter failed; nothing was sent."""


class AuthError(FilterError):
    """Credentials could not be acquired or were rejected."""


class TransportError(RestBindError):
    """Network-level failure. Eligible for caller-driven retry."""


class RequestTimeoutError(TransportError):
    """A dispatched call or a login round-trip exceeded its timeout."""


class StatusError(RestBindError):
    """The server answered with a non-2xx status."""


class RedirectionError(StatusError):
    """3xx response."""


class ClientError(StatusError):
    """4xx response."""


class AuthorizationError(ClientError, AuthError):
    """401/403 response: the credentials in use are not valid."""


class NotFoundError(ClientError):
    """404/410 response."""


class ConflictError(ClientError):
    """409 response."""


class RateLimitError(ClientError):
    """429 response."""

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(StatusError):
    """5xx response."""


class ParseError(RestBindError):
    """The response body did not match the declared parser's expectations."""


def _retry_after(headers: Mapping[str, str] | None) -> float | None:
    if not headers:
        return None
    raw = headers.get("Retry-After") or headers.get("retry-after")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def classify_status(
    status_code: int,
    *,
    method: str | None = None,
    url: str | None = None,
    body: bytes | str | None = None,
    headers: Mapping[str, str] | None = None,
) -> StatusError:
    """
    Map a non-2xx status to the matching `StatusError` subclass.

    The returned error is not raised; callers decide whether a fallback
    resolves it first.
    """
    reason = httpx.codes.get_reason_phrase(status_code) or "Unknown status"
    message = f"HTTP {status_code} {reason}"
    kwargs: dict[str, Any] = {
        "method": method,
        "url": url,
        "status_code": status_code,
        "body_excerpt": excerpt(body),
    }
    if status_code in AUTHORIZATION_STATUSES:
        return AuthorizationError(message, **kwargs)
    if status_code in NOT_FOUND_STATUSES:
        return NotFoundError(message, **kwargs)
    if status_code == 409:
        return ConflictError(message, **kwargs)
    if status_code == 429:
        return RateLimitError(message, retry_after=_retry_after(headers), **kwargs)
    if 300 <= status_code < 400:
        return RedirectionError(message, **kwargs)
    if 400 <= status_code < 500:
        return ClientError(message, **kwargs)
    if status_code >= 500:
        return ServerError(message, **kwargs)
    return StatusError(message, **kwargs)
