"""
HTTP transport adapter.

`HttpTransport.send()` hands a filtered `Request` to an `httpx.Client` and
returns the streamed `httpx.Response`. Transport failures are mapped onto the
restbind hierarchy:

- `httpx.TimeoutException` -> `RequestTimeoutError`
- any other `httpx.HTTPError` -> `TransportError`

Sending goes through a small middleware pipeline (request logging and retry of
transport failures), composed with `compose()`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import httpx

from ..exceptions import RequestTimeoutError, TransportError
from ..policies import NO_RETRY, RetryPolicy
from .pipeline import BytesPayload, Middleware, Pipeline, Request, compose

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_WORKERS = 10
DEFAULT_USER_AGENT = "restbind"

SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "x-vcloud-authorization"})
REDACTED = "***"


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Client settings."""

    base_url: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    retry: RetryPolicy = NO_RETRY
    log_requests: bool = False
    transport: httpx.BaseTransport | None = None
    user_agent: str = DEFAULT_USER_AGENT
    sensitive_headers: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")


def redact_headers(
    headers: Iterable[tuple[str, str]] | Mapping[str, str],
    sensitive: Iterable[str] = (),
) -> list[tuple[str, str]]:
    """Header pairs safe to log: credential values are replaced by `***`."""
    hidden = SENSITIVE_HEADERS | {name.lower() for name in sensitive}
    items = headers.items() if isinstance(headers, Mapping) else headers
    return [(name, REDACTED if name.lower() in hidden else value) for name, value in items]


# =============================================================================
# Middlewares
# =============================================================================


class LoggingMiddleware:
    """Logs request lines and response statuses (INFO when enabled, else DEBUG)."""

    def __init__(self, *, enabled: bool, sensitive_headers: Iterable[str] = ()) -> None:
        self.level = logging.INFO if enabled else logging.DEBUG
        self.sensitive_headers = tuple(sensitive_headers)

    def __call__(self, req: Request, next: Pipeline) -> httpx.Response:
        if not logger.isEnabledFor(self.level):
            return next(req)
        logger.log(self.level, "%s", req.request_line)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "request headers: %s", redact_headers(req.header_items, self.sensitive_headers)
            )
        response = next(req)
        logger.log(self.level, "%s -> %d", req.request_line, response.status_code)
        return response


class RetryMiddleware:
    """Retries transport failures per policy; streamed payloads cannot be replayed."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    def __call__(self, req: Request, next: Pipeline) -> httpx.Response:
        if req.payload is not None and not isinstance(req.payload, BytesPayload):
            return next(req)
        return self.policy.run(lambda: next(req), description=req.request_line)


# =============================================================================
# Transport
# =============================================================================


class HttpTransport:
    """Sends `Request`s over a shared `httpx.Client`."""

    def __init__(self, config: ClientConfig, *, client: httpx.Client | None = None) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=config.timeout,
            transport=config.transport,
            headers={"User-Agent": config.user_agent},
            follow_redirects=False,
        )
        middlewares: list[Middleware] = [
            LoggingMiddleware(
                enabled=config.log_requests, sensitive_headers=config.sensitive_headers
            )
        ]
        if config.retry.max_attempts > 1:
            middlewares.append(RetryMiddleware(config.retry))
        self._pipeline = compose(middlewares, self._send_once)

    def send(self, request: Request) -> httpx.Response:
        return self._pipeline(request)

    def _send_once(self, request: Request) -> httpx.Response:
        timeout = request.timeout if request.timeout is not None else self._config.timeout
        outbound = self._client.build_request(
            request.method,
            request.url,
            headers=list(request.header_items),
            content=_content(request),
            timeout=timeout,
        )
        try:
            return self._client.send(outbound, stream=True)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(
                f"request timed out after {timeout:g}s: {e}",
                method=request.method,
                url=str(request.url),
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"transport failure: {e}", method=request.method, url=str(request.url)
            ) from e

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def _content(request: Request) -> bytes | Iterable[bytes] | None:
    if request.payload is None:
        return None
    if isinstance(request.payload, BytesPayload):
        return request.payload.content
    return request.payload.iter_bytes()
