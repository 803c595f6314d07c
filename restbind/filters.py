"""
Request filters.

A filter takes a built `Request` and returns a modified copy, typically adding
credentials or a version marker. `FilterChain` applies the client-level filters
followed by the endpoint's filters, in declared order. The chain either
produces a fully filtered request or raises; a partially filtered request is
never sent.

Filters set headers rather than append them, so applying one twice yields the
same request as applying it once.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

from .clients.pipeline import Request
from .exceptions import FilterError, RestBindError
from .session import SessionToken, SessionTokenCache

logger = logging.getLogger(__name__)


@runtime_checkable
class RequestFilter(Protocol):
    def filter(self, request: Request) -> Request: ...


class FilterChain:
    """Ordered, all-or-nothing application of request filters."""

    def __init__(self, filters: Iterable[RequestFilter] = ()) -> None:
        self._filters: tuple[RequestFilter, ...] = tuple(filters)

    @property
    def filters(self) -> tuple[RequestFilter, ...]:
        return self._filters

    def __len__(self) -> int:
        return len(self._filters)

    def then(self, filters: Sequence[RequestFilter]) -> FilterChain:
        return FilterChain((*self._filters, *filters))

    def apply(self, request: Request) -> Request:
        current = request
        for request_filter in self._filters:
            try:
                current = request_filter.filter(current)
            except RestBindError as e:
                raise e.with_context(method=request.method, url=str(request.url))
            except Exception as e:
                raise FilterError(
                    f"{type(request_filter).__name__} failed: {e}",
                    method=request.method,
                    url=str(request.url),
                ) from e
            current = current.with_filter_applied(request_filter)
        if self._filters:
            logger.debug(
                "applied %d filter(s) to %s", len(self._filters), request.request_line
            )
        return current


# =============================================================================
# Static credentials
# =============================================================================


class BasicAuthentication:
    """`Authorization: Basic base64(identity:credential)`."""

    def __init__(self, identity: str, credential: str) -> None:
        token = base64.b64encode(f"{identity}:{credential}".encode()).decode("ascii")
        self._header = f"Basic {token}"

    def filter(self, request: Request) -> Request:
        return request.with_header("Authorization", self._header)

    def __repr__(self) -> str:
        return "BasicAuthentication(***)"


class StaticHeader:
    """Fixed header, e.g. an API key."""

    def __init__(self, name: str, value: str) -> None:
        self.name = name
        self._value = value

    def filter(self, request: Request) -> Request:
        return request.with_header(self.name, self._value)

    def __repr__(self) -> str:
        return f"StaticHeader({self.name!r})"


class ApiVersionFilter:
    """Per-provider API version, as a query parameter or (with `header=`) a header."""

    def __init__(
        self, version: str, *, param: str = "api-version", header: str | None = None
    ) -> None:
        self.version = version
        self.param = param
        self.header = header

    def filter(self, request: Request) -> Request:
        if self.header is not None:
            return request.with_header(self.header, self.version)
        return request.with_query_param(self.param, self.version)


# =============================================================================
# Session credentials
# =============================================================================


def _token_value(token: object) -> str:
    if isinstance(token, SessionToken):
        return token.value
    if isinstance(token, str):
        return token
    raise FilterError(f"session cache returned {type(token).__name__}, expected a token")


class SessionFilter:
    """
    Base for filters whose credential comes from a `SessionTokenCache`.

    The client reports authorization failures seen on downstream calls to
    `cache`, which latches them.
    """

    def __init__(self, cache: SessionTokenCache[SessionToken] | SessionTokenCache[str]) -> None:
        self.cache = cache

    def filter(self, request: Request) -> Request:
        return self.decorate(request, _token_value(self.cache.get()))

    def decorate(self, request: Request, token: str) -> Request:
        raise NotImplementedError


class BearerTokenFilter(SessionFilter):
    def decorate(self, request: Request, token: str) -> Request:
        return request.with_header("Authorization", f"Bearer {token}")


class SessionCookieFilter(SessionFilter):
    """`Cookie: <cookie_name>=<token>`."""

    def __init__(
        self,
        cache: SessionTokenCache[SessionToken] | SessionTokenCache[str],
        cookie_name: str,
    ) -> None:
        super().__init__(cache)
        self.cookie_name = cookie_name

    def decorate(self, request: Request, token: str) -> Request:
        return request.with_header("Cookie", f"{self.cookie_name}={token}")


class SessionHeaderFilter(SessionFilter):
    """Token in a provider-specific header such as `x-vcloud-authorization`."""

    def __init__(
        self,
        cache: SessionTokenCache[SessionToken] | SessionTokenCache[str],
        header_name: str,
    ) -> None:
        super().__init__(cache)
        self.header_name = header_name

    def decorate(self, request: Request, token: str) -> Request:
        return request.with_header(self.header_name, token)
