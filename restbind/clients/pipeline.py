"""
Internal request pipeline primitives.

The runtime models requests independently of the underlying HTTP transport so
request filters and cross-cutting send behavior (logging, retries) can be
implemented as small composable pieces.

A `DraftRequest` is mutable and only lives while the builder assembles it;
`DraftRequest.freeze()` produces the immutable `Request` that filters and the
transport see.
"""

from __future__ import annotations

import dataclasses
import functools
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, TypeAlias

import httpx

if TYPE_CHECKING:
    from ..filters import RequestFilter

Header: TypeAlias = tuple[str, str]

CONTENT_TYPE = "Content-Type"
CONTENT_LENGTH = "Content-Length"


def raw_header_items(headers: httpx.Headers) -> list[Header]:
    """Header pairs with their original name casing (`multi_items()` lowercases names)."""
    return [
        (key.decode(headers.encoding), value.decode(headers.encoding)) for key, value in headers.raw
    ]


# =============================================================================
# Payloads
# =============================================================================


@dataclass(frozen=True, slots=True)
class BytesPayload:
    """Fully materialized payload."""

    content: bytes
    content_type: str

    @property
    def length(self) -> int:
        return len(self.content)

    def iter_bytes(self) -> Iterator[bytes]:
        yield self.content


@dataclass(frozen=True, slots=True)
class StreamPayload:
    """Single-pass payload; `length` is only known when the source declared it."""

    chunks: Iterable[bytes]
    content_type: str
    length: int | None = None

    def iter_bytes(self) -> Iterator[bytes]:
        yield from self.chunks


Payload: TypeAlias = BytesPayload | StreamPayload


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True, slots=True)
class Request:
    """Immutable outbound request."""

    method: str
    url: httpx.URL
    header_items: tuple[Header, ...] = ()
    payload: Payload | None = None
    filters: tuple[RequestFilter, ...] = ()
    endpoint_name: str = ""
    timeout: float | None = None

    @property
    def headers(self) -> httpx.Headers:
        """Case-insensitive multimap view (a copy; mutating it has no effect)."""
        return httpx.Headers(list(self.header_items))

    @property
    def request_line(self) -> str:
        return f"{self.method} {self.url}"

    @property
    def content(self) -> bytes | None:
        """Payload bytes when materialized in memory."""
        if isinstance(self.payload, BytesPayload):
            return self.payload.content
        return None

    def with_header(self, name: str, value: str) -> Request:
        """Return a copy where `name` has exactly one value."""
        lowered = name.lower()
        items = tuple(item for item in self.header_items if item[0].lower() != lowered)
        return dataclasses.replace(self, header_items=(*items, (name, value)))

    def with_query_param(self, name: str, value: str) -> Request:
        """Return a copy where query parameter `name` has exactly one value."""
        return dataclasses.replace(self, url=self.url.copy_set_param(name, value))

    def with_filter_applied(self, request_filter: RequestFilter) -> Request:
        return dataclasses.replace(self, filters=(*self.filters, request_filter))

    def to_draft(self) -> DraftRequest:
        return DraftRequest(
            method=self.method,
            url=self.url,
            headers=self.headers,
            payload=self.payload,
            filters=list(self.filters),
            endpoint_name=self.endpoint_name,
            timeout=self.timeout,
        )


@dataclass(slots=True)
class DraftRequest:
    """Mutable request under construction."""

    method: str
    url: httpx.URL
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    payload: Payload | None = None
    filters: list[RequestFilter] = field(default_factory=list)
    endpoint_name: str = ""
    timeout: float | None = None

    def set_header(self, name: str, value: str) -> None:
        self.headers[name] = value

    def add_header(self, name: str, value: str) -> None:
        """Append a value, keeping any existing values for `name`."""
        self.headers = httpx.Headers([*raw_header_items(self.headers), (name, value)])

    def remove_header(self, name: str) -> None:
        if name in self.headers:
            del self.headers[name]

    def add_query_params(self, pairs: Sequence[Header]) -> None:
        if pairs:
            existing = list(self.url.params.multi_items())
            self.url = self.url.copy_with(params=httpx.QueryParams([*existing, *pairs]))

    def set_payload(self, payload: Payload | None) -> None:
        """Attach a payload and keep the content headers consistent with it."""
        self.payload = payload
        self.remove_header(CONTENT_TYPE)
        self.remove_header(CONTENT_LENGTH)
        if payload is None:
            return
        self.headers[CONTENT_TYPE] = payload.content_type
        if payload.length is not None:
            self.headers[CONTENT_LENGTH] = str(payload.length)

    def freeze(self) -> Request:
        return Request(
            method=self.method,
            url=self.url,
            header_items=tuple(raw_header_items(self.headers)),
            payload=self.payload,
            filters=tuple(self.filters),
            endpoint_name=self.endpoint_name,
            timeout=self.timeout,
        )


# =============================================================================
# Send pipeline
# =============================================================================


Pipeline: TypeAlias = Callable[[Request], httpx.Response]


class Middleware(Protocol):
    def __call__(self, req: Request, next: Pipeline) -> httpx.Response: ...


def compose(middlewares: Sequence[Middleware], terminal: Pipeline) -> Pipeline:
    """Chain `middlewares` around `terminal`; the first one sees the request first."""
    return functools.reduce(
        lambda inner, middleware: functools.partial(middleware, next=inner),
        reversed(middlewares),
        terminal,
    )


def header_lines(request: Request | DraftRequest) -> str:
    """Render headers as sorted `Name: value` lines (handy in tests and logs)."""
    lines = sorted(f"{k}: {v}" for k, v in raw_header_items(request.headers))
    return "".join(f"{line}\n" for line in lines)
