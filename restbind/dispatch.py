"""
Response/fallback dispatcher.

`ResponseDispatcher.dispatch()` turns the outcome of sending a request (an
`httpx.Response` or the exception the send raised) into the endpoint's result:

- 2xx responses go to the descriptor's response kind (`Void`, `RawStream`,
  `Parsed`, `URIFromHeader`)
- non-2xx responses are classified and offered to the descriptor's fallback
  policy; only unresolved statuses propagate
- transport failures always propagate
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .clients.pipeline import Request
from .descriptors import (
    MapStatusToException,
    Parsed,
    RawStream,
    RequestDescriptor,
    ReturnValue,
    URIFromHeader,
    Void,
)
from .exceptions import (
    BODY_EXCERPT_LIMIT,
    NOT_FOUND_STATUSES,
    ParseError,
    RestBindError,
    StatusError,
    classify_status,
)
from .parsers import ParserRegistry, ResponseStream, UriListParser

logger = logging.getLogger(__name__)

Outcome = httpx.Response | BaseException

_uri_list = UriListParser()


class ResponseDispatcher:
    def __init__(self, registry: ParserRegistry | None = None) -> None:
        self.registry = registry if registry is not None else ParserRegistry()

    def dispatch(self, descriptor: RequestDescriptor, request: Request, outcome: Outcome) -> Any:
        """Interpret `outcome` for `descriptor`; raise or return the call's result."""
        if isinstance(outcome, BaseException):
            return self._dispatch_failure(descriptor, request, outcome)
        if 200 <= outcome.status_code < 300:
            return self._dispatch_success(descriptor, request, outcome)
        return self._dispatch_status(descriptor, request, outcome)

    # -------------------------------------------------------------------------
    # Success
    # -------------------------------------------------------------------------

    def _dispatch_success(
        self, descriptor: RequestDescriptor, request: Request, response: httpx.Response
    ) -> Any:
        kind = descriptor.response
        if isinstance(kind, RawStream):
            return ResponseStream(response)
        try:
            match kind:
                case Void():
                    for _ in response.iter_bytes():
                        pass
                    return None
                case Parsed(parser=parser):
                    return self.registry.resolve(parser).parse(response)
                case URIFromHeader():
                    return self._extract_uri(kind, request, response)
            raise ParseError(f"unsupported response kind {type(kind).__name__}")
        except RestBindError as e:
            raise e.with_context(method=request.method, url=str(request.url))
        except Exception as e:
            raise ParseError(
                f"{descriptor.name}: could not parse response: {e}",
                method=request.method,
                url=str(request.url),
                status_code=response.status_code,
            ) from e
        finally:
            response.close()

    def _extract_uri(
        self, kind: URIFromHeader, request: Request, response: httpx.Response
    ) -> httpx.URL:
        def from_header() -> httpx.URL | None:
            value = response.headers.get(kind.header)
            return request.url.join(value) if value else None

        def from_body() -> httpx.URL | None:
            parser = kind.body_parser or _uri_list
            value = parser.parse(response)
            if value is None:
                return None
            return request.url.join(value) if not isinstance(value, httpx.URL) else value

        sources = (from_header, from_body) if kind.primary == "header" else (from_body, from_header)
        for source in sources:
            uri = source()
            if uri is not None:
                return uri
        raise ParseError(
            f"response has neither a {kind.header} header nor a URI in its body",
            status_code=response.status_code,
        )

    # -------------------------------------------------------------------------
    # Errors
    # -------------------------------------------------------------------------

    def _dispatch_status(
        self, descriptor: RequestDescriptor, request: Request, response: httpx.Response
    ) -> Any:
        body = _read_excerpt(response)
        error = classify_status(
            response.status_code,
            method=request.method,
            url=str(request.url),
            body=body,
            headers=response.headers,
        )
        return self._apply_fallback(descriptor, request, error)

    def _dispatch_failure(
        self, descriptor: RequestDescriptor, request: Request, error: BaseException
    ) -> Any:
        if isinstance(error, StatusError):
            error.with_context(method=request.method, url=str(request.url))
            return self._apply_fallback(descriptor, request, error)
        if isinstance(error, RestBindError):
            raise error.with_context(method=request.method, url=str(request.url))
        raise error

    def _apply_fallback(
        self, descriptor: RequestDescriptor, request: Request, error: StatusError
    ) -> Any:
        fallback = descriptor.fallback
        match fallback:
            case ReturnValue(default=default) if error.status_code in NOT_FOUND_STATUSES:
                logger.debug(
                    "%s: %s resolved to %s", descriptor.name, error.status_code, default.value
                )
                return default.value_for_call()
            case MapStatusToException(table=table) if error.status_code in table:
                raise _mapped_error(table[error.status_code], error) from error
        raise error


def _read_excerpt(response: httpx.Response, limit: int = BODY_EXCERPT_LIMIT) -> bytes | None:
    """Read just enough of an error body for its excerpt, then release the response."""
    received = bytearray()
    try:
        for chunk in response.iter_bytes():
            received += chunk
            if len(received) > limit:
                break
    except httpx.HTTPError:
        return None
    finally:
        response.close()
    return bytes(received[: limit + 1])


def _mapped_error(exc_type: type[Exception], error: StatusError) -> Exception:
    if issubclass(exc_type, RestBindError):
        return exc_type(
            error.message,
            method=error.method,
            url=error.url,
            status_code=error.status_code,
            body_excerpt=error.body_excerpt,
        )
    return exc_type(str(error))
