"""
Response parsers.

The runtime does not own any provider's XML or JSON grammar. It decides which
parser a successful response is routed to, and offers a few generic parsers:

- `SaxParser`: feeds the body incrementally to an `xml.sax` content handler and
  returns the handler's `result`
- `JsonSelector`: selects a key from a JSON document, optionally validating it
  into a pydantic model
- `UriListParser`: reads the first URI of a `text/uri-list` body

Parsers can be referenced by name from descriptors; names resolve through a
`ParserRegistry`.
"""

from __future__ import annotations

import logging
import threading
import xml.sax
import xml.sax.handler
from collections.abc import Callable, Iterator
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .exceptions import DescriptorError, ParseError

logger = logging.getLogger(__name__)


@runtime_checkable
class ResponseParser(Protocol):
    def parse(self, response: httpx.Response) -> Any: ...


# =============================================================================
# Raw stream
# =============================================================================


class ResponseStream:
    """
    Single-pass view of a response body.

    Iterating yields the body in chunks as they arrive and closes the
    underlying response when exhausted. The stream cannot be restarted:
    iterating a second time raises `httpx.StreamConsumed`. Callers that stop
    early must call `close()` (or use the stream as a context manager) to
    release the connection.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._consumed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def content_type(self) -> str | None:
        return self._response.headers.get("Content-Type")

    @property
    def closed(self) -> bool:
        return self._response.is_closed

    def __iter__(self) -> Iterator[bytes]:
        return self.iter_bytes()

    def iter_bytes(self, chunk_size: int | None = None) -> Iterator[bytes]:
        if self._consumed:
            raise httpx.StreamConsumed()
        self._consumed = True
        return self._drain(chunk_size)

    def _drain(self, chunk_size: int | None) -> Iterator[bytes]:
        try:
            yield from self._response.iter_bytes(chunk_size)
        finally:
            self._response.close()

    def read(self) -> bytes:
        """Read whatever is left of the body."""
        return b"".join(self.iter_bytes())

    def close(self) -> None:
        self._consumed = True
        self._response.close()

    def __enter__(self) -> ResponseStream:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()


# =============================================================================
# XML
# =============================================================================


class ResultHandler(xml.sax.handler.ContentHandler):
    """
    Base content handler.

    Collects character data between tags in `text`; subclasses build their
    value in `startElement`/`endElement` and expose it as `result`.
    """

    def __init__(self) -> None:
        super().__init__()
        self._text: list[str] = []

    def characters(self, content: str) -> None:
        self._text.append(content)

    @property
    def text(self) -> str:
        return "".join(self._text).strip()

    def reset_text(self) -> None:
        self._text.clear()

    @property
    def result(self) -> Any:
        raise NotImplementedError


class SaxParser:
    """Incremental SAX parse; a fresh handler is created per response."""

    def __init__(self, handler_factory: Callable[[], xml.sax.handler.ContentHandler]) -> None:
        self.handler_factory = handler_factory

    def parse(self, response: httpx.Response) -> Any:
        handler = self.handler_factory()
        parser = xml.sax.make_parser()
        parser.setFeature(xml.sax.handler.feature_external_ges, False)
        parser.setFeature(xml.sax.handler.feature_external_pes, False)
        parser.setContentHandler(handler)
        try:
            for chunk in response.iter_bytes():
                parser.feed(chunk)  # type: ignore[attr-defined]
            parser.close()  # type: ignore[attr-defined]
        except xml.sax.SAXException as e:
            raise ParseError(f"malformed XML: {e}") from e
        try:
            return handler.result  # type: ignore[attr-defined]
        except (AttributeError, NotImplementedError) as e:
            raise ParseError(f"{type(handler).__name__} does not expose a result") from e

    def __repr__(self) -> str:
        name = getattr(self.handler_factory, "__name__", repr(self.handler_factory))
        return f"SaxParser({name})"


# =============================================================================
# JSON
# =============================================================================

_json_adapter: TypeAdapter[Any] = TypeAdapter(Any)


class JsonSelector:
    """
    Select `key` from a JSON object body (the whole document when `key` is None).

    `model` may be a pydantic model or any type pydantic can validate, such as
    `list[Item]`.
    """

    def __init__(self, key: str | None = None, model: Any = None) -> None:
        self.key = key
        self.model = model
        self._adapter: TypeAdapter[Any] | None = TypeAdapter(model) if model is not None else None

    def parse(self, response: httpx.Response) -> Any:
        content = response.read()
        if not content.strip():
            raise ParseError("empty JSON body")
        try:
            document = _json_adapter.validate_json(content)
        except PydanticValidationError as e:
            raise ParseError(f"malformed JSON: {e.errors()[0]['msg']}") from e

        selected = document
        if self.key is not None:
            if not isinstance(document, dict):
                raise ParseError(
                    f"expected a JSON object to select {self.key!r}, "
                    f"got {type(document).__name__}"
                )
            if self.key not in document:
                raise ParseError(f"JSON body has no key {self.key!r}")
            selected = document[self.key]

        if self._adapter is None:
            return selected
        try:
            return self._adapter.validate_python(selected)
        except PydanticValidationError as e:
            raise ParseError(f"JSON body does not match {self.model!r}: {e}") from e

    def __repr__(self) -> str:
        return f"JsonSelector(key={self.key!r}, model={self.model!r})"


# =============================================================================
# URIs
# =============================================================================


class UriListParser:
    """First URI of a `text/uri-list` body; None when the body lists none."""

    def parse(self, response: httpx.Response) -> httpx.URL | None:
        for line in response.read().decode(response.encoding or "utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                try:
                    return httpx.URL(line)
                except httpx.InvalidURL as e:
                    raise ParseError(f"invalid URI in body: {line!r}") from e
        return None


# =============================================================================
# Registry
# =============================================================================


class ParserRegistry:
    """Named parsers, shared by the descriptors of one client."""

    def __init__(self, parsers: dict[str, ResponseParser] | None = None) -> None:
        self._lock = threading.Lock()
        self._parsers: dict[str, ResponseParser] = dict(parsers or {})

    def register(self, name: str, parser: ResponseParser) -> None:
        if not isinstance(parser, ResponseParser):
            raise TypeError(f"{parser!r} does not implement parse(response)")
        with self._lock:
            if name in self._parsers:
                logger.debug("replacing parser registered as %r", name)
            self._parsers[name] = parser

    def resolve(self, parser: ResponseParser | str) -> ResponseParser:
        if not isinstance(parser, str):
            return parser
        with self._lock:
            found = self._parsers.get(parser)
        if found is None:
            raise DescriptorError(f"no parser registered as {parser!r}")
        return found

    def __contains__(self, name: object) -> bool:
        return name in self._parsers

    def names(self) -> list[str]:
        return sorted(self._parsers)
