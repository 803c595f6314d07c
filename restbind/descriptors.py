"""
Request descriptors.

A `RequestDescriptor` is the immutable description of one endpoint: verb, path
template, how each call argument is bound into the request, how the payload is
encoded, what a successful response looks like and which fallback applies to
error responses. Descriptors are validated once, when created, and are safe to
share between threads.

Example:
    ```python
    from restbind.descriptors import (
        VOID_ON_NOT_FOUND,
        PathParam,
        RequestDescriptor,
    )

    DELETE_KEYPAIR = RequestDescriptor(
        name="keypair:delete",
        method="DELETE",
        path="/keypair/{name}",
        params=(PathParam("name", 0),),
        fallback=VOID_ON_NOT_FOUND,
    )
    ```
"""

from __future__ import annotations

import dataclasses
import re
import string
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, TypeAlias

from .exceptions import DescriptorError

if TYPE_CHECKING:
    from .filters import RequestFilter
    from .parsers import ResponseParser

Validator: TypeAlias = Callable[[Any], None]
Pairs: TypeAlias = tuple[tuple[str, str], ...]

HTTP_METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})
BODYLESS_METHODS = frozenset({"GET", "HEAD"})

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.-]*)\}")


class _Skip:
    """Sentinel for path arguments whose segment should be dropped."""

    _instance: _Skip | None = None

    def __new__(cls) -> _Skip:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SKIP"


SKIP = _Skip()


# =============================================================================
# Parameter bindings
# =============================================================================


@dataclass(frozen=True, slots=True)
class PathParam:
    """Substitute argument `pos` into placeholder `{name}`."""

    name: str
    pos: int
    validator: Validator | None = None


@dataclass(frozen=True, slots=True)
class QueryParam:
    """
    Render argument `pos` as query pair(s).

    With `ordinal=True` a collection renders as `name.1`, `name.2`, ...
    """

    name: str
    pos: int
    ordinal: bool = False
    optional: bool = False
    validator: Validator | None = None


@dataclass(frozen=True, slots=True)
class HeaderParam:
    name: str
    pos: int
    optional: bool = False
    validator: Validator | None = None


@dataclass(frozen=True, slots=True)
class FormParam:
    """A field of an x-www-form-urlencoded payload."""

    name: str
    pos: int
    ordinal: bool = False
    optional: bool = False
    validator: Validator | None = None


@dataclass(frozen=True, slots=True)
class PayloadParam:
    """A named field of a JSON, templated or multipart payload."""

    name: str
    pos: int
    optional: bool = False
    validator: Validator | None = None


@dataclass(frozen=True, slots=True)
class BodyParam:
    """The whole argument is the payload (or, for multipart, the file part)."""

    pos: int
    validator: Validator | None = None


@dataclass(frozen=True, slots=True)
class EndpointParam:
    """The argument is the absolute URI the path template is resolved against."""

    pos: int


@dataclass(frozen=True, slots=True)
class OptionsParam:
    """Trailing variadic `RequestOptions` objects, starting at position `pos`."""

    pos: int


Binding: TypeAlias = (
    PathParam
    | QueryParam
    | HeaderParam
    | FormParam
    | PayloadParam
    | BodyParam
    | EndpointParam
    | OptionsParam
)


# =============================================================================
# Payload strategies
# =============================================================================


@dataclass(frozen=True, slots=True)
class RawPayload:
    """Pass a single `BodyParam` argument through in its serialized form."""

    content_type: str = "application/unknown"


@dataclass(frozen=True, slots=True)
class FormPayload:
    """Assemble `FormParam` bindings as application/x-www-form-urlencoded."""


@dataclass(frozen=True, slots=True)
class MultipartPayload:
    """A file (`BodyParam`) plus metadata fields (`PayloadParam`) as multipart/form-data."""

    file_field: str = "file"


@dataclass(frozen=True, slots=True)
class TemplatePayload:
    """Interpolate `${field}` placeholders of `template` with `PayloadParam` values."""

    template: str
    content_type: str = "application/xml"
    escape: Literal["xml"] | None = "xml"

    @property
    def fields(self) -> tuple[str, ...]:
        names: list[str] = []
        for match in string.Template.pattern.finditer(self.template):
            name = match.group("named") or match.group("braced")
            if name and name not in names:
                names.append(name)
        return tuple(names)


@dataclass(frozen=True, slots=True)
class JsonPayload:
    """Collect `PayloadParam` bindings into a JSON object."""

    content_type: str = "application/json"


PayloadStrategy: TypeAlias = (
    RawPayload | FormPayload | MultipartPayload | TemplatePayload | JsonPayload
)


# =============================================================================
# Response kinds
# =============================================================================


@dataclass(frozen=True, slots=True)
class Void:
    """Discard the body; the call returns None."""


@dataclass(frozen=True, slots=True)
class RawStream:
    """Expose the body as a single-pass `ResponseStream`."""


@dataclass(frozen=True, slots=True)
class Parsed:
    """Route the body to `parser` (or to the parser registered under that name)."""

    parser: ResponseParser | str


@dataclass(frozen=True, slots=True)
class URIFromHeader:
    """
    Return a URI taken from a response header or from the body.

    `primary` decides which source is tried first; the other one is the
    fallback. `body_parser` extracts the URI from the body (defaults to a
    text/uri-list reader).
    """

    header: str = "Location"
    primary: Literal["header", "body"] = "header"
    body_parser: ResponseParser | None = None


ResponseKind: TypeAlias = Void | RawStream | Parsed | URIFromHeader


# =============================================================================
# Fallback policies
# =============================================================================


class DefaultValue(Enum):
    """Value a not-found fallback resolves to."""

    NULL = "null"
    VOID = "void"
    EMPTY_LIST = "empty_list"
    EMPTY_MAP = "empty_map"
    FALSE = "false"

    def value_for_call(self) -> Any:
        # Fresh containers per call so callers can mutate what they receive.
        if self is DefaultValue.EMPTY_LIST:
            return []
        if self is DefaultValue.EMPTY_MAP:
            return {}
        if self is DefaultValue.FALSE:
            return False
        return None


@dataclass(frozen=True, slots=True)
class Propagate:
    """Surface every error response as a classified `StatusError`."""


@dataclass(frozen=True, slots=True)
class ReturnValue:
    """Resolve not-found responses (404/410) to a default value."""

    default: DefaultValue


@dataclass(frozen=True)
class MapStatusToException:
    """Raise `table[status]` for listed statuses; others use the default classification."""

    table: Mapping[int, type[Exception]]

    def __post_init__(self) -> None:
        object.__setattr__(self, "table", dict(self.table))


FallbackPolicy: TypeAlias = Propagate | ReturnValue | MapStatusToException

PROPAGATE = Propagate()
NULL_ON_NOT_FOUND = ReturnValue(DefaultValue.NULL)
VOID_ON_NOT_FOUND = ReturnValue(DefaultValue.VOID)
EMPTY_LIST_ON_NOT_FOUND = ReturnValue(DefaultValue.EMPTY_LIST)
EMPTY_MAP_ON_NOT_FOUND = ReturnValue(DefaultValue.EMPTY_MAP)
FALSE_ON_NOT_FOUND = ReturnValue(DefaultValue.FALSE)


# =============================================================================
# Descriptor
# =============================================================================


def _pairs(value: Mapping[str, Any] | Iterable[tuple[str, Any]] | None) -> Pairs:
    if value is None:
        return ()
    items = value.items() if isinstance(value, Mapping) else value
    return tuple((str(k), str(v)) for k, v in items)


@dataclass(frozen=True)
class RequestDescriptor:
    """Immutable request/response contract of one endpoint."""

    name: str
    method: str
    path: str = ""
    params: Sequence[Binding] = ()
    headers: Mapping[str, Any] | Iterable[tuple[str, Any]] = ()
    query: Mapping[str, Any] | Iterable[tuple[str, Any]] = ()
    form: Mapping[str, Any] | Iterable[tuple[str, Any]] = ()
    payload: PayloadStrategy | None = None
    accept: str | None = None
    response: ResponseKind = field(default_factory=Void)
    fallback: FallbackPolicy = field(default_factory=Propagate)
    filters: Sequence[RequestFilter] = ()
    timeout: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "params", tuple(self.params))
        object.__setattr__(self, "headers", _pairs(self.headers))
        object.__setattr__(self, "query", _pairs(self.query))
        object.__setattr__(self, "form", _pairs(self.form))
        object.__setattr__(self, "filters", tuple(self.filters))
        self._validate()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def placeholders(self) -> tuple[str, ...]:
        return tuple(_PLACEHOLDER.findall(self.path))

    @property
    def options_param(self) -> OptionsParam | None:
        for binding in self.params:
            if isinstance(binding, OptionsParam):
                return binding
        return None

    @property
    def arity(self) -> int:
        """Number of positional arguments before the variadic options."""
        positions = [b.pos for b in self.params if not isinstance(b, OptionsParam)]
        return max(positions) + 1 if positions else 0

    def bindings_of(self, kind: type[Binding]) -> tuple[Binding, ...]:
        return tuple(b for b in self.params if isinstance(b, kind))

    def with_filters(self, *filters: RequestFilter) -> RequestDescriptor:
        """Copy with `filters` appended to the declared filter order."""
        return dataclasses.replace(self, filters=(*self.filters, *filters))

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _fail(self, message: str) -> DescriptorError:
        return DescriptorError(f"{self.name}: {message}")

    def _validate(self) -> None:
        if self.method not in HTTP_METHODS:
            raise self._fail(f"unsupported HTTP method {self.method!r}")
        self._validate_path()
        self._validate_positions()
        self._validate_payload()
        self._validate_response()
        self._validate_fallback()

    def _validate_path(self) -> None:
        leftover = _PLACEHOLDER.sub("", self.path)
        if "{" in leftover or "}" in leftover:
            raise self._fail(f"malformed placeholder in path template {self.path!r}")

        placeholders = set(self.placeholders)
        path_params = [b for b in self.params if isinstance(b, PathParam)]
        counts = Counter(b.name for b in path_params)
        duplicated = sorted(name for name, n in counts.items() if n > 1)
        if duplicated:
            raise self._fail(f"placeholder(s) bound more than once: {', '.join(duplicated)}")
        unbound = sorted(placeholders - counts.keys())
        if unbound:
            raise self._fail(f"placeholder(s) without a bound parameter: {', '.join(unbound)}")
        unknown = sorted(counts.keys() - placeholders)
        if unknown:
            raise self._fail(f"path parameter(s) not in template: {', '.join(unknown)}")

    def _validate_positions(self) -> None:
        options = [b for b in self.params if isinstance(b, OptionsParam)]
        if len(options) > 1:
            raise self._fail("at most one OptionsParam is allowed")
        positions = [b.pos for b in self.params if not isinstance(b, OptionsParam)]
        if any(pos < 0 for pos in positions):
            raise self._fail("argument positions must be >= 0")
        counts = Counter(positions)
        shared = sorted(pos for pos, n in counts.items() if n > 1)
        if shared:
            raise self._fail(f"argument position(s) bound more than once: {shared}")
        missing = sorted(set(range(self.arity)) - counts.keys())
        if missing:
            raise self._fail(f"argument position(s) not bound: {missing}")
        if options and options[0].pos != self.arity:
            raise self._fail("OptionsParam must follow every other parameter")
        if len(self.bindings_of(EndpointParam)) > 1:
            raise self._fail("at most one EndpointParam is allowed")

    def _validate_payload(self) -> None:
        bodies = self.bindings_of(BodyParam)
        forms = self.bindings_of(FormParam)
        fields = self.bindings_of(PayloadParam)
        strategy = self.payload

        if len(bodies) > 1:
            raise self._fail("more than one BodyParam claims the payload")
        names = Counter(b.name for b in (*forms, *fields))
        clashing = sorted(name for name, n in names.items() if n > 1)
        if clashing:
            raise self._fail(f"payload field(s) claimed more than once: {', '.join(clashing)}")

        if strategy is None:
            if bodies or forms or fields or self.form:
                raise self._fail("payload parameters declared without a payload strategy")
            return
        if self.method in BODYLESS_METHODS:
            raise self._fail(f"{self.method} requests cannot carry a payload")

        match strategy:
            case RawPayload():
                if not bodies:
                    raise self._fail("RawPayload needs a BodyParam")
                if forms or fields or self.form:
                    raise self._fail("RawPayload cannot be combined with payload fields")
            case FormPayload():
                if bodies or fields:
                    raise self._fail("FormPayload only accepts FormParam bindings")
            case MultipartPayload():
                if not bodies:
                    raise self._fail("MultipartPayload needs a BodyParam for the file part")
                if forms or self.form:
                    raise self._fail("MultipartPayload metadata must use PayloadParam")
            case TemplatePayload():
                if bodies or forms or self.form:
                    raise self._fail("TemplatePayload only accepts PayloadParam bindings")
                unused = sorted({b.name for b in fields} - set(strategy.fields))
                if unused:
                    raise self._fail(f"payload field(s) missing from template: {', '.join(unused)}")
            case JsonPayload():
                if bodies or forms or self.form:
                    raise self._fail("JsonPayload only accepts PayloadParam bindings")

    def _validate_response(self) -> None:
        response = self.response
        if self.method == "HEAD":
            if isinstance(response, (Parsed, RawStream)):
                raise self._fail("HEAD responses have no body to parse or stream")
            if isinstance(response, URIFromHeader) and response.primary == "body":
                raise self._fail("HEAD responses have no body to extract a URI from")
        if isinstance(response, Parsed) and not response.parser:
            raise self._fail("Parsed response kind needs a parser")

    def _validate_fallback(self) -> None:
        fallback = self.fallback
        if isinstance(fallback, MapStatusToException):
            for status, kind in fallback.table.items():
                if not 100 <= status <= 599:
                    raise self._fail(f"invalid status {status} in exception table")
                if not (isinstance(kind, type) and issubclass(kind, Exception)):
                    raise self._fail(f"status {status} must map to an exception class")
                if status < 300:
                    raise self._fail(f"status {status} is not an error status")

