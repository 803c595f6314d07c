"""
restbind: declarative REST endpoints bound to the wire.

Endpoints are described once as `RequestDescriptor` values; `RestClient`
builds, filters, sends and interprets calls to them.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .binders import FilePart
from .builder import RequestBuilder, build
from .client import ApiFacade, RestClient
from .clients.http import ClientConfig, HttpTransport
from .clients.pipeline import BytesPayload, DraftRequest, Request, StreamPayload

# Descriptors
from .descriptors import (
    EMPTY_LIST_ON_NOT_FOUND,
    EMPTY_MAP_ON_NOT_FOUND,
    FALSE_ON_NOT_FOUND,
    NULL_ON_NOT_FOUND,
    PROPAGATE,
    SKIP,
    VOID_ON_NOT_FOUND,
    BodyParam,
    DefaultValue,
    EndpointParam,
    FormParam,
    FormPayload,
    HeaderParam,
    JsonPayload,
    MapStatusToException,
    MultipartPayload,
    OptionsParam,
    Parsed,
    PathParam,
    PayloadParam,
    Propagate,
    QueryParam,
    RawPayload,
    RawStream,
    RequestDescriptor,
    ReturnValue,
    TemplatePayload,
    URIFromHeader,
    Void,
)
from .dispatch import ResponseDispatcher

# Exceptions
from .exceptions import (
    AUTHORIZATION_STATUSES,
    NOT_FOUND_STATUSES,
    AuthError,
    AuthorizationError,
    BuildError,
    ClientError,
    ConflictError,
    DescriptorError,
    FilterError,
    NotFoundError,
    ParseError,
    RateLimitError,
    RedirectionError,
    RequestTimeoutError,
    RestBindError,
    ServerError,
    StatusError,
    TransportError,
    ValidationError,
    classify_status,
)
from .fanout import gather_ordered, transform_parallel
from .filters import (
    ApiVersionFilter,
    BasicAuthentication,
    BearerTokenFilter,
    FilterChain,
    RequestFilter,
    SessionCookieFilter,
    SessionFilter,
    SessionHeaderFilter,
    StaticHeader,
)
from .options import RequestOptions
from .parsers import (
    JsonSelector,
    ParserRegistry,
    ResponseParser,
    ResponseStream,
    ResultHandler,
    SaxParser,
    UriListParser,
)
from .policies import RetryPolicy
from .session import AuthFailureLatch, CacheState, SessionToken, SessionTokenCache

__all__ = [
    "__version__",
    # Client
    "ApiFacade",
    "ClientConfig",
    "HttpTransport",
    "RestClient",
    "RetryPolicy",
    # Requests
    "BytesPayload",
    "DraftRequest",
    "FilePart",
    "Request",
    "RequestBuilder",
    "RequestOptions",
    "StreamPayload",
    "build",
    # Descriptors
    "BodyParam",
    "DefaultValue",
    "EMPTY_LIST_ON_NOT_FOUND",
    "EMPTY_MAP_ON_NOT_FOUND",
    "EndpointParam",
    "FALSE_ON_NOT_FOUND",
    "FormParam",
    "FormPayload",
    "HeaderParam",
    "JsonPayload",
    "MapStatusToException",
    "MultipartPayload",
    "NULL_ON_NOT_FOUND",
    "OptionsParam",
    "PROPAGATE",
    "Parsed",
    "PathParam",
    "PayloadParam",
    "Propagate",
    "QueryParam",
    "RawPayload",
    "RawStream",
    "RequestDescriptor",
    "ReturnValue",
    "SKIP",
    "TemplatePayload",
    "URIFromHeader",
    "VOID_ON_NOT_FOUND",
    "Void",
    # Filters and sessions
    "ApiVersionFilter",
    "AuthFailureLatch",
    "BasicAuthentication",
    "BearerTokenFilter",
    "CacheState",
    "FilterChain",
    "RequestFilter",
    "SessionCookieFilter",
    "SessionFilter",
    "SessionHeaderFilter",
    "SessionToken",
    "SessionTokenCache",
    "StaticHeader",
    # Responses
    "JsonSelector",
    "ParserRegistry",
    "ResponseDispatcher",
    "ResponseParser",
    "ResponseStream",
    "ResultHandler",
    "SaxParser",
    "UriListParser",
    "gather_ordered",
    "transform_parallel",
    # Errors
    "AUTHORIZATION_STATUSES",
    "NOT_FOUND_STATUSES",
    "AuthError",
    "AuthorizationError",
    "BuildError",
    "ClientError",
    "ConflictError",
    "DescriptorError",
    "FilterError",
    "NotFoundError",
    "ParseError",
    "RateLimitError",
    "RedirectionError",
    "RequestTimeoutError",
    "RestBindError",
    "ServerError",
    "StatusError",
    "TransportError",
    "ValidationError",
    "classify_status",
]
