"""
Request builder.

Turns a `RequestDescriptor` plus call-time arguments into a `Request`. The
builder is purely local: it never touches the network, so every `BuildError`
it raises is reported before anything is sent.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any

import httpx

from .binders import PayloadArguments, bind_payload, expand_pairs, override_pairs, render_value
from .clients.pipeline import DraftRequest, Request
from .descriptors import (
    SKIP,
    Binding,
    BodyParam,
    EndpointParam,
    FormParam,
    HeaderParam,
    OptionsParam,
    PathParam,
    PayloadParam,
    QueryParam,
    RequestDescriptor,
)
from .exceptions import BuildError, RestBindError, ValidationError
from .options import MergedOptions, merge_options

logger = logging.getLogger(__name__)

# RFC 3986 pchar minus "/" (a substituted value is a single segment).
_SEGMENT = re.compile(r"^(?:[A-Za-z0-9\-._~!$&'()*+,;=:@]|%[0-9A-Fa-f]{2})*$")
_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.-]*)\}")

_MISSING = object()


def _is_optional(binding: Binding) -> bool:
    return bool(getattr(binding, "optional", False))


class RequestBuilder:
    """
    Builds requests against a default base URL.

    `base_url` is used unless the descriptor binds an `EndpointParam`, in which
    case the argument supplies the base for that call.
    """

    def __init__(self, base_url: str | httpx.URL | None = None) -> None:
        self._base_url = httpx.URL(base_url) if base_url is not None else None

    def build(self, descriptor: RequestDescriptor, *args: Any) -> Request:
        try:
            return self._build(descriptor, args)
        except RestBindError as e:
            raise e.with_context(method=descriptor.method, url=descriptor.path or "/")

    # -------------------------------------------------------------------------

    def _build(self, descriptor: RequestDescriptor, args: Sequence[Any]) -> Request:
        values, options = self._split_arguments(descriptor, args)
        self._run_validators(descriptor, values)

        url = self._resolve_url(descriptor, values)
        draft = DraftRequest(
            method=descriptor.method,
            url=url,
            endpoint_name=descriptor.name,
            timeout=descriptor.timeout,
        )
        draft.add_query_params(self._query_pairs(descriptor, values, options))
        self._apply_headers(draft, descriptor, values, options)

        if descriptor.payload is not None:
            payload_args = self._payload_arguments(descriptor, values, options)
            draft.set_payload(bind_payload(descriptor.payload, payload_args))
        elif options.form or options.payload_fields:
            raise BuildError(f"{descriptor.name} does not accept payload options")

        request = draft.freeze()
        logger.debug("built %s for %s", request.request_line, descriptor.name)
        return request

    def _split_arguments(
        self, descriptor: RequestDescriptor, args: Sequence[Any]
    ) -> tuple[dict[int, Any], MergedOptions]:
        arity = descriptor.arity
        if len(args) > arity and descriptor.options_param is None:
            raise BuildError(f"{descriptor.name} takes {arity} argument(s), got {len(args)}")

        values: dict[int, Any] = {}
        for binding in descriptor.params:
            if isinstance(binding, OptionsParam):
                continue
            value = args[binding.pos] if binding.pos < len(args) else _MISSING
            if value is _MISSING or value is None:
                if not _is_optional(binding):
                    raise BuildError(
                        f"{descriptor.name}: missing required argument {_label(binding)}"
                    )
                value = None
            values[binding.pos] = value
        return values, merge_options(args[arity:])

    def _run_validators(self, descriptor: RequestDescriptor, values: dict[int, Any]) -> None:
        for binding in descriptor.params:
            validator = getattr(binding, "validator", None)
            if validator is None:
                continue
            value = values.get(binding.pos)
            if value is None or value is SKIP:
                continue
            try:
                validator(value)
            except RestBindError:
                raise
            except (ValueError, TypeError) as e:
                raise ValidationError(
                    f"{descriptor.name}: invalid value for {_label(binding)}: {e}"
                ) from e

    # -------------------------------------------------------------------------
    # URL
    # -------------------------------------------------------------------------

    def _resolve_url(self, descriptor: RequestDescriptor, values: dict[int, Any]) -> httpx.URL:
        base = self._base_url
        for binding in descriptor.bindings_of(EndpointParam):
            base = httpx.URL(str(values[binding.pos]))
        if base is None or not base.is_absolute_url:
            raise BuildError(f"{descriptor.name}: no absolute endpoint to send the request to")

        path = self._resolve_path(descriptor, values)
        base_path = base.path.rstrip("/")
        if path and not path.startswith("/"):
            path = "/" + path
        return base.copy_with(path=(base_path + path) or "/")

    def _resolve_path(self, descriptor: RequestDescriptor, values: dict[int, Any]) -> str:
        if not descriptor.path:
            return ""
        bound = {b.name: values[b.pos] for b in descriptor.bindings_of(PathParam)}

        segments: list[str] = []
        for segment in descriptor.path.split("/"):
            names = _PLACEHOLDER.findall(segment)
            if any(bound[name] is SKIP for name in names):
                continue

            def substitute(match: re.Match[str]) -> str:
                name = match.group(1)
                rendered = render_value(bound[name])
                if not _SEGMENT.match(rendered) or not rendered:
                    raise ValidationError(
                        f"{descriptor.name}: {rendered!r} is not a valid path segment "
                        f"for {{{name}}}"
                    )
                return rendered

            segments.append(_PLACEHOLDER.sub(substitute, segment))
        return "/".join(segments)

    # -------------------------------------------------------------------------
    # Query and headers
    # -------------------------------------------------------------------------

    def _query_pairs(
        self, descriptor: RequestDescriptor, values: dict[int, Any], options: MergedOptions
    ) -> list[tuple[str, str]]:
        pairs: list[tuple[str, str]] = list(descriptor.query)
        for binding in descriptor.bindings_of(QueryParam):
            pairs.extend(expand_pairs(binding.name, values[binding.pos], ordinal=binding.ordinal))
        return override_pairs(pairs, options.query)

    def _apply_headers(
        self,
        draft: DraftRequest,
        descriptor: RequestDescriptor,
        values: dict[int, Any],
        options: MergedOptions,
    ) -> None:
        for name, value in descriptor.headers:
            draft.add_header(name, value)
        if descriptor.accept:
            draft.set_header("Accept", descriptor.accept)
        for binding in descriptor.bindings_of(HeaderParam):
            for name, value in expand_pairs(binding.name, values[binding.pos], ordinal=False):
                draft.add_header(name, value)
        for name, value in options.headers.items():
            draft.set_header(name, value)

    # -------------------------------------------------------------------------
    # Payload
    # -------------------------------------------------------------------------

    def _payload_arguments(
        self, descriptor: RequestDescriptor, values: dict[int, Any], options: MergedOptions
    ) -> PayloadArguments:
        args = PayloadArguments()
        for binding in descriptor.bindings_of(BodyParam):
            args.body = values[binding.pos]
            args.has_body = True

        form: list[tuple[str, str]] = list(descriptor.form)
        for binding in descriptor.bindings_of(FormParam):
            form.extend(expand_pairs(binding.name, values[binding.pos], ordinal=binding.ordinal))
        args.form = override_pairs(form, options.form)

        fields: dict[str, Any] = {}
        for binding in descriptor.bindings_of(PayloadParam):
            fields[binding.name] = values[binding.pos]
        fields.update(options.payload_fields)
        args.fields = list(fields.items())
        return args


def _label(binding: Binding) -> str:
    name = getattr(binding, "name", None)
    kind = type(binding).__name__
    if name:
        return f"{kind} {name!r} (position {binding.pos})"
    return f"{kind} (position {binding.pos})"


def build(
    descriptor: RequestDescriptor,
    args: Sequence[Any] = (),
    *,
    base_url: str | httpx.URL | None = None,
) -> Request:
    """Build a request for `descriptor` without a long-lived builder."""
    return RequestBuilder(base_url).build(descriptor, *args)
