"""
Payload binders.

Each binder turns the payload-bound call arguments into exactly one `Payload`
with its content type. The wire rules reproduced here are fixed:

- form encoding: ordered `key=value` pairs, percent-encoded, joined by `&`;
  repeated keys are numbered (`Name.1`, `Name.2`) in first-seen order
- multipart: the boundary token is always `--JCLOUDS--`
"""

from __future__ import annotations

import string
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote
from xml.sax.saxutils import escape as xml_escape

from pydantic import BaseModel, TypeAdapter

from .clients.pipeline import BytesPayload, Payload, StreamPayload
from .descriptors import (
    FormPayload,
    JsonPayload,
    MultipartPayload,
    PayloadStrategy,
    RawPayload,
    TemplatePayload,
)
from .exceptions import BuildError, ValidationError

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
MULTIPART_BOUNDARY = "--JCLOUDS--"
MULTIPART_CONTENT_TYPE = f"multipart/form-data; boundary={MULTIPART_BOUNDARY}"
STREAM_CHUNK_SIZE = 64 * 1024

_json_adapter: TypeAdapter[Any] = TypeAdapter(Any)


@dataclass(frozen=True, slots=True)
class FilePart:
    """File part of a multipart payload."""

    content: bytes
    filename: str | None = None
    content_type: str = "application/octet-stream"


@dataclass(slots=True)
class PayloadArguments:
    """Payload-bound values collected by the builder, in binding order."""

    body: Any = None
    has_body: bool = False
    fields: list[tuple[str, Any]] | None = None
    form: list[tuple[str, str]] | None = None


# =============================================================================
# Value rendering
# =============================================================================


def render_value(value: Any) -> str:
    """String form used for path, query, header and form values."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(f"bytes value is not valid UTF-8: {value!r}") from e
    return str(value)


def is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset)) or (
        isinstance(value, Iterable)
        and not isinstance(value, (str, bytes, bytearray, Mapping, BaseModel))
    )


def expand_pairs(name: str, value: Any, *, ordinal: bool) -> list[tuple[str, str]]:
    """Render one bound argument as (name, value) pairs."""
    if value is None:
        return []
    if is_collection(value):
        items = [v for v in value if v is not None]
        if ordinal:
            return [(f"{name}.{index}", render_value(v)) for index, v in enumerate(items, 1)]
        return [(name, render_value(v)) for v in items]
    return [(name, render_value(value))]


def encode_form(pairs: Iterable[tuple[str, str]]) -> str:
    return "&".join(f"{quote(key, safe='')}={quote(value, safe='')}" for key, value in pairs)


def override_pairs(
    pairs: Sequence[tuple[str, str]], overrides: Mapping[str, str]
) -> list[tuple[str, str]]:
    """Replace same-named pairs with `overrides` (last write wins)."""
    if not overrides:
        return list(pairs)
    kept = [(k, v) for k, v in pairs if k not in overrides]
    return [*kept, *overrides.items()]


# =============================================================================
# Binders
# =============================================================================


def bind_raw(strategy: RawPayload, body: Any) -> Payload:
    content_type = strategy.content_type
    if isinstance(body, BaseModel):
        return BytesPayload(body.model_dump_json(by_alias=True).encode("utf-8"), content_type)
    if isinstance(body, (bytes, bytearray, memoryview)):
        return BytesPayload(bytes(body), content_type)
    if isinstance(body, str):
        return BytesPayload(body.encode("utf-8"), content_type)
    if hasattr(body, "read"):
        return StreamPayload(_read_chunks(body), content_type)
    if isinstance(body, Iterator):
        return StreamPayload(body, content_type)
    return BytesPayload(render_value(body).encode("utf-8"), content_type)


def _read_chunks(stream: Any) -> Iterator[bytes]:
    while True:
        chunk = stream.read(STREAM_CHUNK_SIZE)
        if not chunk:
            return
        yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk


def bind_form(pairs: Sequence[tuple[str, str]]) -> Payload:
    return BytesPayload(encode_form(pairs).encode("ascii"), FORM_CONTENT_TYPE)


def bind_json(strategy: JsonPayload, fields: Sequence[tuple[str, Any]]) -> Payload:
    document = {name: value for name, value in fields if value is not None}
    try:
        content = _json_adapter.dump_json(document, by_alias=True)
    except Exception as e:
        raise BuildError(f"payload is not JSON serializable: {e}") from e
    return BytesPayload(content, strategy.content_type)


def bind_template(strategy: TemplatePayload, fields: Sequence[tuple[str, Any]]) -> Payload:
    values: dict[str, str] = {}
    for name, value in fields:
        text = "" if value is None else render_value(value)
        if strategy.escape == "xml":
            text = xml_escape(text, {'"': "&quot;"})
        values[name] = text
    missing = [name for name in strategy.fields if name not in values]
    if missing:
        raise BuildError(f"no value for template field(s): {', '.join(missing)}")
    rendered = string.Template(strategy.template).substitute(values)
    return BytesPayload(rendered.encode("utf-8"), strategy.content_type)


def bind_multipart(
    strategy: MultipartPayload, body: Any, fields: Sequence[tuple[str, Any]]
) -> Payload:
    if isinstance(body, FilePart):
        part = body
    elif isinstance(body, (bytes, bytearray)):
        part = FilePart(bytes(body))
    elif isinstance(body, str):
        part = FilePart(body.encode("utf-8"), content_type="text/plain")
    else:
        raise BuildError(
            f"multipart file part must be bytes or FilePart, got {type(body).__name__}"
        )

    delimiter = f"--{MULTIPART_BOUNDARY}\r\n".encode("ascii")
    chunks: list[bytes] = []
    for name, value in fields:
        if value is None:
            continue
        chunks.append(delimiter)
        chunks.append(f'Content-Disposition: form-data; name="{name}"\r\n\r\n'.encode())
        chunks.append(render_value(value).encode("utf-8") + b"\r\n")

    disposition = f'Content-Disposition: form-data; name="{strategy.file_field}"'
    if part.filename is not None:
        disposition += f'; filename="{part.filename}"'
    chunks.append(delimiter)
    chunks.append(f"{disposition}\r\nContent-Type: {part.content_type}\r\n\r\n".encode())
    chunks.append(part.content + b"\r\n")
    chunks.append(f"--{MULTIPART_BOUNDARY}--\r\n".encode("ascii"))
    return BytesPayload(b"".join(chunks), MULTIPART_CONTENT_TYPE)


def bind_payload(strategy: PayloadStrategy, args: PayloadArguments) -> Payload:
    """Run the single binder selected by `strategy`."""
    fields = args.fields or []
    match strategy:
        case RawPayload():
            if not args.has_body or args.body is None:
                raise BuildError("missing payload argument")
            return bind_raw(strategy, args.body)
        case FormPayload():
            return bind_form(args.form or [])
        case JsonPayload():
            return bind_json(strategy, fields)
        case TemplatePayload():
            return bind_template(strategy, fields)
        case MultipartPayload():
            if not args.has_body or args.body is None:
                raise BuildError("missing multipart file argument")
            return bind_multipart(strategy, args.body, fields)
    raise BuildError(f"unsupported payload strategy {type(strategy).__name__}")

