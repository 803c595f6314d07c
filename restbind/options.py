"""
Per-call request options.

Endpoints that accept optional overrides declare an `OptionsParam`; callers
pass zero or more `RequestOptions` objects as trailing arguments. Each object
contributes header, query, form and payload fragments. Fragments are applied
in argument order, so a later option overrides an earlier one with the same key.

Provider integrations usually subclass `RequestOptions` with fluent, named
setters:

    ```python
    class CloneOptions(RequestOptions):
        def power_on(self) -> CloneOptions:
            return self.payload_field("powerOn", "true")
    ```
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, TypeVar

import httpx

from .exceptions import BuildError

TOptions = TypeVar("TOptions", bound="RequestOptions")


class RequestOptions:
    """Mutable bag of request fragments."""

    def __init__(self) -> None:
        self.headers: dict[str, str] = {}
        self.query: dict[str, str] = {}
        self.form: dict[str, str] = {}
        self.payload_fields: dict[str, Any] = {}

    def header(self: TOptions, name: str, value: Any) -> TOptions:
        self.headers[name] = str(value)
        return self

    def query_param(self: TOptions, name: str, value: Any) -> TOptions:
        self.query[name] = str(value)
        return self

    def form_param(self: TOptions, name: str, value: Any) -> TOptions:
        self.form[name] = str(value)
        return self

    def payload_field(self: TOptions, name: str, value: Any) -> TOptions:
        self.payload_fields[name] = value
        return self

    def __repr__(self) -> str:
        parts = [
            f"{label}={values!r}"
            for label, values in (
                ("headers", self.headers),
                ("query", self.query),
                ("form", self.form),
                ("payload_fields", self.payload_fields),
            )
            if values
        ]
        return f"{type(self).__name__}({', '.join(parts)})"


class MergedOptions:
    """Last-write-wins merge of several `RequestOptions`."""

    def __init__(self, options: Iterable[RequestOptions] = ()) -> None:
        self.headers = httpx.Headers()
        self.query: dict[str, str] = {}
        self.form: dict[str, str] = {}
        self.payload_fields: dict[str, Any] = {}
        for option in options:
            for name, value in option.headers.items():
                self.headers[name] = value
            self.query.update(option.query)
            self.form.update(option.form)
            self.payload_fields.update(option.payload_fields)

    def __bool__(self) -> bool:
        return bool(self.headers or self.query or self.form or self.payload_fields)


def merge_options(values: Sequence[Any]) -> MergedOptions:
    """Check trailing arguments are options objects and merge them."""
    for index, value in enumerate(values):
        if not isinstance(value, RequestOptions):
            raise BuildError(
                f"trailing argument {index} must be RequestOptions, got {type(value).__name__}"
            )
    return MergedOptions(values)
