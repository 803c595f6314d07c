"""
Transport-side building blocks: request value objects and the HTTP adapter.
"""

from __future__ import annotations

from .http import ClientConfig, HttpTransport, redact_headers
from .pipeline import BytesPayload, DraftRequest, Request, StreamPayload, header_lines

__all__ = [
    "BytesPayload",
    "ClientConfig",
    "DraftRequest",
    "HttpTransport",
    "Request",
    "StreamPayload",
    "header_lines",
    "redact_headers",
]
