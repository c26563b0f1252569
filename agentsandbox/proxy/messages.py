"""External-processing messages and helpers for building responses."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Mapping

logger = logging.getLogger(__name__)

ORIG_DST_HEADER = "x-envoy-original-dst-host"
REQUEST_HEADER_MODIFIER = "request-header-modifier"

_DEFAULT_PORTS = {"https": 443, "wss": 443, "http": 80, "ws": 80}
_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class HeaderValue:
    """A single header with its raw bytes."""

    key: str
    raw_value: bytes = b""

    @property
    def value(self) -> str:
        return self.raw_value.decode("utf-8", errors="replace")


@dataclass
class RequestHeaders:
    """Headers of an incoming request."""

    headers: list[HeaderValue] = field(default_factory=list)


@dataclass
class ResponseHeaders:
    """Headers of an upstream response."""

    headers: list[HeaderValue] = field(default_factory=list)


@dataclass
class ProcessingRequest:
    """One message received from the proxy."""

    request: RequestHeaders | ResponseHeaders | None = None


@dataclass
class HeadersResponse:
    """Continue processing, setting the listed headers."""

    set_headers: list[HeaderValue] = field(default_factory=list)

    def as_dict(self) -> dict[str, str]:
        return {header.key: header.value for header in self.set_headers}


@dataclass
class ImmediateResponse:
    """Answer the client directly with a status and body."""

    status_code: int
    body: bytes = b""


@dataclass
class ProcessingResponse:
    """One message sent back to the proxy."""

    response: HeadersResponse | ImmediateResponse = field(default_factory=HeadersResponse)


@dataclass(frozen=True)
class ParsedRequest:
    """The routing-relevant parts of a request."""

    scheme: str
    authority: str
    path: str
    port: int
    headers: Mapping[str, str]


def parse_request(request_headers: RequestHeaders) -> ParsedRequest:
    """Extract scheme, authority, path, port and a header map."""
    headers: dict[str, str] = {}
    scheme = authority = host = path = ""
    for header in request_headers.headers:
        value = header.value
        headers[header.key] = value
        if header.key == ":scheme":
            scheme = value
        elif header.key == ":authority":
            authority = value
        elif header.key == "host":
            host = value
        elif header.key == ":path":
            path = value
    if not authority:
        authority = host

    port = 0
    if authority:
        parts = authority.split(":")
        if len(parts) > 1:
            if _INTEGER.fullmatch(parts[1]):
                port = int(parts[1])
        else:
            port = _DEFAULT_PORTS.get(scheme, 0)
    return ParsedRequest(scheme, authority, path, port, headers)


def header_modifiers(key: str, request_headers: RequestHeaders) -> list[HeaderValue]:
    """Headers to set, read from a JSON object carried in the header named key."""
    value = next((h.value for h in request_headers.headers if h.key == key), "")
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except ValueError as exc:
        logger.error("failed to unmarshal header-modifier %r: %s", value, exc)
        return []
    if parsed is None:
        return []
    if not isinstance(parsed, dict) or not all(
        v is None or isinstance(v, str) for v in parsed.values()
    ):
        logger.error("failed to unmarshal header-modifier %r: not a string map", value)
        return []
    return [HeaderValue(k, (v or "").encode()) for k, v in parsed.items()]


def destination_response(
    request_headers: RequestHeaders, extra_headers: Mapping[str, str]
) -> ProcessingResponse:
    """A response that sets the extra headers plus any requested modifiers."""
    logger.debug("will modify request headers: %s", dict(extra_headers))
    set_headers = [HeaderValue(k, v.encode()) for k, v in extra_headers.items()]
    set_headers.extend(header_modifiers(REQUEST_HEADER_MODIFIER, request_headers))
    return ProcessingResponse(HeadersResponse(set_headers))


def error_response(status_code: int, message: str) -> ProcessingResponse:
    """A response that answers the client immediately with an error."""
    logger.error("create error response (code %d): %s", status_code, message)
    return ProcessingResponse(ImmediateResponse(status_code, message.encode()))