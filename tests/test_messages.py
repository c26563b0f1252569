import json

import pytest

from agentsandbox.proxy.messages import (
    ORIG_DST_HEADER,
    HeaderValue,
    HeadersResponse,
    ImmediateResponse,
    ParsedRequest,
    RequestHeaders,
    destination_response,
    error_response,
    header_modifiers,
    parse_request,
)


def _headers(**pairs):
    return RequestHeaders([HeaderValue(k, v.encode()) for k, v in pairs.items()])


def _sandbox_request():
    return RequestHeaders([
        HeaderValue(":scheme", b"http"),
        HeaderValue(":authority", b"localhost:9002"),
        HeaderValue(":path", b"/sandbox"),
    ])


def test_parse_request_sandbox_headers():
    parsed = parse_request(_sandbox_request())
    assert parsed == ParsedRequest(
        "http", "localhost:9002", "/sandbox", 9002,
        {":scheme": "http", ":authority": "localhost:9002", ":path": "/sandbox"},
    )


@pytest.mark.parametrize("scheme, port", [("https", 443), ("wss", 443), ("http", 80), ("ws", 80), ("ftp", 0)])
def test_parse_request_default_ports(scheme, port):
    request = RequestHeaders([
        HeaderValue(":scheme", scheme.encode()),
        HeaderValue(":authority", b"api.example.com"),
    ])
    assert parse_request(request).port == port


def test_parse_request_falls_back_to_host():
    request = RequestHeaders([HeaderValue(":scheme", b"http"), HeaderValue("host", b"api.example.com")])
    parsed = parse_request(request)
    assert parsed.authority == "api.example.com"
    assert parsed.port == 80


def test_parse_request_bad_port_is_zero():
    request = RequestHeaders([HeaderValue(":scheme", b"https"), HeaderValue(":authority", b"host:abc")])
    assert parse_request(request).port == 0


def test_parse_request_empty_authority():
    parsed = parse_request(RequestHeaders([HeaderValue(":scheme", b"https")]))
    assert parsed.authority == ""
    assert parsed.port == 0


def test_destination_response_non_sandbox():
    response = destination_response(_sandbox_request(), {ORIG_DST_HEADER: "127.0.0.1:8080"})
    assert isinstance(response.response, HeadersResponse)
    assert response.response.as_dict() == {"x-envoy-original-dst-host": "127.0.0.1:8080"}


def test_destination_response_extra_headers():
    extra = {"foo": "bar", ORIG_DST_HEADER: "192.168.1.10:8080"}
    response = destination_response(_sandbox_request(), extra)
    keys = sorted(h.key for h in response.response.set_headers)
    assert keys == ["foo", "x-envoy-original-dst-host"]
    assert response.response.as_dict()["x-envoy-original-dst-host"] == "192.168.1.10:8080"


def test_destination_response_appends_modifiers():
    request = _sandbox_request()
    request.headers.append(HeaderValue("request-header-modifier", json.dumps({"a": "b"}).encode()))
    response = destination_response(request, {"foo": "bar"})
    assert [h.key for h in response.response.set_headers] == ["foo", "a"]


def test_header_modifiers_parses_json():
    request = _headers(**{"request-header-modifier": '{"x": "1", "y": "2"}'})
    modifiers = header_modifiers("request-header-modifier", request)
    assert {h.key: h.value for h in modifiers} == {"x": "1", "y": "2"}


@pytest.mark.parametrize("value", ["not-json", "[1]", '{"x": 1}', "null"])
def test_header_modifiers_bad_or_empty_values(value):
    request = _headers(**{"request-header-modifier": value})
    assert header_modifiers("request-header-modifier", request) == []


def test_header_modifiers_missing_header():
    assert header_modifiers("request-header-modifier", _sandbox_request()) == []


@pytest.mark.parametrize(
    "code, message",
    [
        (500, "failed to map request to sandbox, URL=http://localhost:9002/sandbox"),
        (404, "route for sandbox nonexistent not found"),
        (401, "user user2 is not authorized to access sandbox sandbox1"),
    ],
)
def test_error_response(code, message):
    response = error_response(code, message)
    assert response.response == ImmediateResponse(code, message.encode())