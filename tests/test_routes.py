import json
import urllib.error
from unittest import mock

import pytest

from agentsandbox.proxy.routes import (
    Route,
    RequestAdapter,
    RouteTable,
    get_real_ip,
    request_peer,
)


def test_route_json_round_trip():
    route = Route(ip="192.168.1.10", id="sandbox1", owner="user1", state="running",
                  extra_headers={"foo": "bar"})
    assert Route.from_json(route.to_json()) == route


def test_route_json_keys():
    route = Route(ip="192.168.1.10", id="sandbox1", owner="user1")
    data = json.loads(route.to_json())
    assert set(data) == {"ip", "id", "owner", "state", "extra_headers"}
    assert data["ip"] == "192.168.1.10"
    assert data["extra_headers"] == {}


def test_route_from_json_defaults_and_null_headers():
    route = Route.from_json('{"id": "sandbox1", "extra_headers": null}')
    assert route == Route(id="sandbox1")


@pytest.mark.parametrize("text", ["not json", "[1, 2]", '{"ip": 5}', '{"extra_headers": [1]}',
                                  '{"extra_headers": {"a": 1}}'])
def test_route_from_json_rejects_bad_input(text):
    with pytest.raises(ValueError):
        Route.from_json(text)


def test_route_table_set_load_delete():
    table = RouteTable()
    route = Route(ip="192.168.1.10", id="sandbox1", owner="user1")
    table.set(route)
    assert table.load("sandbox1") == route
    assert table.load("nonexistent") is None
    table.delete("sandbox1")
    assert table.load("sandbox1") is None
    assert table.list() == []


def test_route_table_overwrites_same_id():
    table = RouteTable()
    table.set(Route(id="sandbox1", ip="192.168.1.10"))
    table.set(Route(id="sandbox1", ip="192.168.1.11"))
    routes = table.list()
    assert len(routes) == 1
    assert routes[0].ip == "192.168.1.11"


def test_route_table_lists_all():
    table = RouteTable()
    ids = ["a", "b", "c"]
    for route_id in ids:
        table.set(Route(id=route_id))
    assert sorted(r.id for r in table.list()) == ids


def test_request_adapter_is_abstract():
    with pytest.raises(TypeError):
        RequestAdapter()


def test_request_peer_builds_request():
    with mock.patch("urllib.request.urlopen") as urlopen:
        result = request_peer("POST", "10.0.0.1", "/refresh", b'{"id":"x"}')
    assert result is None
    assert urlopen.call_count == 1
    sent = urlopen.call_args[0][0]
    assert sent.full_url == "http://10.0.0.1:7789/refresh"
    assert sent.get_method() == "POST"
    assert sent.data == b'{"id":"x"}'


def test_request_peer_without_body_sends_no_data():
    with mock.patch("urllib.request.urlopen") as urlopen:
        result = request_peer("GET", "10.0.0.1", "/hello", None)
    assert result is None
    assert urlopen.call_count == 1
    sent = urlopen.call_args[0][0]
    assert sent.data is None
    assert sent.get_method() == "GET"
    assert sent.full_url == "http://10.0.0.1:7789/hello"


def test_request_peer_transport_error_raises():
    with mock.patch("urllib.request.urlopen", side_effect=urllib.error.URLError("down")):
        with pytest.raises(OSError):
            request_peer("GET", "10.0.0.1", "/hello", None)


def test_request_peer_http_error_is_not_failure():
    error = urllib.error.HTTPError("http://10.0.0.1:7789/hello", 500, "boom", {}, None)
    with mock.patch("urllib.request.urlopen", side_effect=error) as urlopen:
        result = request_peer("GET", "10.0.0.1", "/hello", None)
    assert result is None
    assert urlopen.call_count == 1


def test_get_real_ip_prefers_forwarded_for():
    headers = {"X-Forwarded-For": " 1.2.3.4 , 5.6.7.8", "X-Real-IP": "9.9.9.9"}
    assert get_real_ip(headers, "10.0.0.2:5555") == "1.2.3.4"


def test_get_real_ip_case_insensitive_real_ip():
    assert get_real_ip({"x-real-ip": "9.9.9.9"}, "10.0.0.2:5555") == "9.9.9.9"


@pytest.mark.parametrize(
    "remote, expected",
    [("10.0.0.2:5555", "10.0.0.2"), ("[::1]:80", "::1"), ("10.0.0.2", ""), ("::1", "")],
)
def test_get_real_ip_from_remote_addr(remote, expected):
    assert get_real_ip({}, remote) == expected