"""Sandbox routing table, request adapter contract and peer helpers."""

from __future__ import annotations

import json
import threading
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Mapping

REFRESH_API = "/refresh"
HELLO_API = "/hello"
SYSTEM_PORT = 7789
PEER_REQUEST_TIMEOUT = 1.0

_STRING_FIELDS = ("ip", "id", "owner", "state")


@dataclass
class Route:
    """An internal sandbox routing rule."""

    ip: str = ""
    id: str = ""
    owner: str = ""
    state: str = ""
    extra_headers: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise the route as compact JSON."""
        return json.dumps(
            {
                "ip": self.ip,
                "id": self.id,
                "owner": self.owner,
                "state": self.state,
                "extra_headers": dict(self.extra_headers),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> "Route":
        """Build a route from JSON; raise ValueError on malformed input."""
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("route must be a JSON object")
        values: dict[str, object] = {}
        for name in _STRING_FIELDS:
            value = data.get(name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"route field {name!r} must be a string")
            values[name] = value
        extra = data.get("extra_headers")
        headers: dict[str, str] = {}
        if extra is not None:
            if not isinstance(extra, dict):
                raise ValueError("route field 'extra_headers' must be an object")
            for key, value in extra.items():
                if value is None:
                    value = ""
                if not isinstance(value, str):
                    raise ValueError(f"extra header {key!r} must be a string")
                headers[key] = value
        return cls(extra_headers=headers, **values)  # type: ignore[arg-type]


@dataclass
class Peer:
    """Another proxy instance and when it last greeted us."""

    ip: str
    last_heartbeat: float = field(default_factory=time.monotonic)


class RequestAdapter(ABC):
    """Maps business-side sandbox requests onto internal routing decisions."""

    @abstractmethod
    def map(
        self,
        scheme: str,
        authority: str,
        path: str,
        port: int,
        headers: Mapping[str, str],
    ) -> tuple[str, int, dict[str, str] | None, str]:
        """Return (sandbox_id, sandbox_port, extra_headers, user); raise on failure."""

    @abstractmethod
    def authorize(self, user: str, owner: str) -> bool:
        """Tell whether the user may access a sandbox owned by owner."""

    @abstractmethod
    def is_sandbox_request(self, authority: str, path: str, port: int) -> bool:
        """Tell whether the request targets a sandbox rather than the API server."""

    @abstractmethod
    def entry(self) -> str:
        """Entry address of the service process, such as "127.0.0.1:8080"."""


class RouteTable:
    """A thread-safe mapping of sandbox ids to routes."""

    def __init__(self) -> None:
        self._routes: dict[str, Route] = {}
        self._lock = threading.Lock()

    def set(self, route: Route) -> None:
        with self._lock:
            self._routes[route.id] = route

    def load(self, route_id: str) -> Route | None:
        with self._lock:
            return self._routes.get(route_id)

    def delete(self, route_id: str) -> None:
        with self._lock:
            self._routes.pop(route_id, None)

    def list(self) -> list[Route]:
        with self._lock:
            return list(self._routes.values())


def request_peer(method: str, ip: str, path: str, body: bytes | None = None) -> None:
    """Send a request to a peer's system port.

    Any HTTP response counts as success; transport failures raise OSError.
    """
    request = urllib.request.Request(
        f"http://{ip}:{SYSTEM_PORT}{path}",
        data=body if body else None,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=PEER_REQUEST_TIMEOUT):
            pass
    except urllib.error.HTTPError as exc:
        if exc.fp is not None:
            exc.fp.close()


def _split_host(address: str) -> str:
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1 : end + 2] != ":":
            return ""
        return address[1:end]
    host, sep, _ = address.rpartition(":")
    if not sep or ":" in host:
        return ""
    return host


def get_real_ip(headers: Mapping[str, str], remote_addr: str) -> str:
    """Client IP from X-Forwarded-For, X-Real-IP, or the remote address."""
    lookup = {key.lower(): value for key, value in headers.items()}
    forwarded = lookup.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = lookup.get("x-real-ip", "")
    if real_ip:
        return real_ip
    return _split_host(remote_addr)