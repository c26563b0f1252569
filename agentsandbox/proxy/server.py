"""External-processing server that routes requests to sandboxes, with peer sync."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Mapping

from agentsandbox.proxy.messages import (
    ORIG_DST_HEADER,
    ProcessingRequest,
    ProcessingResponse,
    RequestHeaders,
    destination_response,
    error_response,
    parse_request,
)
from agentsandbox.proxy.routes import (
    HELLO_API,
    REFRESH_API,
    SYSTEM_PORT,
    Peer,
    RequestAdapter,
    Route,
    RouteTable,
    get_real_ip,
    request_peer,
)

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 5.0
SANDBOX_STATE_PAUSED = "paused"


class StreamCancelled(Exception):
    """The processing stream was cancelled by its caller."""


class StreamError(Exception):
    """Receiving from the processing stream failed."""


class ProcessStream(ABC):
    """A bidirectional stream of processing messages."""

    @abstractmethod
    def recv(self) -> ProcessingRequest | None:
        """Next request, or None once the peer has closed the stream.

        Raises StreamCancelled if the stream was cancelled; any other
        exception is a receive failure.
        """

    @abstractmethod
    def send(self, response: ProcessingResponse) -> None:
        """Send one response; raise on failure."""

    def cancelled(self) -> bool:
        """Tell whether the stream's context has been cancelled."""
        return False


class Server:
    """Routes proxied requests to sandboxes and keeps peers in sync."""

    def __init__(self, adapter: RequestAdapter | None) -> None:
        self.adapter = adapter
        self.lb_entry = adapter.entry() if adapter is not None else ""
        self.system_port = SYSTEM_PORT
        self.heartbeat_interval = HEARTBEAT_INTERVAL
        self._routes = RouteTable()
        self._peers: dict[str, Peer] = {}
        self._peer_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._http_server: ThreadingHTTPServer | None = None
        self._threads: list[threading.Thread] = []
        self._closed = False

    # routes -------------------------------------------------------------

    def set_route(self, route: Route) -> None:
        self._routes.set(route)

    def load_route(self, route_id: str) -> Route | None:
        return self._routes.load(route_id)

    def list_routes(self) -> list[Route]:
        return self._routes.list()

    def delete_route(self, route_id: str) -> None:
        self._routes.delete(route_id)

    # peers --------------------------------------------------------------

    def set_peer(self, ip: str) -> None:
        with self._peer_lock:
            self._peers[ip] = Peer(ip=ip, last_heartbeat=time.monotonic())

    def list_peers(self) -> list[Peer]:
        with self._peer_lock:
            return list(self._peers.values())

    def sync_route_with_peers(self, route: Route) -> None:
        """Push a route to every known peer; raise ConnectionError listing failures."""
        body = route.to_json().encode()
        with self._peer_lock:
            ips = list(self._peers)
        errors = []
        for ip in ips:
            try:
                request_peer("POST", ip, REFRESH_API, body)
            except (OSError, ValueError) as exc:
                errors.append(str(exc))
        if errors:
            raise ConnectionError(";".join(errors))

    def hello_peer(self, ip: str) -> None:
        request_peer("GET", ip, HELLO_API)

    def check_peers(self) -> list[str]:
        """Drop peers whose heartbeat timed out and greet the rest.

        Returns the addresses of the dropped peers.
        """
        timeout = 5 * self.heartbeat_interval
        now = time.monotonic()
        with self._peer_lock:
            stale = [ip for ip, p in self._peers.items() if now - p.last_heartbeat > timeout]
            for ip in stale:
                del self._peers[ip]
                logger.info("peer %s deleted for heartbeat timeout", ip)
            alive = list(self._peers.values())
        for peer in alive:
            try:
                request_peer("GET", peer.ip, HELLO_API)
            except (OSError, ValueError) as exc:
                logger.error("failed to send heartbeat to peer %s: %s", peer.ip, exc)
        return stale

    # external processing -------------------------------------------------

    def process(self, stream: ProcessStream) -> None:
        """Serve one processing stream until it closes.

        Raises StreamCancelled if cancelled before a receive, StreamError on
        receive failures, and lets send failures propagate.
        """
        context_id = uuid.uuid4()
        while True:
            if stream.cancelled():
                raise StreamCancelled("context canceled")
            try:
                request = stream.recv()
            except StreamCancelled:
                logger.debug("[%s] context canceled, closing stream", context_id)
                return
            except Exception as exc:
                if stream.cancelled():
                    logger.debug("[%s] context canceled, closing stream", context_id)
                    return
                logger.error("[%s] cannot receive stream request: %s", context_id, exc)
                raise StreamError(f"cannot receive stream request: {exc}") from exc
            if request is None:
                logger.debug("[%s] envoy has closed the stream", context_id)
                return

            response = ProcessingResponse()
            if isinstance(request.request, RequestHeaders):
                response = self.handle_request_headers(request.request)
            else:
                logger.debug("[%s] unknown request type %r", context_id, type(request.request))
            try:
                stream.send(response)
            except Exception as exc:
                logger.error("[%s] failed to send response: %s", context_id, exc)
                raise

    def handle_request_headers(self, request_headers: RequestHeaders) -> ProcessingResponse:
        """Decide where a request goes, or answer it with an error."""
        parsed = parse_request(request_headers)
        logger.debug(
            "parsed request %s scheme=%s authority=%s path=%s port=%d",
            parsed.headers.get("x-request-id", ""),
            parsed.scheme,
            parsed.authority,
            parsed.path,
            parsed.port,
        )
        adapter = self.adapter
        if adapter is None or not adapter.is_sandbox_request(
            parsed.authority, parsed.path, parsed.port
        ):
            return destination_response(request_headers, {ORIG_DST_HEADER: self.lb_entry})
        try:
            sandbox_id, sandbox_port, extra, user = adapter.map(
                parsed.scheme, parsed.authority, parsed.path, parsed.port, parsed.headers
            )
        except Exception:
            return error_response(
                500,
                "failed to map request to sandbox, "
                f"URL={parsed.scheme}://{parsed.authority}{parsed.path}",
            )
        route = self.load_route(sandbox_id)
        if route is None:
            return error_response(404, f"route for sandbox {sandbox_id} not found")
        if route.state == SANDBOX_STATE_PAUSED:
            return error_response(403, "sandbox is paused")
        headers = dict(extra or {})
        headers.update(route.extra_headers)
        headers[ORIG_DST_HEADER] = f"{route.ip}:{sandbox_port}"
        if not adapter.authorize(user, route.owner):
            return error_response(
                401, f"user {user} is not authorized to access sandbox {sandbox_id}"
            )
        return destination_response(request_headers, headers)

    # system HTTP API -------------------------------------------------------

    def handle_hello(self, headers: Mapping[str, str], remote_addr: str) -> int:
        """Record the caller as a peer; return 204 or raise ValueError."""
        ip = get_real_ip(headers, remote_addr)
        if not ip:
            raise ValueError("failed to get your ip")
        logger.debug("hello from %s", ip)
        self.set_peer(ip)
        return 204

    def handle_refresh(self, body: str | bytes) -> int:
        """Store the route carried in body; return 204 or raise ValueError."""
        try:
            route = Route.from_json(body)
        except ValueError as exc:
            raise ValueError(f"failed to unmarshal body: {exc}") from exc
        self.set_route(route)
        logger.info("route refreshed: %s", route)
        return 204

    @property
    def address(self) -> tuple[str, int] | None:
        """Address the system HTTP server is bound to, once running."""
        with self._state_lock:
            if self._http_server is None:
                return None
            host, port = self._http_server.server_address[:2]
            return str(host), int(port)

    def run(self) -> None:
        """Serve the system API and send heartbeats until stop() is called."""
        with self._state_lock:
            if self._http_server is not None:
                raise RuntimeError("proxy server already started")
            http_server = ThreadingHTTPServer(("", self.system_port), _make_handler(self))
            http_server.daemon_threads = True
            self._http_server = http_server
            serve = threading.Thread(
                target=http_server.serve_forever, kwargs={"poll_interval": 0.1}, daemon=True
            )
            heartbeat = threading.Thread(target=self._heartbeat_loop, daemon=True)
            self._threads = [serve, heartbeat]
            serve.start()
            heartbeat.start()
        logger.info("starting proxy system server on %s", http_server.server_address)
        self._stop.wait()

    def stop(self) -> None:
        """Stop serving; safe to call more than once."""
        self._stop.set()
        with self._state_lock:
            server = self._http_server
            if server is None or self._closed:
                return
            self._closed = True
        server.shutdown()
        server.server_close()

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_interval):
            self.check_peers()


def _make_handler(server: Server) -> type[BaseHTTPRequestHandler]:
    class _SystemHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: object) -> None:  # noqa: A002
            logger.debug(format, *args)

        def _remote_addr(self) -> str:
            host, port = self.client_address[:2]
            return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"

        def _reply(self, call: Callable[[], int]) -> None:
            try:
                code = call()
            except ValueError as exc:
                body = json.dumps({"code": 400, "message": str(exc)}).encode()
                self.send_response(400)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
                return
            self.send_response(code)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def _not_found(self) -> None:
            self.send_response(404)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def do_GET(self) -> None:
            if self.path != HELLO_API:
                self._not_found()
                return
            headers = dict(self.headers.items())
            self._reply(lambda: server.handle_hello(headers, self._remote_addr()))

        def do_POST(self) -> None:
            if self.path != REFRESH_API:
                self._not_found()
                return
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length > 0 else b""
            self._reply(lambda: server.handle_refresh(body))

    return _SystemHandler