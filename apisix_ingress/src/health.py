from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class HealthState:
    """Last gateway health probe failure, shared by the supervisor and the HTTP handler."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._error: str | None = None

    def set_error(self, error: BaseException | str) -> None:
        with self._lock:
            self._error = str(error) or type(error).__name__

    def clear_error(self) -> None:
        with self._lock:
            self._error = None

    @property
    def error(self) -> str | None:
        with self._lock:
            return self._error


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and Prometheus ``/metrics``."""

    ready_event: threading.Event
    leader_event: threading.Event | None
    health_state: HealthState

    def _leader_ready(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            error = self.health_state.error
            if error is None:
                self._respond(200, b"ok")
            else:
                self._respond(500, error.encode())
        elif self.path == "/leadz":
            if self._leader_ready():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            ready = self.ready_event.is_set()
            leader_ready = self._leader_ready()
            body = f"ready={str(ready).lower()} leader={str(leader_ready).lower()}".encode()
            self._respond(200 if ready and leader_ready else 503, body)
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("apisix_ingress.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event,
    health: HealthState,
    leader: threading.Event | None = None,
) -> type[_HealthHandler]:
    """Bind the shared state onto a handler class; the stdlib server builds handlers without arguments."""

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        leader_event = leader
        health_state = health

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    health: HealthState,
    port: int,
    leader: threading.Event | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(
        ("0.0.0.0", port), make_health_handler(ready, health, leader=leader)  # noqa: S104
    )
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
