from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

StatusProvider = Callable[[], dict[str, Any]]


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, Prometheus metrics and per-service reconcile status."""

    ready_event: threading.Event
    status_provider: StatusProvider | None

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready")
            else:
                self._respond(503, b"not ready")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        elif self.path == "/status":
            services = self.status_provider() if self.status_provider is not None else {}
            body = json.dumps({"ready": self.ready_event.is_set(), "services": services})
            self._respond(200, body.encode(), "application/json")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("meshsplit.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, status_provider: StatusProvider | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the readiness event and status provider.

    The stdlib HTTPServer instantiates handlers without extra arguments, so
    both are bound as class attributes.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    # Assigned after class creation so the function is not bound as a method.
    _BoundHealthHandler.status_provider = staticmethod(status_provider) if status_provider else None
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    status_provider: StatusProvider | None = None,
    host: str = "0.0.0.0",  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, status_provider=status_provider)
    server = ThreadingHTTPServer((host, port), handler_class)
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
