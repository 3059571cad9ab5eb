from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints.

    Readiness is the conjunction of every controller's ``ready`` event, which
    a controller sets once its caches synced and its workers are running.
    """

    ready_events: Mapping[str, threading.Event]

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness(self) -> tuple[bool, str]:
        states = {name: event.is_set() for name, event in sorted(self.ready_events.items())}
        summary = " ".join(
            f"{name}={'true' if ready else 'false'}" for name, ready in states.items()
        )
        return all(states.values()), summary

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready, summary = self._readiness()
            self._respond(200 if ready else 503, summary.encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("platform_controller.health").debug(fmt, *args)


def make_health_handler(ready_events: Mapping[str, threading.Event]) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness events.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.ready_events = dict(ready_events)
    return _BoundHealthHandler


def start_health_server(
    ready_events: Mapping[str, threading.Event], port: int
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready_events)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
