from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

ReadyCheck = Callable[[], bool]
Snapshot = Callable[[], dict[str, Any]]


class _HealthHandler(BaseHTTPRequestHandler):
    """Liveness, readiness, leadership, metrics and queue introspection endpoints."""

    ready_check: ReadyCheck
    leader_event: threading.Event | None
    snapshot: Snapshot | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readyz(self) -> None:
        ready = bool(type(self).ready_check())
        leader = self._is_leader()
        text = f"ready={str(ready).lower()} leader={str(leader).lower()}".encode()
        self._respond(200 if ready and leader else 503, text)

    def _statusz(self) -> None:
        snapshot = type(self).snapshot
        if snapshot is None:
            self._respond(404)
            return
        body = json.dumps(snapshot(), sort_keys=True).encode()
        self._respond(200, body, "application/json")

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._respond(200, b"ok")
        elif path == "/leadz":
            if self._is_leader():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif path == "/readyz":
            self._readyz()
        elif path == "/statusz":
            self._statusz()
        elif path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready_check: ReadyCheck,
    leader: threading.Event | None = None,
    snapshot: Snapshot | None = None,
) -> type[_HealthHandler]:
    # staticmethod keeps the callables from being bound as instance methods
    return type(
        "_BoundHealthHandler",
        (_HealthHandler,),
        {
            "ready_check": staticmethod(ready_check),
            "leader_event": leader,
            "snapshot": staticmethod(snapshot) if snapshot is not None else None,
        },
    )


def start_health_server(
    ready_check: ReadyCheck,
    port: int,
    leader: threading.Event | None = None,
    snapshot: Snapshot | None = None,
) -> ThreadingHTTPServer:
    """Serve the health endpoints from a daemon thread and return the server."""
    server = ThreadingHTTPServer(
        ("0.0.0.0", port),  # noqa: S104
        make_health_handler(ready_check, leader=leader, snapshot=snapshot),
    )
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
