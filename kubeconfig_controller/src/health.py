from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthChecks:
    """State probed by the health endpoints.

    ``ready`` is set by the controller manager once every watch finished its
    initial list.  ``failed`` is set when the controller stopped because of an
    unrecoverable error, which turns liveness red.  ``leader`` is ``None``
    when leader election is disabled.  ``watch_status`` reports the sync state
    per watched kind for the readiness body.
    """

    ready: threading.Event
    failed: threading.Event = field(default_factory=threading.Event)
    leader: threading.Event | None = None
    watch_status: Callable[[], Mapping[str, bool]] | None = None

    def is_leader(self) -> bool:
        return self.leader is None or self.leader.is_set()

    def readiness(self) -> tuple[bool, str]:
        ready = self.ready.is_set()
        leader = self.is_leader()
        parts = [f"ready={str(ready).lower()}", f"leader={str(leader).lower()}"]
        if self.watch_status is not None:
            synced = ",".join(
                f"{kind}:{str(value).lower()}" for kind, value in sorted(self.watch_status().items())
            )
            parts.append(f"synced={synced}")
        return ready and leader, " ".join(parts)


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``."""

    checks: HealthChecks

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _healthz(self) -> None:
        if self.checks.failed.is_set():
            self._respond(503, b"controller failed")
        else:
            self._respond(200, b"ok")

    def _readyz(self) -> None:
        ok, body = self.checks.readiness()
        self._respond(200 if ok else 503, body.encode())

    def _leadz(self) -> None:
        if self.checks.is_leader():
            self._respond(200, b"ok")
        else:
            self._respond(503, b"not leader")

    def _metrics(self) -> None:
        self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)

    def do_GET(self) -> None:
        routes = {
            "/healthz": self._healthz,
            "/readyz": self._readyz,
            "/leadz": self._leadz,
            "/metrics": self._metrics,
        }
        route = routes.get(self.path.split("?", 1)[0])
        if route is None:
            self._respond(404, b"not found")
        else:
            route()

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(checks: HealthChecks) -> type[_HealthHandler]:
    """Return a handler class bound to *checks*.

    ``ThreadingHTTPServer`` instantiates handlers itself, so the state is bound
    as a class attribute of a per-server subclass.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.checks = checks
    return _BoundHealthHandler


def start_health_server(
    checks: HealthChecks, port: int, host: str = "0.0.0.0"  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the health and metrics server in a daemon thread and return it."""
    server = ThreadingHTTPServer((host, port), make_health_handler(checks))
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on %s:%d", host, server.server_address[1])
    return server
