"""HTTP handlers for the webhook receiver and the server that hosts them."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from io import StringIO
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .alerts import Alert, AlertPayload
from .metrics import MetricsManager
from .notifier import Notifier

log = logging.getLogger(__name__)

JSON_TYPE = "application/json; charset=utf-8"
TEXT_TYPE = "text/plain; charset=utf-8"


@dataclass(frozen=True)
class Response:
    """What a handler produced: status code, body and content type."""

    status: int
    body: bytes
    content_type: str = JSON_TYPE


def _envelope(status: int, state: str, message: str = "", data: Any = None) -> Response:
    document: dict[str, Any] = {"status": state}
    if message:
        document["message"] = message
    if data is not None:
        document["data"] = data
    body = json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return Response(status, body)


class App:
    """Routes requests to the index, health, metrics and dispatch handlers."""

    def __init__(self, notifier: Notifier, metrics: MetricsManager) -> None:
        self.notifier = notifier
        self.metrics = metrics
        self._routes = {
            ("GET", "/"): self._index,
            ("GET", "/ping"): self._ping,
            ("GET", "/metrics"): self._metrics,
            ("POST", "/dispatch"): self._dispatch,
        }

    def handle(self, method: str, path: str, body: bytes = b"") -> Response:
        """Serve one request for ``path`` (which may carry a query string)."""
        parts = urlsplit(path)
        route = parts.path or "/"
        handler = self._routes.get((method.upper(), route))
        if handler is not None:
            return handler(parse_qs(parts.query), body)
        if any(known == route for _, known in self._routes):
            return Response(405, b"", TEXT_TYPE)
        return Response(404, b"404 page not found\n", TEXT_TYPE)

    def _index(self, query: dict[str, list[str]], body: bytes) -> Response:
        self.metrics.increment('http_requests_total{handler="index"}')
        return _envelope(200, "success", data="welcome to calert!")

    def _ping(self, query: dict[str, list[str]], body: bytes) -> Response:
        self.metrics.increment('http_requests_total{handler="ping"}')
        return _envelope(200, "success", data="pong")

    def _metrics(self, query: dict[str, list[str]], body: bytes) -> Response:
        out = StringIO()
        self.metrics.flush_metrics(out)
        return Response(200, out.getvalue().encode("utf-8"), TEXT_TYPE)

    def _dispatch(self, query: dict[str, list[str]], body: bytes) -> Response:
        started = time.monotonic()
        self.metrics.increment('http_requests_total{handler="dispatch"}')
        try:
            text = body.decode("utf-8").lstrip(" \t\r\n")
            data, _ = json.JSONDecoder().raw_decode(text)
            payload = AlertPayload.from_dict({} if data is None else data)
        except ValueError as exc:
            log.error("error decoding request body error=%s", exc)
            self.metrics.increment('http_request_errors_total{handler="dispatch"}')
            return _envelope(400, "error", message="Error decoding payload.")

        room = (query.get("room_name") or [""])[0] or payload.receiver
        log.info("dispatching new alert room=%s count=%d", room, len(payload.alerts))
        # Pushing many alerts into an existing thread can be slow upstream,
        # so delivery happens in the background.
        threading.Thread(
            target=self._deliver, args=(payload.alerts, room, started), name="dispatch", daemon=True
        ).start()
        return _envelope(200, "success", data="dispatched")

    def _deliver(self, alerts: list[Alert], room: str, started: float) -> None:
        try:
            self.notifier.dispatch(alerts, room)
        except Exception as exc:  # background delivery must not die silently
            log.error("error dispatching alerts error=%s", exc)
            self.metrics.increment('http_request_errors_total{handler="dispatch"}')
        self.metrics.duration('http_request_duration_seconds{handler="dispatch"}', started)


def make_server(
    app: App,
    address: str,
    timeout: timedelta | float | None,
    request_logs: bool,
) -> ThreadingHTTPServer:
    """Bind a threaded HTTP server for ``app`` at ``host:port``."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"invalid address {address!r}: missing port")
    try:
        number = int(port)
    except ValueError as exc:
        raise ValueError(f"invalid address {address!r}: bad port") from exc
    if not 0 <= number <= 65535:
        raise ValueError(f"invalid address {address!r}: port out of range")
    seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else timeout

    class Handler(BaseHTTPRequestHandler):
        server_version = "calert"

        def _serve(self) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            response = app.handle(self.command, self.path, self.rfile.read(length) if length > 0 else b"")
            self.send_response(response.status)
            self.send_header("Content-Type", response.content_type)
            self.send_header("Content-Length", str(len(response.body)))
            self.end_headers()
            self.wfile.write(response.body)

        do_GET = do_POST = do_PUT = do_PATCH = do_DELETE = _serve

        def log_request(self, code: Any = "-", size: Any = "-") -> None:
            if request_logs:
                log.info('"%s" from %s - %s', self.requestline, self.client_address[0], code)

        def log_error(self, format: str, *args: Any) -> None:
            log.error(format, *args)

        def log_message(self, format: str, *args: Any) -> None:
            log.debug(format, *args)

    Handler.timeout = seconds if seconds is not None and seconds > 0 else None
    server = ThreadingHTTPServer((host.strip("[]"), number), Handler)
    server.daemon_threads = True
    return server