"""HTTP entrypoint executed inside the wrapper container.

This module is copied verbatim into the wrapper image as ``server.py`` and
therefore depends on the standard library only. It exposes ``GET /healthz``
and answers every other request with a JSON error document.
"""
from __future__ import annotations

import json
import logging
import os
import signal
import time
import urllib.parse
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

log = logging.getLogger("browsewrap")

DEFAULT_PORT = 8080
LOG_FILENAME = "wrapper.log"

_ERROR_MESSAGES = {
    HTTPStatus.BAD_REQUEST: "invalid request",
    HTTPStatus.NOT_FOUND: "not found",
}


def public_endpoint(endpoint: str) -> str:
    """Return *endpoint* stripped of query string, fragment and credentials."""
    parts = urllib.parse.urlsplit(endpoint)
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, "", ""))


class WrapperHandler(BaseHTTPRequestHandler):
    """Request handler serving the liveness endpoint."""

    server_version = "browsewrap"
    upstream_endpoint = ""
    started_at = 0.0

    def do_GET(self) -> None:  # noqa: N802
        path = urllib.parse.urlsplit(self.path).path
        if path == "/healthz":
            self._send_json(
                HTTPStatus.OK,
                {
                    "status": "ok",
                    "upstream_endpoint": self.upstream_endpoint,
                    "uptime_seconds": round(time.monotonic() - self.started_at, 3),
                },
            )
            return
        self.send_error(HTTPStatus.NOT_FOUND)

    def do_POST(self) -> None:  # noqa: N802
        self.send_error(HTTPStatus.NOT_FOUND)

    do_PUT = do_POST
    do_PATCH = do_POST
    do_DELETE = do_POST
    do_OPTIONS = do_POST
    do_HEAD = do_GET

    def send_error(self, code, message=None, explain=None) -> None:
        """Emit errors as JSON documents instead of the default HTML page."""
        status = HTTPStatus(code)
        # A rejected request line leaves the HTTP/0.9 default, which suppresses
        # the status line and headers.
        if self.request_version == "HTTP/0.9":
            self.request_version = "HTTP/1.0"
            self.close_connection = True
        text = _ERROR_MESSAGES.get(status, message or status.phrase.lower())
        self._send_json(status, {"status": "error", "message": text})

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        log.info("%s %s", self.address_string(), format % args)

    def _send_json(self, status: HTTPStatus, payload: dict[str, object]) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)


def configure_logging(log_dir: Path | None) -> None:
    """Send server logs to ``LOG_DIR/wrapper.log`` (stderr when unset)."""
    handler: logging.Handler
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    log.addHandler(handler)
    log.setLevel(logging.INFO)


def build_server(host: str, port: int, upstream_endpoint: str) -> ThreadingHTTPServer:
    """Create a server bound to *host*:*port* reporting *upstream_endpoint*."""
    handler = type(
        "BoundWrapperHandler",
        (WrapperHandler,),
        {
            "upstream_endpoint": public_endpoint(upstream_endpoint),
            "started_at": time.monotonic(),
        },
    )
    return ThreadingHTTPServer((host, port), handler)


def main() -> int:
    port = int(os.environ.get("WRAPPER_PORT", DEFAULT_PORT))
    log_dir = os.environ.get("LOG_DIR")
    endpoint = os.environ.get("UPSTREAM_ENDPOINT", "")
    configure_logging(Path(log_dir) if log_dir else None)

    server = build_server("0.0.0.0", port, endpoint)  # noqa: S104

    def _stop(*_: object) -> None:
        log.info("Shutting down.")
        server.server_close()
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _stop)
    log.info("Listening on port %d (upstream %s).", port, public_endpoint(endpoint))
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
