"""Tests for health polling and HTTP probes."""
from __future__ import annotations

import socketserver
import threading
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from aibrowsectl.health import HealthTimeout, healthz_probe, http_ok, metrics_probe, wait_healthy


def test_wait_healthy_returns_on_first_success() -> None:
    """Polling stops as soon as the probe succeeds."""
    results = iter([False, False, True])
    sleeps: list[float] = []

    attempt = wait_healthy(lambda: next(results), interval=2.0, max_attempts=30, sleep=sleeps.append)

    assert attempt == 3
    assert sleeps == [2.0, 2.0]


def test_wait_healthy_times_out_after_budget() -> None:
    """Exactly ``max_attempts`` polls happen before ``HealthTimeout``."""
    calls: list[int] = []
    sleeps: list[float] = []

    def probe() -> bool:
        calls.append(1)
        return False

    with pytest.raises(HealthTimeout, match="after 30 attempts") as excinfo:
        wait_healthy(probe, interval=2.0, max_attempts=30, sleep=sleeps.append)

    assert excinfo.value.kind == "health-timeout"
    assert len(calls) == 30
    assert len(sleeps) == 29
    assert sum(sleeps) == 58.0


def test_wait_healthy_rejects_empty_budget() -> None:
    """A zero attempt budget is a programming error."""
    with pytest.raises(ValueError):
        wait_healthy(lambda: True, max_attempts=0)


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        ok = self.path in ("/healthz", "/metrics?token=secret")
        self.send_response(200 if ok else 401)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        return


@pytest.fixture
def server_port() -> Iterator[int]:
    """Serve a tiny loopback endpoint for the probes."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()


def test_http_probes_against_loopback(server_port: int) -> None:
    """Probes succeed on 2xx answers and fail otherwise."""
    assert healthz_probe(server_port, host="127.0.0.1")() is True
    assert metrics_probe(server_port, "secret", host="127.0.0.1")() is True
    assert metrics_probe(server_port, "wrong", host="127.0.0.1")() is False


def test_http_ok_handles_connection_errors() -> None:
    """Refused connections and bad URLs count as unhealthy."""
    assert http_ok("http://127.0.0.1:9/healthz", timeout=0.5) is False
    assert http_ok("not a url") is False


class _GarbageHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        self.rfile.readline()
        self.wfile.write(b"GARBAGE\r\n")


@pytest.fixture
def garbage_port() -> Iterator[int]:
    """Serve a loopback socket that answers with a broken status line."""
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _GarbageHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()


def test_garbled_status_line_counts_as_failed_poll(garbage_port: int) -> None:
    """A half-started service answering garbage exhausts the budget instead of crashing."""
    probe = healthz_probe(garbage_port, host="127.0.0.1", timeout=2.0)

    assert probe() is False
    with pytest.raises(HealthTimeout, match="after 2 attempts"):
        wait_healthy(probe, interval=0, max_attempts=2, sleep=lambda _: None)
