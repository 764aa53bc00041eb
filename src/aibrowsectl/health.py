"""Bounded health polling for freshly started stacks."""
from __future__ import annotations

import http.client
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable

from .errors import ProvisionError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

Probe = Callable[[], bool]


class HealthTimeout(ProvisionError):
    """Raised when a stack never reports healthy within the polling budget."""

    kind = "health-timeout"


def wait_healthy(
    probe: Probe,
    *,
    interval: float = 2.0,
    max_attempts: int = 30,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "service",
) -> int:
    """Poll *probe* until it succeeds; return the attempt that succeeded.

    At most ``max_attempts`` polls are made with ``interval`` seconds between
    failed polls. :class:`HealthTimeout` is raised after the last failure.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    for attempt in range(1, max_attempts + 1):
        if probe():
            log.info("%s healthy after %d attempt(s).", label, attempt)
            return attempt
        if attempt < max_attempts:
            log.debug("%s not ready (attempt %d/%d).", label, attempt, max_attempts)
            sleep(interval)
    raise HealthTimeout(
        f"{label} failed health check after {max_attempts} attempts "
        f"({interval:g}s interval)."
    )


def http_ok(url: str, *, timeout: float = DEFAULT_TIMEOUT) -> bool:
    """Return ``True`` when a GET on *url* answers with a 2xx status."""
    try:
        request = urllib.request.Request(url, method="GET")
        with urllib.request.urlopen(request, timeout=timeout) as response:  # noqa: S310
            return 200 <= response.status < 300
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError):
        return False


def metrics_probe(
    port: int,
    token: str,
    *,
    host: str = "localhost",
    timeout: float = DEFAULT_TIMEOUT,
) -> Probe:
    """Return a probe hitting the browser server's ``/metrics`` endpoint."""
    query = urllib.parse.urlencode({"token": token})
    url = f"http://{host}:{port}/metrics?{query}"
    return lambda: http_ok(url, timeout=timeout)


def healthz_probe(port: int, *, host: str = "localhost", timeout: float = DEFAULT_TIMEOUT) -> Probe:
    """Return a probe hitting the wrapper's ``/healthz`` endpoint."""
    url = f"http://{host}:{port}/healthz"
    return lambda: http_ok(url, timeout=timeout)


__all__ = [
    "DEFAULT_TIMEOUT",
    "HealthTimeout",
    "Probe",
    "healthz_probe",
    "http_ok",
    "metrics_probe",
    "wait_healthy",
]
