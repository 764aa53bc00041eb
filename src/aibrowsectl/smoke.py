"""Screenshot smoke test run against a freshly provisioned browser server."""
from __future__ import annotations

import http.client
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .errors import ProvisionError

log = logging.getLogger(__name__)

SMOKE_TEST_FILENAME = "smoke-test.png"

Fetcher = Callable[[str, float], bytes]


class SmokeTestError(ProvisionError):
    """Raised when the smoke screenshot cannot be captured."""

    kind = "smoke-test"


@dataclass(frozen=True)
class SmokeResult:
    """Outcome of a successful screenshot capture."""

    path: Path
    size: int
    attempts: int
    undersized: bool


def fetch_url(url: str, timeout: float) -> bytes:
    """Download *url* and return the body; raise ``OSError`` on HTTP failures."""
    with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
        return response.read()


def screenshot_url(port: int, token: str, target: str, *, host: str = "localhost") -> str:
    """Build the screenshot API URL for *target*."""
    query = urllib.parse.urlencode({"token": token, "url": target})
    return f"http://{host}:{port}/screenshot?{query}"


def capture_screenshot(
    destination: Path,
    *,
    port: int,
    token: str,
    target: str,
    retries: int = 5,
    retry_delay: float = 2.0,
    min_bytes: int = 10240,
    timeout: float = 30.0,
    fetch: Fetcher = fetch_url,
    sleep: Callable[[float], None] = time.sleep,
) -> SmokeResult:
    """Capture a screenshot of *target* into *destination*.

    One download is attempted plus up to *retries* retries, *retry_delay*
    seconds apart, the way ``curl --retry`` counts. A capture smaller than
    *min_bytes* is kept but flagged as ``undersized`` and logged as a warning.
    """
    if retries < 0:
        raise ValueError("retries must not be negative")
    url = screenshot_url(port, token, target)
    attempts = retries + 1
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            body = fetch(url, timeout)
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
            last_error = exc
            log.debug("Screenshot attempt %d/%d failed: %s", attempt, attempts, exc)
            if attempt < attempts:
                sleep(retry_delay)
            continue
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(body)
        size = len(body)
        undersized = size < min_bytes
        if undersized:
            log.warning("Screenshot saved to %s but only %d bytes.", destination, size)
        else:
            log.info("Screenshot saved to %s (%d bytes).", destination, size)
        return SmokeResult(destination, size, attempt, undersized)
    raise SmokeTestError(
        f"Screenshot capture of {target} failed after {attempts} attempts: {last_error}"
    )


__all__ = [
    "SMOKE_TEST_FILENAME",
    "SmokeResult",
    "SmokeTestError",
    "capture_screenshot",
    "fetch_url",
    "screenshot_url",
]
